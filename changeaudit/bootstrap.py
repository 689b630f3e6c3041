from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from changeaudit.core.config.event_catalog import EventCatalog
from changeaudit.core.config.yaml_config import EngineConfig, EntityConfig, load_engine_config
from changeaudit.core.diff.diff_engine import DiffEngine
from changeaudit.core.engine import ChangeDetectionEngine, EntitySettings
from changeaudit.core.rules.rule_base import ClassificationRule
from changeaudit.core.rules.rule_set import ClassificationRuleSet
from changeaudit.logging_setup import configure_logging
from changeaudit.notification.base import EventSink
from changeaudit.notification.notification_thread import NotificationWorkerThread
from changeaudit.notification.sinks import InMemoryEventSink, NotifyingEventSink
from changeaudit.notification.webhook_notifier import WebhookConfig, WebhookNotifier
from changeaudit.services.controller import AuditController

CREATED_PRIORITY = 0
CATCH_ALL_PRIORITY = 1000


@dataclass(frozen=True)
class AuditWiring:
    """Everything a host application needs to feed the engine."""
    config: EngineConfig
    engine: ChangeDetectionEngine
    controller: AuditController
    sink: EventSink
    notifier: Optional[NotificationWorkerThread] = None


def build_entity_rules(entity: EntityConfig) -> List[ClassificationRule]:
    rules = [
        ClassificationRule(
            entity_type=entity.entity_type,
            code=r.code,
            priority=r.priority,
            watch=r.watch,
            match=r.match,
            kinds=frozenset(r.kinds),
            suppressed_by=r.suppressed_by,
            entity_suppressed_by=r.entity_suppressed_by,
            must_not_be_followed_by=r.must_not_be_followed_by,
            coalesce_window_ms=r.coalesce_window_ms,
            name=r.name,
        )
        for r in entity.rules
    ]

    if entity.created_code is not None:
        rules.append(
            ClassificationRule(
                entity_type=entity.entity_type,
                code=entity.created_code,
                priority=CREATED_PRIORITY,
                on_create=True,
            )
        )

    if entity.modified_code is not None:
        highest = max((r.priority for r in entity.rules), default=0)
        rules.append(
            ClassificationRule(
                entity_type=entity.entity_type,
                code=entity.modified_code,
                priority=max(CATCH_ALL_PRIORITY, highest + 1),
                catch_all=True,
            )
        )

    return rules


def build_rule_set(cfg: EngineConfig) -> ClassificationRuleSet:
    rule_set = ClassificationRuleSet()
    for entity in cfg.entities.values():
        rule_set.extend(build_entity_rules(entity))
    return rule_set


def build_catalog(cfg: EngineConfig) -> EventCatalog:
    catalog = EventCatalog(disabled_codes=frozenset(cfg.disabled_codes))
    catalog.register_many(cfg.events)
    return catalog


def build_notifier(cfg: EngineConfig) -> Optional[NotificationWorkerThread]:
    if cfg.webhook is None:
        return None

    auth_header = cfg.webhook.auth_header

    if auth_header and not auth_header.startswith("Bearer "):
        auth_header = f"Bearer {auth_header}"

    return NotificationWorkerThread(
        notifiers=[
            WebhookNotifier(
                WebhookConfig(
                    url=cfg.webhook.url,
                    auth_header=auth_header,
                    timeout_s=cfg.webhook.timeout_s,
                    verify_tls=cfg.webhook.verify_tls,
                )
            )
        ]
    )


def build_sink(catalog: EventCatalog, notifier: Optional[NotificationWorkerThread] = None) -> EventSink:
    if notifier is None:
        return InMemoryEventSink()
    return NotifyingEventSink(notifier=notifier, catalog=catalog)


def build_engine(
    cfg: EngineConfig,
    sink: Optional[EventSink] = None,
    catalog: Optional[EventCatalog] = None,
) -> ChangeDetectionEngine:
    catalog = catalog if catalog is not None else build_catalog(cfg)
    entities: Dict[str, EntitySettings] = {
        name: EntitySettings(ignored_keys=frozenset(e.ignored_keys), strip_whitespace=e.strip_whitespace)
        for name, e in cfg.entities.items()
    }
    return ChangeDetectionEngine(
        rules=build_rule_set(cfg),
        sink=sink if sink is not None else InMemoryEventSink(),
        diff_engine=DiffEngine(identity_key=cfg.identity_key),
        entities=entities,
        catalog=catalog,
        default_window_ms=cfg.default_window_ms,
        consult_sink_history=cfg.consult_sink_history,
    )


def build_audit_system(config_path: Optional[str] = None) -> AuditWiring:
    cfg = load_engine_config(config_path)
    if cfg.log_level:
        configure_logging(cfg.log_level)

    # --- NOTIFICATIONS ---
    notifier = build_notifier(cfg)
    if notifier is not None:
        notifier.start()

    # --- ENGINE ---
    catalog = build_catalog(cfg)
    engine = build_engine(cfg, sink=build_sink(catalog, notifier), catalog=catalog)

    # --- CONTROLLER ---
    controller = AuditController(engine=engine)

    return AuditWiring(config=cfg, engine=engine, controller=controller, sink=engine.sink, notifier=notifier)
