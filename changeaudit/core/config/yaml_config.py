from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from changeaudit.domain.models import EventDefinition, EventSeverity

CONFIG_ENV_VAR = "CHANGEAUDIT_CONFIG"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class WebhookConfigData:
    """Webhook notifier configuration (URL + auth)."""
    url: str
    auth_header: Optional[str] = None
    timeout_s: float = 3.0
    verify_tls: bool = True


@dataclass(frozen=True)
class RuleConfig:
    """One declarative classification rule of an entity type."""
    code: str
    priority: int
    watch: Tuple[str, ...] = ()
    match: str = "any"
    kinds: Tuple[str, ...] = ()
    suppressed_by: Tuple[str, ...] = ()
    entity_suppressed_by: Tuple[str, ...] = ()
    must_not_be_followed_by: Tuple[str, ...] = ()
    coalesce_window_ms: Optional[int] = None
    name: str = ""


@dataclass(frozen=True)
class EntityConfig:
    """
    Monitoring configuration of one entity type.

    ``created_code`` and ``modified_code`` become the creation rule and the
    catch-all "modified" rule; ``rules`` are the specific rules.
    """
    entity_type: str
    ignored_keys: Tuple[str, ...] = ()
    strip_whitespace: bool = True
    created_code: Optional[str] = None
    modified_code: Optional[str] = None
    rules: List[RuleConfig] = field(default_factory=list)


@dataclass(frozen=True)
class EngineConfig:
    """
    Root engine configuration loaded from YAML.

    This is the single source of truth for the event catalog, the per-entity
    rules and the delivery settings.
    """
    default_window_ms: int = 0
    consult_sink_history: bool = False
    identity_key: str = "id"
    disabled_codes: Tuple[str, ...] = ()
    events: List[EventDefinition] = field(default_factory=list)
    entities: Dict[str, EntityConfig] = field(default_factory=dict)
    webhook: Optional[WebhookConfigData] = None
    log_level: Optional[str] = None


def _read_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("config.yaml must contain a YAML mapping at the root")
    return data


def _resolve_default_config_path() -> Path:
    """
    Resolve config.yaml location.

    Priority:
    1) CHANGEAUDIT_CONFIG env var if provided
    2) ./config.yaml in current working directory
    """
    env = os.getenv(CONFIG_ENV_VAR)
    if env:
        return Path(env).expanduser().resolve()
    return Path("config.yaml").resolve()


def _mapping(value: Any, what: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be a mapping")
    return value


def _items(value: Any, what: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{what} must be a list")
    return value


def _strs(value: Any, what: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, int)):
        return (str(value),)
    if not isinstance(value, list):
        raise ValueError(f"{what} must be a list")
    return tuple(str(v) for v in value)


def _opt_code(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _parse_rule(entity_type: str, item: Any) -> RuleConfig:
    if not isinstance(item, dict):
        raise ValueError(f"entities.{entity_type}.rules entries must be mappings")
    try:
        code = str(item["code"])
        priority = int(item["priority"])
    except KeyError as e:
        raise ValueError(f"entities.{entity_type}.rules: missing required field {e.args[0]!r}") from e

    window = item.get("coalesce_window_ms")
    return RuleConfig(
        code=code,
        priority=priority,
        watch=_strs(item.get("watch"), f"{entity_type}:{code}.watch"),
        match=str(item.get("match", "any")),
        kinds=tuple(s.upper() for s in _strs(item.get("kinds"), f"{entity_type}:{code}.kinds")),
        suppressed_by=_strs(item.get("suppressed_by"), f"{entity_type}:{code}.suppressed_by"),
        entity_suppressed_by=_strs(item.get("entity_suppressed_by"), f"{entity_type}:{code}.entity_suppressed_by"),
        must_not_be_followed_by=_strs(
            item.get("must_not_be_followed_by"), f"{entity_type}:{code}.must_not_be_followed_by"
        ),
        coalesce_window_ms=None if window is None else int(window),
        name=str(item.get("name", "")),
    )


def _parse_event(item: Any) -> EventDefinition:
    if not isinstance(item, dict) or "code" not in item:
        raise ValueError("events entries must be mappings with a 'code'")
    severity = str(item.get("severity", EventSeverity.INFO.value)).upper()
    try:
        sev = EventSeverity(severity)
    except ValueError as e:
        raise ValueError(f"event {item['code']}: unknown severity {severity!r}") from e
    return EventDefinition(
        code=str(item["code"]),
        severity=sev,
        description=str(item.get("description", "")),
        object_name=str(item.get("object", "")),
        event_type=str(item.get("event_type", "")),
    )


def load_engine_config(path: Optional[str] = None) -> EngineConfig:
    """
    Load engine configuration from YAML and convert into typed config objects.

    Parameters
    ----------
    path
        Explicit path to config.yaml. If None, uses default resolution.

    Returns
    -------
    EngineConfig
        Parsed and validated configuration.

    Raises
    ------
    FileNotFoundError
        If config file does not exist.
    ValueError
        If required fields are missing or invalid.
    """
    cfg_path = Path(path).expanduser().resolve() if path else _resolve_default_config_path()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config not found: {cfg_path}")

    raw = _read_yaml(cfg_path)

    # ---- coalescing ----
    c = _mapping(raw.get("coalescing"), "coalescing")
    default_window_ms = int(c.get("default_window_ms", 0))
    if default_window_ms < 0:
        raise ValueError("coalescing.default_window_ms must be >= 0")

    # ---- catalog ----
    events = [_parse_event(item) for item in _items(raw.get("events"), "events")]

    # ---- entities ----
    entities_raw = _mapping(raw.get("entities"), "entities")
    entities: Dict[str, EntityConfig] = {}
    for entity_type, e in entities_raw.items():
        e = _mapping(e, f"entities.{entity_type}")
        entities[str(entity_type)] = EntityConfig(
            entity_type=str(entity_type),
            ignored_keys=_strs(e.get("ignored_keys"), f"entities.{entity_type}.ignored_keys"),
            strip_whitespace=bool(e.get("strip_whitespace", True)),
            created_code=_opt_code(e.get("created_code")),
            modified_code=_opt_code(e.get("modified_code")),
            rules=[
                _parse_rule(str(entity_type), item)
                for item in _items(e.get("rules"), f"entities.{entity_type}.rules")
            ],
        )

    # ---- webhook ----
    webhook: Optional[WebhookConfigData] = None
    w = _mapping(raw.get("webhook"), "webhook")
    if w:
        if "url" not in w:
            raise ValueError("webhook.url is required when webhook is configured")
        webhook = WebhookConfigData(
            url=str(w["url"]),
            auth_header=w.get("auth_header"),
            timeout_s=float(w.get("timeout_s", 3.0)),
            verify_tls=bool(w.get("verify_tls", True)),
        )

    # ---- logging ----
    log_level: Optional[str] = None
    lg = _mapping(raw.get("logging"), "logging")
    if lg.get("level") is not None:
        log_level = str(lg["level"]).upper()
        if log_level not in LOG_LEVELS:
            raise ValueError(f"logging.level must be one of {', '.join(LOG_LEVELS)}")

    return EngineConfig(
        default_window_ms=default_window_ms,
        consult_sink_history=bool(raw.get("consult_sink_history", False)),
        identity_key=str(raw.get("identity_key", "id")),
        disabled_codes=_strs(raw.get("disabled_codes"), "disabled_codes"),
        events=events,
        entities=entities,
        webhook=webhook,
        log_level=log_level,
    )
