from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, List, Mapping, Optional

from changeaudit.core.engine import ChangeDetectionEngine
from changeaudit.core.scope import OperationScope
from changeaudit.domain.events import CommitOutcome
from changeaudit.domain.models import EventOccurrence

logger = logging.getLogger(__name__)


@dataclass
class AuditController:
    """
    Producer-facing entry point of the change detection engine.

    Responsibilities
    ----------------
    - Open and close operation scopes (one per request or background job).
    - Forward "before" captures and "after" observations to the engine.
    - Forward direct triggers of known event codes.

    Notes
    -----
    This controller contains orchestration logic only. Diffing, classification
    and correlation live in the engine and the scope's registry.

    Producer callbacks run inside the host's own persistence flow, so none of
    the methods here raise: unexpected errors are logged and an empty result
    is returned.

    Parameters
    ----------
    engine
        Change detection engine shared by every scope.
    """

    engine: ChangeDetectionEngine

    def begin_scope(self, scope_id: Optional[str] = None) -> OperationScope:
        return self.engine.open_scope(scope_id)

    def end_scope(self, scope: OperationScope) -> List[CommitOutcome]:
        """
        Close ``scope``, resolving its deferred occurrences.

        Returns
        -------
        list of CommitOutcome
            Outcomes of the deferred occurrences (empty on error).
        """
        try:
            return scope.close()
        except Exception:
            logger.exception("failed to close scope %s", scope.scope_id)
            scope.discard()
            return []

    @contextmanager
    def scope(self, scope_id: Optional[str] = None) -> Iterator[OperationScope]:
        """
        Context manager around `begin_scope` / `end_scope`.

        If the block raises, the scope is discarded without committing deferred
        occurrences and the exception propagates to the caller.
        """
        s = self.begin_scope(scope_id)
        try:
            yield s
        except BaseException:
            s.discard()
            raise
        else:
            self.end_scope(s)

    def capture_before(self, scope: OperationScope, entity_type: str, entity_id: Any, attributes: Mapping[str, Any]) -> bool:
        try:
            return self.engine.capture_before(scope, entity_type, entity_id, attributes)
        except Exception:
            logger.exception("failed to capture %s#%s", entity_type, entity_id)
            return False

    def process_after(
        self,
        scope: OperationScope,
        entity_type: str,
        entity_id: Any,
        attributes: Mapping[str, Any],
        actor: str = "",
        request: Optional[Mapping[str, Any]] = None,
        links: Optional[Mapping[str, str]] = None,
    ) -> List[EventOccurrence]:
        """
        Handle one "after" observation and return the occurrences committed now.

        Parameters
        ----------
        scope
            Current operation scope.
        entity_type, entity_id
            Observed entity.
        attributes
            "After" attributes.
        actor, request, links
            Ambient context for occurrence variables.

        Returns
        -------
        list of EventOccurrence
            Committed occurrences (empty on error).
        """
        try:
            return self.engine.process_after(
                scope, entity_type, entity_id, attributes, actor=actor, request=request, links=links
            )
        except Exception:
            logger.exception("failed to classify %s#%s", entity_type, entity_id)
            return []

    def trigger(
        self,
        scope: OperationScope,
        code: Any,
        variables: Optional[Mapping[str, Any]] = None,
        entity_type: str = "",
        entity_id: Any = "",
    ) -> bool:
        try:
            return self.engine.trigger(scope, code, variables, entity_type=entity_type, entity_id=entity_id)
        except Exception:
            logger.exception("failed to trigger event %s", code)
            return False
