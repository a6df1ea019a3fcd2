"""Decision providers consulted when the pipeline needs a human choice."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Protocol, runtime_checkable

import structlog

from posguard.health.results import RecoveryContext, RecoveryDecision


@runtime_checkable
class DecisionProvider(Protocol):
    def present_recovery_choice(self, context: RecoveryContext) -> RecoveryDecision: ...

    def present_fatal_error(self, title: str, message: str, detail: str) -> None: ...


class HeadlessDecisionProvider:
    """Chooses backup-and-fresh whenever it is offered; cancel otherwise."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def present_recovery_choice(self, context: RecoveryContext) -> RecoveryDecision:
        decision = (
            RecoveryDecision.BACKUP_AND_FRESH
            if context.allows(RecoveryDecision.BACKUP_AND_FRESH)
            else RecoveryDecision.CANCEL
        )
        self._logger.warning(
            "db_recovery_auto_decision",
            kind=str(context.kind),
            decision=str(decision),
            detail=context.detail,
        )
        return decision

    def present_fatal_error(self, title: str, message: str, detail: str) -> None:
        self._logger.error("db_fatal_error", title=title, error=message, detail=detail)


class ScriptedDecisionProvider:
    """Replays a fixed sequence of decisions, then falls back to ``default``.

    Every context and fatal error presented is kept for inspection.
    """

    def __init__(
        self,
        decisions: Iterable[RecoveryDecision | str] = (),
        *,
        default: RecoveryDecision = RecoveryDecision.CANCEL,
    ) -> None:
        self._queue = [RecoveryDecision(item) for item in decisions]
        self._default = default
        self.contexts: list[RecoveryContext] = []
        self.fatal_errors: list[tuple[str, str, str]] = []

    def present_recovery_choice(self, context: RecoveryContext) -> RecoveryDecision:
        self.contexts.append(context)
        if self._queue:
            return self._queue.pop(0)
        return self._default

    def present_fatal_error(self, title: str, message: str, detail: str) -> None:
        self.fatal_errors.append((title, message, detail))


__all__ = ["DecisionProvider", "HeadlessDecisionProvider", "ScriptedDecisionProvider"]
