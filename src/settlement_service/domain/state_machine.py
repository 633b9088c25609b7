"""Settlement lifecycle as an explicit state machine.

Snapshots are immutable values; every transition produces a new snapshot and
hands it to the subscribers (HTTP API, metrics, tests).
"""

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog

from settlement_service.domain.exceptions import InvalidTransitionError
from settlement_service.domain.models import FailureReason, SettlementResult, new_settlement_id


logger = structlog.get_logger()


class SettlementState(Enum):
    IDLE = "IDLE"
    CREATING = "CREATING"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    CAPTURING = "CAPTURING"
    PAYING_OUT = "PAYING_OUT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({SettlementState.COMPLETED, SettlementState.FAILED})

ALLOWED_TRANSITIONS: dict[SettlementState, frozenset[SettlementState]] = {
    SettlementState.IDLE: frozenset({SettlementState.CREATING, SettlementState.FAILED}),
    SettlementState.CREATING: frozenset({SettlementState.AWAITING_APPROVAL, SettlementState.FAILED}),
    SettlementState.AWAITING_APPROVAL: frozenset({SettlementState.CAPTURING, SettlementState.FAILED}),
    SettlementState.CAPTURING: frozenset({SettlementState.PAYING_OUT, SettlementState.FAILED}),
    SettlementState.PAYING_OUT: frozenset({SettlementState.COMPLETED, SettlementState.FAILED}),
    SettlementState.COMPLETED: frozenset(),
    SettlementState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class SettlementSnapshot:
    settlement_id: str
    state: SettlementState = SettlementState.IDLE
    reason: FailureReason | None = None
    order_id: str | None = None
    approval_url: str | None = None
    result: SettlementResult | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))


SnapshotListener = Callable[[SettlementSnapshot], Any]


class SettlementStateMachine:
    def __init__(self, settlement_id: str | None = None) -> None:
        self._snapshot = SettlementSnapshot(settlement_id=settlement_id or new_settlement_id())
        self._history: list[SettlementState] = [SettlementState.IDLE]
        self._listeners: list[SnapshotListener] = []

    @property
    def snapshot(self) -> SettlementSnapshot:
        return self._snapshot

    @property
    def settlement_id(self) -> str:
        return self._snapshot.settlement_id

    @property
    def state(self) -> SettlementState:
        return self._snapshot.state

    @property
    def history(self) -> tuple[SettlementState, ...]:
        return tuple(self._history)

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def can_transition(self, target: SettlementState) -> bool:
        return target in ALLOWED_TRANSITIONS[self._snapshot.state]

    def transition(self, target: SettlementState, **changes: Any) -> SettlementSnapshot:
        current = self._snapshot.state
        if not self.can_transition(target):
            raise InvalidTransitionError(current.value, target.value)

        self._snapshot = replace(self._snapshot, state=target, updated_at=datetime.now(UTC), **changes)
        self._history.append(target)

        logger.debug(
            "settlement_transition",
            settlement_id=self._snapshot.settlement_id,
            from_state=current.value,
            to_state=target.value,
        )

        for listener in list(self._listeners):
            listener(self._snapshot)
        return self._snapshot

    def fail(self, reason: FailureReason, result: SettlementResult) -> SettlementSnapshot:
        return self.transition(SettlementState.FAILED, reason=reason, result=result)

    def complete(self, result: SettlementResult) -> SettlementSnapshot:
        return self.transition(SettlementState.COMPLETED, result=result)
