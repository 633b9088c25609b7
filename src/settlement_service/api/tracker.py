import asyncio
import contextlib
from dataclasses import dataclass, field

import structlog

from settlement_service.application.approval import RedirectApprovalRegistry
from settlement_service.application.services import (
    PreparedPurchase,
    PurchaseOutcome,
    PurchaseService,
    SettlementPersistError,
)
from settlement_service.config import settings
from settlement_service.domain.exceptions import SettlementInProgressError
from settlement_service.domain.state_machine import SettlementSnapshot, SettlementState, SettlementStateMachine
from settlement_service.logging import bind_settlement_context, clear_settlement_context


logger = structlog.get_logger()

PENDING_STATES = frozenset({SettlementState.IDLE, SettlementState.CREATING})
# Nothing has been charged yet in these states, so shutdown may abort them.
ABORTABLE_STATES = frozenset({SettlementState.IDLE, SettlementState.CREATING, SettlementState.AWAITING_APPROVAL})


@dataclass
class TrackedSettlement:
    machine: SettlementStateMachine
    prepared: PreparedPurchase
    task: asyncio.Task[None] | None = None
    outcome: PurchaseOutcome | None = None
    error: str | None = None
    progressed: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def settlement_id(self) -> str:
        return self.machine.settlement_id

    @property
    def snapshot(self) -> SettlementSnapshot:
        return self.machine.snapshot

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()

    def on_snapshot(self, snapshot: SettlementSnapshot) -> None:
        if snapshot.state not in PENDING_STATES:
            self.progressed.set()

    async def wait_for_progress(self, timeout: float) -> bool:
        """Wait until the order is created (or the attempt ended)."""
        try:
            async with asyncio.timeout(timeout):
                await self.progressed.wait()
        except TimeoutError:
            return False
        return True


class SettlementTracker:
    """Runs settlements as background tasks and keeps their live state for the HTTP API.

    Finished entries stay readable for ``retention`` seconds and are then
    dropped; by then the settlement row serves reads. An entry whose result
    could not be persisted is kept, since memory is its only copy.
    """

    def __init__(
        self,
        service: PurchaseService,
        windows: RedirectApprovalRegistry,
        *,
        drain_timeout: float | None = None,
        retention: float | None = None,
    ) -> None:
        self._service = service
        self._windows = windows
        self._drain_timeout = drain_timeout if drain_timeout is not None else settings.shutdown_drain_seconds
        self._retention = retention if retention is not None else settings.settlement_retention_seconds
        self._entries: dict[str, TrackedSettlement] = {}
        self._in_flight: dict[str, str] = {}

    def get(self, settlement_id: str) -> TrackedSettlement | None:
        return self._entries.get(settlement_id)

    def in_flight(self, submission_key: str) -> str | None:
        return self._in_flight.get(submission_key)

    def start(self, prepared: PreparedPurchase) -> TrackedSettlement:
        key = prepared.command.submission_key
        if key in self._in_flight:
            raise SettlementInProgressError(key)

        entry = TrackedSettlement(machine=SettlementStateMachine(), prepared=prepared)
        entry.machine.subscribe(entry.on_snapshot)
        self._entries[entry.settlement_id] = entry
        self._in_flight[key] = entry.settlement_id
        entry.task = asyncio.create_task(self._run(entry), name=f"settlement-{entry.settlement_id}")
        return entry

    async def _run(self, entry: TrackedSettlement) -> None:
        cmd = entry.prepared.command
        bind_settlement_context(entry.settlement_id, buyer_id=cmd.buyer_id, product_id=cmd.product_id)
        try:
            entry.outcome = await self._service.settle(entry.prepared, entry.machine)
        except SettlementInProgressError:
            entry.error = "settlement_in_progress"
            logger.warning("settlement_rejected_in_flight")
        except SettlementPersistError as e:
            entry.outcome = e.outcome
            entry.error = "persist_failed"
        except asyncio.CancelledError:
            entry.error = "cancelled_on_shutdown"
            logger.warning("settlement_task_cancelled", state=entry.machine.state.value)
            raise
        except Exception:
            entry.error = "internal_error"
            logger.exception("settlement_task_crashed", state=entry.machine.state.value)
        finally:
            entry.progressed.set()
            self._in_flight.pop(cmd.submission_key, None)
            if entry.snapshot.order_id:
                self._windows.discard(entry.snapshot.order_id)
            if entry.error != "persist_failed":
                self._expire_later(entry.settlement_id)
            clear_settlement_context()

    def _expire_later(self, settlement_id: str) -> None:
        asyncio.get_running_loop().call_later(self._retention, self._entries.pop, settlement_id, None)

    async def shutdown(self) -> None:
        """Stop tracking settlements.

        Attempts that have not reached capture are cancelled. The rest are
        given ``drain_timeout`` seconds to finish their payout; any still
        running after that are cancelled and end as failed payouts.
        """
        running = [entry for entry in self._entries.values() if entry.is_running]
        aborted = [entry.task for entry in running if entry.machine.state in ABORTABLE_STATES]
        committed = [entry.task for entry in running if entry.machine.state not in ABORTABLE_STATES]
        for task in aborted:
            task.cancel()

        overdue: set[asyncio.Task[None]] = set()
        if committed:
            logger.info("settlement_drain_started", in_progress=len(committed), timeout_seconds=self._drain_timeout)
            _, overdue = await asyncio.wait(committed, timeout=self._drain_timeout)
            for task in overdue:
                task.cancel()

        for task in [*aborted, *committed]:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info(
            "settlement_tracker_stopped",
            cancelled=len(aborted),
            drained=len(committed) - len(overdue),
            cancelled_after_drain=len(overdue),
        )
