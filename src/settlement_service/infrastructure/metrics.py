import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Gauge, Histogram


SETTLEMENTS_TOTAL = Counter(
    "settlements_total",
    "Total number of settlement attempts by terminal outcome",
    ["status", "reason"],
)

SETTLEMENT_TRANSITIONS_TOTAL = Counter(
    "settlement_transitions_total",
    "Total number of settlement state transitions",
    ["to_state"],
)

PAYOUT_FAILURES_TOTAL = Counter(
    "settlement_payout_failures_total",
    "Captures whose seller payout failed and need manual reconciliation",
)

GATEWAY_REQUESTS_TOTAL = Counter(
    "gateway_requests_total",
    "Total number of payment provider calls",
    ["operation", "outcome"],
)

GATEWAY_REQUEST_DURATION = Histogram(
    "gateway_request_duration_seconds",
    "Payment provider call duration",
    ["operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

SETTLEMENT_DURATION_SECONDS = Histogram(
    "settlement_duration_seconds",
    "End-to-end settlement duration including buyer approval",
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0],
)

SETTLEMENTS_IN_FLIGHT = Gauge(
    "settlements_in_flight",
    "Number of settlement attempts currently running",
)

OUTBOX_EVENTS_PUBLISHED = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

OUTBOX_EVENTS_FAILED = Counter(
    "outbox_events_failed_total",
    "Total outbox events that failed to publish",
    ["event_type"],
)

OUTBOX_PENDING_EVENTS = Gauge(
    "outbox_pending_events",
    "Outbox events not yet published, sampled after each relay batch",
)


P = ParamSpec("P")
R = TypeVar("R")


def track_settlement_duration(
    func: Callable[P, Awaitable[R]],
) -> Callable[P, Awaitable[R]]:
    @wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        start = time.perf_counter()
        SETTLEMENTS_IN_FLIGHT.inc()
        try:
            return await func(*args, **kwargs)
        finally:
            SETTLEMENTS_IN_FLIGHT.dec()
            SETTLEMENT_DURATION_SECONDS.observe(time.perf_counter() - start)

    return wrapper
