"""Outcome resolver and the success/failure counters it owns."""
from datetime import datetime, timezone
from typing import Callable
import structlog

from .delivery import DeliveryOutcome
from ..storage import QueueState, QueueStore

log = structlog.get_logger()


def utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class DeliveryCounters:
    """
    Successes and failures since the last report.

    Only the resolver increments and only the reporter takes; both run on
    the event loop and neither method suspends, so no update is lost.
    """

    def __init__(self):
        self.successes = 0
        self.failures = 0

    def record_success(self) -> None:
        self.successes += 1

    def record_failure(self) -> None:
        self.failures += 1

    def take(self) -> tuple[int, int]:
        """Return the current counts and reset them to zero."""
        counts = (self.successes, self.failures)
        self.successes = 0
        self.failures = 0
        return counts

    def restore(self, successes: int, failures: int) -> None:
        """Add back counts that were taken but could not be reported."""
        self.successes += successes
        self.failures += failures


class OutcomeResolver:
    """Moves an attempted record out of ``in-flight`` according to its outcome."""

    def __init__(self, store: QueueStore, counters: DeliveryCounters, today: Callable[[], str] = utc_today):
        self._store = store
        self._counters = counters
        self._today = today

    async def resolve(self, outcome: DeliveryOutcome) -> bool:
        """Apply the outcome. Returns whether the record left ``in-flight``."""
        if outcome.success:
            moved = await self._store.move(
                QueueState.IN_FLIGHT, outcome.uid, QueueState.COMPLETED, day=self._today()
            )
        else:
            moved = await self._store.move(QueueState.IN_FLIGHT, outcome.uid, QueueState.RETRY)

        if not moved:
            # Still in in-flight; the rescan attempts it again and that attempt is the one counted
            log.error("resolver.record_stranded", uid=outcome.uid, success=outcome.success)
        elif outcome.success:
            self._counters.record_success()
        else:
            self._counters.record_failure()
        return moved
