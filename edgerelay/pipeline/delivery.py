"""Delivery attempter: forwards one record through every configured transport."""
from dataclasses import dataclass, field
from typing import Sequence
import asyncio
import time
import structlog

from ..errors import DeliveryFault
from ..metrics import Metrics
from ..records import Record
from ..transports.base import Transport

log = structlog.get_logger()


@dataclass
class DeliveryOutcome:
    """Result of one attempt. Delivery is all-or-nothing across transports."""

    uid: str
    faults: list[DeliveryFault] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.faults


class DeliveryAttempter:
    """
    Attempts every configured transport for each record.

    Each transport is bounded by ``timeout``; a timeout, an exception, or a
    failure response from any transport fails the whole attempt. The other
    transports are still tried, so a partial success may be repeated on
    the next retry (at-least-once).
    """

    def __init__(self, transports: Sequence[Transport], timeout: float = 2.0, metrics: Metrics | None = None):
        self.transports = list(transports)
        self.timeout = timeout
        self._metrics = metrics

    async def deliver(self, uid: str, content: bytes) -> DeliveryOutcome:
        outcome = DeliveryOutcome(uid=uid)
        start_time = time.time()

        try:
            record = Record.from_bytes(content)
        except ValueError as e:
            # orjson and pydantic errors both derive from ValueError
            outcome.faults.append(DeliveryFault(f"unreadable record: {e}", uid=uid))
            log.error("delivery.unreadable", uid=uid, error=str(e))
            self._finish(outcome, start_time)
            return outcome

        if not self.transports:
            outcome.faults.append(DeliveryFault("no transports configured", uid=uid))

        for transport in self.transports:
            fault = await self._attempt(transport, content, record, uid)
            if fault is not None:
                outcome.faults.append(fault)
                if self._metrics:
                    self._metrics.record_transport_failure(transport.name)

        self._finish(outcome, start_time)
        return outcome

    async def _attempt(self, transport: Transport, content: bytes, record: Record, uid: str) -> DeliveryFault | None:
        try:
            await asyncio.wait_for(transport.send(content, record), timeout=self.timeout)
        except DeliveryFault as e:
            fault = e
        except asyncio.TimeoutError:
            fault = DeliveryFault(f"timed out after {self.timeout}s", uid=uid, transport=transport.name)
        except Exception as e:
            fault = DeliveryFault(f"{type(e).__name__}: {e}", uid=uid, transport=transport.name)
        else:
            return None

        log.warning("delivery.transport_failed", uid=uid, transport=transport.name, error=fault.message)
        return fault

    def _finish(self, outcome: DeliveryOutcome, start_time: float) -> None:
        duration = time.time() - start_time
        if self._metrics:
            self._metrics.record_delivery(outcome.success, duration)
        if outcome.success:
            log.info("delivery.succeeded", uid=outcome.uid, duration_ms=round(duration * 1000, 2))
        else:
            log.warning(
                "delivery.failed",
                uid=outcome.uid,
                faults=[f.message for f in outcome.faults],
                duration_ms=round(duration * 1000, 2),
            )

    async def close(self) -> None:
        for transport in self.transports:
            try:
                await transport.close()
            except Exception as e:
                log.warning("transport.close_failed", transport=transport.name, error=str(e))
