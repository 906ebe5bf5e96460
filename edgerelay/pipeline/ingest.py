"""Ingestion sink: the single entry point into the queue."""
from typing import Any, Callable
import orjson
import structlog

from ..errors import ValidationFault
from ..metrics import Metrics
from ..records import Record, new_uid, now
from ..storage import QueueState, QueueStore, UidConflict

log = structlog.get_logger()

# Generated uids carry a random suffix; more than a couple of clashes means a broken clock or RNG
_MAX_UID_ATTEMPTS = 5

_IDENTITY_FIELDS = ("received", "uid")


class IngestionSink:
    """
    Accepts records from the protocol listeners and the counter reporter
    and writes them into the ``initial`` state.
    """

    def __init__(
        self,
        store: QueueStore,
        metrics: Metrics | None = None,
        clock: Callable[[], float] = now,
    ):
        self._store = store
        self._metrics = metrics
        self._clock = clock

    async def accept(self, submission: Record | dict[str, Any], channel: str = "internal") -> Record:
        """
        Stamp and durably store a record.

        Args:
            submission: A Record, or a mapping that must carry ``source``
            channel: Label of the inbound path, for logs and metrics

        Returns:
            The stored record with ``received`` and ``uid`` set

        Raises:
            ValidationFault: no usable source
            StorageFault: the write did not complete
        """
        try:
            record = submission if isinstance(submission, Record) else Record.from_submission(submission)
        except ValidationFault as exc:
            log.warning("record.rejected", channel=channel, reason=exc.message)
            if self._metrics:
                self._metrics.record_rejected(channel)
            raise

        if record.received is None:
            record.received = self._clock()

        if record.uid:
            location = await self._store.locate(record.uid)
            if location is not None:
                state, day = location
                existing = await self._store.read(state, record.uid, day=day)
                if existing is not None and _content_differs(existing, record):
                    # The stored copy wins; the new content is dropped
                    log.warning("record.duplicate_conflict", uid=record.uid, state=state.value, channel=channel)
                else:
                    log.info("record.duplicate", uid=record.uid, state=state.value, channel=channel)
                return record
            await self._store.put(QueueState.INITIAL, record.uid, record.to_bytes())
        else:
            await self._put_with_fresh_uid(record)

        log.info("record.accepted", uid=record.uid, source=record.source, channel=channel)
        if self._metrics:
            self._metrics.record_accepted(channel)
        return record

    async def _put_with_fresh_uid(self, record: Record) -> None:
        for attempt in range(_MAX_UID_ATTEMPTS):
            record.uid = new_uid(record.received)
            try:
                await self._store.put(QueueState.INITIAL, record.uid, record.to_bytes())
                return
            except UidConflict:
                log.warning("record.uid_collision", uid=record.uid, attempt=attempt + 1)
        raise UidConflict(f"could not allocate a free uid after {_MAX_UID_ATTEMPTS} attempts")


def _content_differs(existing: bytes, record: Record) -> bool:
    """Compare stored content with a resubmission, ignoring the identity fields."""
    try:
        stored = orjson.loads(existing)
    except orjson.JSONDecodeError:
        return True
    if not isinstance(stored, dict):
        return True
    submitted = record.model_dump(exclude_unset=True)
    for key in _IDENTITY_FIELDS:
        stored.pop(key, None)
        submitted.pop(key, None)
    return stored != submitted
