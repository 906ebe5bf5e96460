"""Directory-backed queue store.

Each record is one file named by its uid. The directory holding the file is
the record's queue state:

    <base>/in/<uid>            initial
    <base>/wip/<uid>           in-flight
    <base>/retry/<uid>         retry-pending
    <base>/done/<date>/<uid>   completed, bucketed by UTC date

Records only ever change state through ``move``, which is a rename within
one volume, so a uid is resident in exactly one state at any instant.
"""
from __future__ import annotations

from enum import Enum
from pathlib import Path
import asyncio
import os
import uuid

import structlog

from ..errors import StorageFault

log = structlog.get_logger()


def _fsync_directory(path: Path) -> None:
    """Flush a directory entry change (link, rename) to disk."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        return
    finally:
        os.close(fd)


class QueueState(str, Enum):
    INITIAL = "in"
    IN_FLIGHT = "wip"
    RETRY = "retry"
    COMPLETED = "done"


class UidConflict(StorageFault):
    """The target uid is already resident in the requested state."""


class StateWatch:
    """
    Notification channel for records landing in one queue state.

    A uid waiting to be consumed is queued only once, however many times
    it is notified.
    """

    def __init__(self, state: QueueState):
        self.state = state
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._pending: set[str] = set()

    def notify(self, uid: str) -> None:
        if uid in self._pending:
            return
        self._pending.add(uid)
        self._queue.put_nowait(uid)

    async def get(self) -> str:
        uid = await self._queue.get()
        self._pending.discard(uid)
        return uid

    def __len__(self) -> int:
        return self._queue.qsize()


class QueueStore:
    """Four-state durable queue on the local filesystem."""

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)
        self._watches: dict[QueueState, StateWatch] = {}

    def path(self, state: QueueState, uid: str | None = None, day: str | None = None) -> Path:
        directory = self.base_dir / state.value
        if state is QueueState.COMPLETED and day:
            directory = directory / day
        return directory / uid if uid else directory

    def ensure_layout(self) -> None:
        """Create the base directory and the four state directories."""
        try:
            for state in QueueState:
                self.path(state).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageFault(f"cannot create queue layout under {self.base_dir}: {exc}") from exc
        log.info("queue.layout_ready", base_dir=str(self.base_dir))

    def watch(self, state: QueueState) -> StateWatch:
        """Return the notification channel for ``state``, creating it on first use."""
        if state not in self._watches:
            self._watches[state] = StateWatch(state)
        return self._watches[state]

    def _notify(self, state: QueueState, uid: str) -> None:
        watch = self._watches.get(state)
        if watch is not None:
            watch.notify(uid)

    async def put(self, state: QueueState, uid: str, content: bytes) -> None:
        """
        Durably write ``content`` as ``state/uid``.

        Raises:
            UidConflict: a file with this uid already exists in ``state``
            StorageFault: the write could not complete
        """
        await asyncio.to_thread(self._write, state, uid, content)
        log.debug("queue.put", state=state.value, uid=uid, size=len(content))
        self._notify(state, uid)

    def _write(self, state: QueueState, uid: str, content: bytes) -> None:
        # Stage outside the state directories so a half-written file is never listed
        staging = self.base_dir / f".{uid}.{uuid.uuid4().hex}.tmp"
        target = self.path(state, uid)
        try:
            with open(staging, "wb") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.link(staging, target)
            _fsync_directory(target.parent)
        except FileExistsError as exc:
            raise UidConflict(f"{uid} already present in {state.value}", uid=uid) from exc
        except OSError as exc:
            raise StorageFault(f"cannot write {target}: {exc}", uid=uid) from exc
        finally:
            try:
                os.unlink(staging)
            except FileNotFoundError:
                pass
            except OSError as exc:
                log.warning("queue.staging_cleanup_failed", path=str(staging), error=str(exc))

    async def move(
        self,
        from_state: QueueState,
        uid: str,
        to_state: QueueState,
        day: str | None = None,
    ) -> bool:
        """
        Relocate ``uid`` between states.

        On failure the record stays where it was; the failure is logged and
        False is returned.
        """
        try:
            await asyncio.to_thread(self._rename, from_state, uid, to_state, day)
        except OSError as exc:
            log.warning(
                "queue.move_failed",
                uid=uid,
                from_state=from_state.value,
                to_state=to_state.value,
                error=str(exc),
            )
            return False
        log.debug("queue.moved", uid=uid, from_state=from_state.value, to_state=to_state.value, day=day)
        self._notify(to_state, uid)
        return True

    def _rename(self, from_state: QueueState, uid: str, to_state: QueueState, day: str | None) -> None:
        source = self.path(from_state, uid)
        target = self.path(to_state, uid, day)
        if day and not target.parent.is_dir():
            target.parent.mkdir(parents=True, exist_ok=True)
            _fsync_directory(target.parent.parent)
        if target.exists():
            raise FileExistsError(f"{target} already exists")
        os.rename(source, target)
        _fsync_directory(target.parent)
        _fsync_directory(source.parent)

    async def move_all(self, from_state: QueueState, to_state: QueueState) -> int:
        """Sweep every record resident in ``from_state`` into ``to_state``."""
        moved = 0
        for uid in await self.list(from_state):
            if await self.move(from_state, uid, to_state):
                moved += 1
        return moved

    async def read(self, state: QueueState, uid: str, day: str | None = None) -> bytes | None:
        """
        Read a record's content if it is resident in ``state``.

        Returns None when the uid is not there (e.g. already moved on).
        """
        try:
            return await asyncio.to_thread(self.path(state, uid, day).read_bytes)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageFault(f"cannot read {uid} from {state.value}: {exc}", uid=uid) from exc

    async def list(self, state: QueueState, day: str | None = None) -> list[str]:
        """List uids resident in ``state`` (for ``completed``, in one date bucket)."""
        return await asyncio.to_thread(self._list, self.path(state, day=day))

    @staticmethod
    def _list(directory: Path) -> list[str]:
        try:
            return sorted(
                entry.name
                for entry in os.scandir(directory)
                if entry.is_file() and not entry.name.startswith(".")
            )
        except FileNotFoundError:
            return []

    async def completed_days(self) -> list[str]:
        def _days() -> list[str]:
            root = self.path(QueueState.COMPLETED)
            if not root.is_dir():
                return []
            return sorted(entry.name for entry in os.scandir(root) if entry.is_dir())

        return await asyncio.to_thread(_days)

    async def locate(self, uid: str) -> tuple[QueueState, str | None] | None:
        """Find the state (and completed date bucket) holding ``uid``."""
        for state in (QueueState.INITIAL, QueueState.IN_FLIGHT, QueueState.RETRY):
            if await asyncio.to_thread(self.path(state, uid).is_file):
                return state, None
        for day in await self.completed_days():
            if await asyncio.to_thread(self.path(QueueState.COMPLETED, uid, day).is_file):
                return QueueState.COMPLETED, day
        return None

    async def depth(self) -> dict[QueueState, int]:
        """Count records in each non-completed state."""
        return {
            state: len(await self.list(state))
            for state in (QueueState.INITIAL, QueueState.IN_FLIGHT, QueueState.RETRY)
        }
