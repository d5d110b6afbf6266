"""Durable, bounded, concurrency-safe trip history."""

import asyncio
import contextlib
import os
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from caltrain_tracker.errors import HistoryError, HistoryWriteError
from caltrain_tracker.logging import get_logger
from caltrain_tracker.metrics import set_history_records
from caltrain_tracker.models import TripRecord

logger = get_logger(__name__)

type Records = tuple[TripRecord, ...]


class HistoryFile(BaseModel):
    """On-disk layout of the history log (records oldest first)."""

    version: Literal[1] = 1
    records: list[TripRecord] = Field(default_factory=list)


class HistoryStore:
    """Bounded FIFO log of trip records backed by a JSON file.

    Every mutation goes through one exclusive commit path: the new record
    sequence is built, written to a temporary file, fsynced and atomically
    renamed over the previous file, and only then published. Readers take
    the published tuple without locking, so they always observe a fully
    committed state.

    Args:
        path: JSON file backing the log.
        capacity: Maximum number of records kept; the oldest are evicted first.

    Raises:
        HistoryError: If an existing file cannot be read or decoded.
    """

    def __init__(self, path: Path | str, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self.path = Path(path)
        self.capacity = capacity
        self._lock = threading.Lock()
        self._records: Records = self._load()
        set_history_records(len(self._records))

    def __len__(self) -> int:
        return len(self._records)

    def _load(self) -> Records:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return ()
        except OSError as e:
            raise HistoryError(f"Cannot read history file {self.path}: {e}") from e

        try:
            history = HistoryFile.model_validate_json(raw)
        except ValidationError as e:
            raise HistoryError(f"History file {self.path} is corrupt: {e}") from e

        records = tuple(history.records)
        if len(records) > self.capacity:
            logger.info("history_truncated_on_load", dropped=len(records) - self.capacity)
            records = records[-self.capacity :]
        return records

    def read_all(self) -> Records:
        """Snapshot of all records, oldest first."""
        return self._records

    async def record(self, trip: TripRecord) -> None:
        """Append a trip record, durably, evicting the oldest beyond capacity.

        Returns only after the new state is on disk.

        Raises:
            HistoryWriteError: If the record could not be committed. The
                in-memory log is unchanged in that case.
        """
        await asyncio.to_thread(self._commit, lambda records: (*records, trip)[-self.capacity :])
        logger.info("trip_recorded", trip_id=str(trip.id), route=trip.route_id, records=len(self._records))

    async def clear(self) -> None:
        """Remove all records (durably)."""
        await asyncio.to_thread(self._commit, lambda records: ())
        logger.info("history_cleared")

    def _commit(self, mutate: Callable[[Records], Records]) -> Records:
        """Apply a mutation under the write lock and persist it before publishing."""
        with self._lock:
            updated = mutate(self._records)
            self._write(updated)
            self._records = updated
        set_history_records(len(updated))
        return updated

    def _write(self, records: Records) -> None:
        payload = HistoryFile(records=list(records)).model_dump_json(indent=2).encode()
        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
            )
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
            self._fsync_directory()
        except OSError as e:
            logger.error("history_write_failed", path=str(self.path), error=str(e))
            raise HistoryWriteError(f"Cannot write history file {self.path}: {e}") from e
        finally:
            if tmp_name is not None:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_name)

    def _fsync_directory(self) -> None:
        # Persists the rename itself; directories cannot be opened on Windows
        if os.name != "posix":
            return
        dir_fd = os.open(self.path.parent, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
