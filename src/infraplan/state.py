"""In-memory and local-file state stores."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path

from .exceptions import StateConflictError, StateCorruptedError
from .models import ResourceId, StateRecord

logger = logging.getLogger(__name__)


class _RecordLocks:
    """One asyncio.Lock per resource id; no cross-record locking."""

    def __init__(self) -> None:
        self._locks: dict[ResourceId, asyncio.Lock] = {}

    def __call__(self, resource_id: ResourceId) -> asyncio.Lock:
        lock = self._locks.get(resource_id)
        if lock is None:
            lock = self._locks[resource_id] = asyncio.Lock()
        return lock


def _check_serial(
    resource_id: ResourceId, current: StateRecord | None, record: StateRecord
) -> None:
    if current is not None and current.serial >= record.serial:
        raise StateConflictError(resource_id, record.serial)


class InMemoryStateStore:
    """
    State store backed by a dict.

    Args:
        records: Initial records (copied)
    """

    def __init__(self, records: dict[ResourceId, StateRecord] | None = None) -> None:
        self.records: dict[ResourceId, StateRecord] = dict(records or {})
        self.commits: list[ResourceId] = []
        self._locks = _RecordLocks()

    async def load(self) -> dict[ResourceId, StateRecord]:
        return {rid: self.records[rid] for rid in sorted(self.records)}

    async def commit(self, resource_id: ResourceId, record: StateRecord) -> None:
        async with self._locks(resource_id):
            _check_serial(resource_id, self.records.get(resource_id), record)
            self.records[resource_id] = record
            self.commits.append(resource_id)

    async def delete(self, resource_id: ResourceId) -> None:
        async with self._locks(resource_id):
            self.records.pop(resource_id, None)

    async def close(self) -> None:
        pass


class FileStateStore:
    """
    State store keeping one JSON file per resource in a directory.

    Writes go to a temporary file in the same directory, are fsynced and
    then atomically renamed over the record, so a crash never leaves a
    half-written record behind. File I/O runs in a worker thread.

    Args:
        directory: Directory holding ``<kind>.<name>.json`` files (created
            on first commit)
    """

    SUFFIX = ".json"

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self.directory = Path(directory)
        self._locks = _RecordLocks()

    def path_for(self, resource_id: ResourceId) -> Path:
        return self.directory / f"{resource_id}{self.SUFFIX}"

    async def load(self) -> dict[ResourceId, StateRecord]:
        return await asyncio.to_thread(self._load_all)

    async def get(self, resource_id: ResourceId) -> StateRecord | None:
        """Read a single record, or None if absent."""
        return await asyncio.to_thread(self._read, self.path_for(resource_id))

    async def commit(self, resource_id: ResourceId, record: StateRecord) -> None:
        async with self._locks(resource_id):
            await asyncio.to_thread(self._write, resource_id, record)
        logger.debug("Committed %s (serial %d)", resource_id, record.serial)

    async def delete(self, resource_id: ResourceId) -> None:
        async with self._locks(resource_id):
            await asyncio.to_thread(self.path_for(resource_id).unlink, missing_ok=True)
        logger.debug("Removed state for %s", resource_id)

    async def close(self) -> None:
        pass

    # -------------------------------------------------------------------------
    # Blocking helpers (run in a worker thread)
    # -------------------------------------------------------------------------

    def _load_all(self) -> dict[ResourceId, StateRecord]:
        if not self.directory.is_dir():
            return {}
        records: dict[ResourceId, StateRecord] = {}
        for path in sorted(self.directory.glob(f"*{self.SUFFIX}")):
            try:
                resource_id = ResourceId.parse(path.name[: -len(self.SUFFIX)])
            except ValueError:
                logger.warning("Ignoring unexpected file in state directory: %s", path)
                continue
            record = self._read(path)
            if record is not None:
                records[resource_id] = record
        return {rid: records[rid] for rid in sorted(records)}

    def _read(self, path: Path) -> StateRecord | None:
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise StateCorruptedError(str(path), e) from e
        try:
            return StateRecord.from_dict(data)
        except (TypeError, ValueError, AttributeError) as e:
            raise StateCorruptedError(str(path), e) from e

    def _write(self, resource_id: ResourceId, record: StateRecord) -> None:
        path = self.path_for(resource_id)
        _check_serial(resource_id, self._read(path), record)

        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{resource_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(record.to_dict(), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
