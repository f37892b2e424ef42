"""
Local memory store: the device-side home of MemoryRecords.

The backup subsystem only ever lists, reads, and writes whole records;
it never shapes the storage schema. The directory-backed store keeps
one JSON file per record, written atomically.

Storage layout:
    ~/.memoria-backup/memories/
    ├── 0f3c2a.json
    └── 9ab771.json
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .models import MemoryRecord, RecordFilter

logger = logging.getLogger("memoria_backup.store")

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class MemoryStore(ABC):
    """Abstract local store of MemoryRecords."""

    @abstractmethod
    async def list_items(self, record_filter: Optional[RecordFilter] = None) -> list[MemoryRecord]:
        """Return records matching ``record_filter`` (all if None)."""

    @abstractmethod
    async def get_item(self, record_id: str) -> Optional[MemoryRecord]:
        """Return one record, or None if absent."""

    @abstractmethod
    async def put_item(self, record: MemoryRecord) -> None:
        """Create or overwrite a record."""


class JsonDirectoryStore(MemoryStore):
    """One ``<id>.json`` file per record.

    Args:
        directory: Where the record files live.
    """

    def __init__(self, directory: Path) -> None:
        self._dir = directory

    def _path(self, record_id: str) -> Path:
        if not _SAFE_ID.match(record_id):
            raise ValueError(f"Invalid record id: {record_id!r}")
        return self._dir / f"{record_id}.json"

    async def list_items(self, record_filter: Optional[RecordFilter] = None) -> list[MemoryRecord]:
        return await asyncio.to_thread(self._list_sync, record_filter)

    async def get_item(self, record_id: str) -> Optional[MemoryRecord]:
        return await asyncio.to_thread(self._read, self._path(record_id))

    async def put_item(self, record: MemoryRecord) -> None:
        await asyncio.to_thread(self._write, record)

    def _list_sync(self, record_filter: Optional[RecordFilter]) -> list[MemoryRecord]:
        if not self._dir.is_dir():
            return []
        records = []
        for f in sorted(self._dir.glob("*.json")):
            record = self._read(f)
            if record is None:
                continue
            if record_filter is None or record_filter.matches(record):
                records.append(record)
        return records

    @staticmethod
    def _read(path: Path) -> Optional[MemoryRecord]:
        if not path.exists():
            return None
        try:
            return MemoryRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("Skipping unreadable record %s: %s", path.name, exc)
            return None

    def _write(self, record: MemoryRecord) -> None:
        path = self._path(record.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(
            json.dumps(record.model_dump(mode="json"), indent=2),
            encoding="utf-8",
        )
        tmp_path.replace(path)
