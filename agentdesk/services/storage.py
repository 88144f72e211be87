"""Record storage collaborator used by domain agents."""
from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Mapping, Optional, Protocol, TypeVar

from agentdesk.core.models import new_id, utcnow

T = TypeVar("T")

Record = Dict[str, Any]


@dataclass(frozen=True)
class StorageResult(Generic[T]):
    """Data or an error message; callers check ``error`` first."""

    data: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Storage(Protocol):
    async def find_by_id(self, collection: str, record_id: str) -> StorageResult[Record]:
        ...

    async def find_many(
        self, collection: str, filters: Optional[Mapping[str, Any]] = None, *, limit: Optional[int] = None
    ) -> StorageResult[List[Record]]:
        ...

    async def create(self, collection: str, record: Mapping[str, Any]) -> StorageResult[Record]:
        ...

    async def update(
        self, collection: str, record_id: str, changes: Mapping[str, Any]
    ) -> StorageResult[Record]:
        ...


class InMemoryStore:
    """Dictionary-backed ``Storage``; records are copied in and out."""

    def __init__(self, seed: Optional[Mapping[str, List[Mapping[str, Any]]]] = None) -> None:
        self._collections: Dict[str, Dict[str, Record]] = {}
        self._lock = asyncio.Lock()
        for collection, records in (seed or {}).items():
            bucket = self._collections.setdefault(collection, {})
            for record in records:
                stored = dict(record)
                stored.setdefault("id", new_id())
                bucket[stored["id"]] = stored

    async def find_by_id(self, collection: str, record_id: str) -> StorageResult[Record]:
        record = self._collections.get(collection, {}).get(record_id)
        if record is None:
            return StorageResult(error=f"{collection}/{record_id} not found")
        return StorageResult(data=copy.deepcopy(record))

    async def find_many(
        self, collection: str, filters: Optional[Mapping[str, Any]] = None, *, limit: Optional[int] = None
    ) -> StorageResult[List[Record]]:
        matches = [
            copy.deepcopy(record)
            for record in self._collections.get(collection, {}).values()
            if all(record.get(key) == value for key, value in (filters or {}).items())
        ]
        return StorageResult(data=matches[:limit] if limit is not None else matches)

    async def create(self, collection: str, record: Mapping[str, Any]) -> StorageResult[Record]:
        async with self._lock:
            stored = copy.deepcopy(dict(record))
            stored.setdefault("id", new_id())
            bucket = self._collections.setdefault(collection, {})
            if stored["id"] in bucket:
                return StorageResult(error=f"{collection}/{stored['id']} already exists")
            stored["created_at"] = utcnow().isoformat()
            bucket[stored["id"]] = stored
            return StorageResult(data=copy.deepcopy(stored))

    async def update(
        self, collection: str, record_id: str, changes: Mapping[str, Any]
    ) -> StorageResult[Record]:
        async with self._lock:
            record = self._collections.get(collection, {}).get(record_id)
            if record is None:
                return StorageResult(error=f"{collection}/{record_id} not found")
            record.update(copy.deepcopy(dict(changes)))
            record["updated_at"] = utcnow().isoformat()
            return StorageResult(data=copy.deepcopy(record))
