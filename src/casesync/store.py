"""
Document store adapter.

The sync engine only needs a handful of driver calls: paged finds with a
native predicate, a lookup by id that can see soft-deleted records, and
insert/replace. ``DocumentStore`` names that contract;
``JsonDocumentStore`` implements it with one JSON file per collection so
a node (and the test suite) can run without a database server.

Storage layout:
    <home>/db/
    ├── outbreak.json
    ├── person.json
    └── ...
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator, Optional

from .filters import matches

logger = logging.getLogger("casesync.store")


def record_id(record: dict) -> Optional[str]:
    """Return the id of a record, accepting both ``_id`` and ``id``."""
    value = record.get("_id", record.get("id"))
    return None if value is None or value == "" else str(value)


class DocumentStore(ABC):
    """Minimal driver interface the sync engine talks to."""

    @abstractmethod
    def find(
        self,
        collection: str,
        predicate: Optional[dict] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> list[dict]:
        """Return matching records ordered by ``_id``."""

    @abstractmethod
    def find_one(
        self, collection: str, rid: str, include_deleted: bool = True,
    ) -> Optional[dict]:
        """Return the record with the given id, or None."""

    @abstractmethod
    def insert(self, collection: str, record: dict) -> dict:
        """Insert a new record. Raises ValueError on duplicate ids."""

    @abstractmethod
    def replace(self, collection: str, record: dict) -> dict:
        """Replace an existing record in full, in one write."""

    @abstractmethod
    def collections(self) -> list[str]:
        """Names of collections that currently hold data."""

    def count(self, collection: str, predicate: Optional[dict] = None) -> int:
        """Count matching records."""
        return len(self.find(collection, predicate))

    def insert_many(self, collection: str, records: list[dict]) -> int:
        """Insert several records. Returns how many were written."""
        for record in records:
            self.insert(collection, record)
        return len(records)

    def iter_batches(
        self, collection: str, predicate: Optional[dict], batch_size: int,
    ) -> Iterator[list[dict]]:
        """Forward-only cursor yielding pages of ``batch_size`` records.

        A short page is the last one. An empty first page is still
        yielded so callers can decide whether to keep it.
        """
        skip = 0
        while True:
            page = self.find(collection, predicate, skip=skip, limit=batch_size)
            yield page
            if len(page) < batch_size:
                return
            skip += batch_size


class JsonDocumentStore(DocumentStore):
    """File-backed store: one JSON array per collection.

    Args:
        root: Directory holding ``<collection>.json`` files.
    """

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._cache: dict[str, dict[str, dict]] = {}

    def _path(self, collection: str) -> Path:
        return self.root / f"{collection}.json"

    def _load(self, collection: str) -> dict[str, dict]:
        if collection in self._cache:
            return self._cache[collection]

        records: dict[str, dict] = {}
        path = self._path(collection)
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8") or "[]")
            for item in data:
                rid = record_id(item)
                if rid is None:
                    continue
                item.pop("id", None)
                item["_id"] = rid
                records[rid] = item
        self._cache[collection] = records
        return records

    def _flush(self, collection: str) -> None:
        records = self._cache.get(collection, {})
        path = self._path(collection)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{collection}-", suffix=".json", dir=self.root,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(list(records.values()), fh, indent=2, default=str)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def find(
        self,
        collection: str,
        predicate: Optional[dict] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> list[dict]:
        with self._lock:
            records = self._load(collection)
            selected = [
                records[rid]
                for rid in sorted(records)
                if matches(predicate, records[rid])
            ]
            end = None if limit is None else skip + limit
            return copy.deepcopy(selected[skip:end])

    def find_one(
        self, collection: str, rid: str, include_deleted: bool = True,
    ) -> Optional[dict]:
        with self._lock:
            record = self._load(collection).get(str(rid))
            if record is None:
                return None
            if not include_deleted and record.get("deleted"):
                return None
            return copy.deepcopy(record)

    def insert(self, collection: str, record: dict) -> dict:
        rid = record_id(record)
        if rid is None:
            raise ValueError(f"Cannot insert a {collection} record without an id")
        stored = copy.deepcopy(record)
        stored.pop("id", None)
        stored["_id"] = rid
        with self._lock:
            records = self._load(collection)
            if rid in records:
                raise ValueError(f"Duplicate id {rid} in {collection}")
            records[rid] = stored
            self._flush(collection)
        return copy.deepcopy(stored)

    def insert_many(self, collection: str, records: list[dict]) -> int:
        with self._lock:
            existing = self._load(collection)
            for record in records:
                rid = record_id(record)
                if rid is None:
                    raise ValueError(f"Cannot insert a {collection} record without an id")
                if rid in existing:
                    raise ValueError(f"Duplicate id {rid} in {collection}")
                stored = copy.deepcopy(record)
                stored.pop("id", None)
                stored["_id"] = rid
                existing[rid] = stored
            self._flush(collection)
        return len(records)

    def replace(self, collection: str, record: dict) -> dict:
        rid = record_id(record)
        if rid is None:
            raise ValueError(f"Cannot replace a {collection} record without an id")
        stored = copy.deepcopy(record)
        stored.pop("id", None)
        stored["_id"] = rid
        with self._lock:
            records = self._load(collection)
            if rid not in records:
                raise KeyError(f"No {collection} record with id {rid}")
            records[rid] = stored
            self._flush(collection)
        return copy.deepcopy(stored)

    def collections(self) -> list[str]:
        with self._lock:
            names = {p.stem for p in self.root.glob("*.json") if not p.name.startswith(".")}
            names.update(name for name, records in self._cache.items() if records)
            return sorted(names)


def open_store(home: Path) -> JsonDocumentStore:
    """Open the local replica stored under ``<home>/db``."""
    return JsonDocumentStore(Path(home).expanduser() / "db")
