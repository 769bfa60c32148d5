"""
Record merge resolver -- last writer wins, one record at a time.

Rules, in order:
    1. No id, or no local record with that id (soft-deleted included): create.
    2. Either side lacks ``updatedAt``: the incoming record is foreign.
       Its id is discarded and it is created as a new record.
    3. Local is older: incoming fields are written over the local record.
       An incoming deletion is applied in the same write (REMOVED).
       A local deletion is never undone.
    4. Local is newer or equal: nothing changes (UNTOUCHED).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import MergeError
from .filters import parse_timestamp
from .store import DocumentStore, record_id

logger = logging.getLogger("casesync.merge")


class MergeOutcome(str, Enum):
    """What merging one incoming record did to the local store."""

    CREATED = "created"
    UPDATED = "updated"
    REMOVED = "removed"
    UNTOUCHED = "untouched"


@dataclass
class MergeResult:
    """The local record after the merge, and how it got there."""

    record: Optional[dict]
    outcome: MergeOutcome


def _create(store: DocumentStore, collection: str, record: dict) -> MergeResult:
    created = store.insert(collection, record)
    return MergeResult(created, MergeOutcome.CREATED)


def merge_record(store: DocumentStore, collection: str, incoming: dict) -> MergeResult:
    """Merge one incoming record into the local store.

    Args:
        store: Local replica.
        collection: Storage collection name.
        incoming: Record as read from a snapshot (``_id`` or ``id``).

    Returns:
        MergeResult with the resulting local record and the outcome.

    Raises:
        MergeError: If the store rejects the write.
    """
    record = dict(incoming)
    rid = record_id(record)
    record.pop("id", None)
    record.pop("_id", None)

    try:
        if rid is None:
            record["_id"] = uuid.uuid4().hex
            return _create(store, collection, record)

        local = store.find_one(collection, rid, include_deleted=True)
        if local is None:
            record["_id"] = rid
            return _create(store, collection, record)

        incoming_ts = parse_timestamp(record.get("updatedAt"))
        local_ts = parse_timestamp(local.get("updatedAt"))
        if incoming_ts is None or local_ts is None:
            new_id = uuid.uuid4().hex
            logger.debug(
                "Record %s/%s has no trusted updatedAt; creating it as %s",
                collection, rid, new_id,
            )
            record["_id"] = new_id
            return _create(store, collection, record)

        if local_ts >= incoming_ts:
            return MergeResult(local, MergeOutcome.UNTOUCHED)

        merged = {**local, **record, "_id": rid}
        outcome = MergeOutcome.UPDATED
        if local.get("deleted"):
            merged["deleted"] = True
            merged["deletedAt"] = record.get("deletedAt") or local.get("deletedAt")
        elif record.get("deleted"):
            merged["deleted"] = True
            merged["deletedAt"] = record.get("deletedAt") or record.get("updatedAt")
            outcome = MergeOutcome.REMOVED

        return MergeResult(store.replace(collection, merged), outcome)
    except (ValueError, KeyError, OSError) as exc:
        raise MergeError(f"Failed to merge {collection} record {rid}: {exc}") from exc
