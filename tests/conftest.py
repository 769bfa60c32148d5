"""Shared test fixtures for casesync."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from casesync.filters import format_timestamp
from casesync.ledger import JobLedger
from casesync.store import JsonDocumentStore, open_store

EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)

CASE = "LNG_REFERENCE_DATA_CATEGORY_PERSON_TYPE_CASE"
CONTACT = "LNG_REFERENCE_DATA_CATEGORY_PERSON_TYPE_CONTACT"
EVENT = "LNG_REFERENCE_DATA_CATEGORY_PERSON_TYPE_EVENT"
UNDER_FOLLOW_UP = "LNG_REFERENCE_DATA_CONTACT_FINAL_FOLLOW_UP_STATUS_TYPE_UNDER_FOLLOW_UP"
FOLLOW_UP_ENDED = "LNG_REFERENCE_DATA_CONTACT_FINAL_FOLLOW_UP_STATUS_TYPE_FOLLOW_UP_COMPLETED"


def stamp(seconds: float = 0) -> str:
    """ISO timestamp ``seconds`` after the test epoch."""
    return format_timestamp(EPOCH + timedelta(seconds=seconds))


@pytest.fixture
def sync_home(tmp_path: Path) -> Path:
    """Provide an initialized node home directory."""
    home = tmp_path / ".casesync"
    for subdir in ("config", "db", "ledger", "logs", "attachments", "sync"):
        (home / subdir).mkdir(parents=True)
    return home


@pytest.fixture
def store(sync_home: Path) -> JsonDocumentStore:
    return open_store(sync_home)


@pytest.fixture
def ledger(sync_home: Path) -> JobLedger:
    return JobLedger(sync_home)


@pytest.fixture
def seeded_store(store: JsonDocumentStore) -> JsonDocumentStore:
    """Two outbreaks: seven persons in out-a, three in out-b.

    out-a people:
        p1 case at loc-1, p2 contact under follow-up, p3 contact done,
        p4 case at loc-2 linked to p2, p5 event, p6 contact under
        follow-up, p7 case.
    """
    store.insert_many("outbreak", [
        {"_id": "out-a", "name": "Outbreak A", "updatedAt": stamp()},
        {"_id": "out-b", "name": "Outbreak B", "updatedAt": stamp()},
    ])

    def person(pid, outbreak, kind, **extra):
        return {"_id": pid, "outbreakId": outbreak, "type": kind, "updatedAt": stamp(), **extra}

    store.insert_many("person", [
        person("p1", "out-a", CASE, addresses=[{"locationId": "loc-1"}]),
        person("p2", "out-a", CONTACT, followUp={"status": UNDER_FOLLOW_UP}),
        person("p3", "out-a", CONTACT, followUp={"status": FOLLOW_UP_ENDED}),
        person("p4", "out-a", CASE, addresses=[{"locationId": "loc-2"}]),
        person("p5", "out-a", EVENT),
        person("p6", "out-a", CONTACT, followUp={"status": UNDER_FOLLOW_UP}),
        person("p7", "out-a", CASE, addresses=[{"locationId": "loc-2"}]),
        person("p8", "out-b", CASE),
        person("p9", "out-b", CONTACT, followUp={"status": UNDER_FOLLOW_UP}),
        person("p10", "out-b", CASE),
    ])
    store.insert_many("relationship", [
        {"_id": "r1", "outbreakId": "out-a", "persons": [{"id": "p2"}, {"id": "p4"}], "updatedAt": stamp()},
        {"_id": "r2", "outbreakId": "out-b", "persons": [{"id": "p8"}, {"id": "p9"}], "updatedAt": stamp()},
    ])
    store.insert_many("followUp", [
        {"_id": "f1", "outbreakId": "out-a", "personId": "p2", "updatedAt": stamp()},
        {"_id": "f2", "outbreakId": "out-a", "personId": "p3", "updatedAt": stamp()},
        {"_id": "f3", "outbreakId": "out-b", "personId": "p9", "updatedAt": stamp()},
    ])
    store.insert_many("labResult", [
        {"_id": "l1", "outbreakId": "out-a", "personId": "p1", "updatedAt": stamp()},
    ])
    store.insert_many("referenceData", [
        {"_id": "rd-global", "value": "shared", "updatedAt": stamp()},
        {"_id": "rd-b", "outbreakId": "out-b", "value": "b only", "updatedAt": stamp()},
    ])
    store.insert_many("language", [
        {"_id": "english", "name": "English", "updatedAt": stamp()},
    ])
    store.insert_many("user", [
        {"_id": "u1", "email": "a@example.org", "password": "hash", "updatedAt": stamp()},
    ])
    return store
