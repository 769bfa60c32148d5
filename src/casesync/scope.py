"""
Access-scope input contract.

The authorization layer (outside this package) decides which outbreaks
and locations a caller may see. It hands the engine an ``AccessScope``
plus the caller's ``SnapshotRequest``; the helpers here turn the pair
into the concrete collection list and outbreak IDs an export runs with.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from .catalog import ExportType, collections_for_export_type, get_collection
from .errors import AccessDeniedError, ConfigError


class AccessScope(BaseModel):
    """What the authenticated principal is allowed to touch.

    Attributes:
        outbreak_ids: Allowed outbreaks. Empty means unrestricted.
        location_ids: Resolved location closure for geo-restricted users.
            Empty means unrestricted.
    """

    outbreak_ids: list[str] = Field(default_factory=list)
    location_ids: list[str] = Field(default_factory=list)


class SnapshotRequest(BaseModel):
    """Filter a caller sends when asking for a snapshot.

    ``outbreak_id`` accepts a plain id or ``{"inq": [...]}``.
    """

    export_type: Optional[ExportType] = None
    collections: list[str] = Field(default_factory=list)
    outbreak_id: Optional[Union[str, dict[str, Any]]] = None
    from_date: Optional[datetime] = None
    where: Optional[dict[str, Any]] = None
    include_deleted: bool = False
    active_subset: bool = False


def requested_outbreak_ids(request: SnapshotRequest) -> list[str]:
    """Outbreak IDs named in the request, if any.

    Raises:
        ConfigError: If ``outbreak_id`` has an unsupported shape.
    """
    value = request.outbreak_id
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict) and "inq" in value:
        return [str(v) for v in value["inq"] or []]
    raise ConfigError(f"Unsupported outbreakId filter: {value!r}")


def resolve_outbreak_ids(scope: AccessScope, request: SnapshotRequest) -> list[str]:
    """Effective outbreak IDs for an export.

    Requested IDs must all be inside the scope. With nothing requested
    the scope itself applies (empty = every outbreak).

    Raises:
        AccessDeniedError: Listing every requested ID outside the scope.
    """
    requested = requested_outbreak_ids(request)
    if not requested:
        return list(scope.outbreak_ids)
    if scope.outbreak_ids:
        disallowed = set(requested) - set(scope.outbreak_ids)
        if disallowed:
            raise AccessDeniedError(disallowed)
    return requested


def resolve_collections(request: SnapshotRequest) -> list[str]:
    """Collections to export: explicit list, export type, or everything.

    Raises:
        ConfigError: For unknown collection names.
    """
    if request.collections:
        for name in request.collections:
            get_collection(name)
        return list(dict.fromkeys(request.collections))
    return collections_for_export_type(request.export_type or ExportType.FULL)
