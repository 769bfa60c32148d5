"""
Collection catalog -- what can be synced and how each collection behaves.

Each entry says where the collection lives in the store, which export
types include it, whether its records reference files on disk, whether
it is partitioned by outbreak, and which fields never leave the node
when exporting for a peer.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .errors import ConfigError
from .filters import Equals, Exists, Expr, In, NotEquals, Or


class ExportType(str, Enum):
    """Named collection sets a caller can request."""

    MOBILE = "mobile"
    SYSTEM = "system"
    OUTBREAK = "outbreak"
    FULL = "full"


class CollectionSpec(BaseModel):
    """Static description of one syncable collection.

    Attributes:
        name: Logical collection name used in artifact file names.
        storage_name: Collection name in the document store.
        export_types: Export types that include this collection.
        has_files: Records reference attachment files via ``file_field``.
        file_field: Record field holding the attachment path.
        outbreak_scoped: Records belong to a single outbreak.
        scope_field: Field compared against the allowed outbreak IDs.
        scope_optional: Records without a scope value are global.
        exclude_deleted: Soft-deleted records are left out by default.
        redacted_fields: Fields stripped from peer-bound exports.
        active_subset: Restricted by the active follow-up closure.
        person_field: Field linking the record to a person for the closure.
    """

    name: str
    storage_name: str
    export_types: list[ExportType] = Field(default_factory=list)
    has_files: bool = False
    file_field: str = "path"
    outbreak_scoped: bool = False
    scope_field: str = "outbreakId"
    scope_optional: bool = False
    exclude_deleted: bool = True
    redacted_fields: list[str] = Field(default_factory=list)
    active_subset: bool = False
    person_field: Optional[str] = None

    def scope_filter(self, outbreak_ids: list[str]) -> Optional[Expr]:
        """Filter restricting this collection to the given outbreaks.

        Returns None for global collections or an unrestricted scope.
        """
        if not self.outbreak_scoped or not outbreak_ids:
            return None
        allowed = In(self.scope_field, tuple(outbreak_ids))
        if self.scope_optional:
            return Or((allowed, Exists(self.scope_field, False), Equals(self.scope_field, None)))
        return allowed

    def deleted_filter(self) -> Expr:
        return NotEquals("deleted", True)

    def accepts(self, record: dict, outbreak_ids: list[str]) -> bool:
        """Whether an incoming record falls inside the allowed outbreaks."""
        if not self.outbreak_scoped or not outbreak_ids:
            return True
        value = record.get(self.scope_field)
        if self.scope_field == "_id" and value is None:
            value = record.get("id")
        if value is None or value == "":
            return self.scope_optional
        return str(value) in outbreak_ids


_M, _S, _O = ExportType.MOBILE, ExportType.SYSTEM, ExportType.OUTBREAK

COLLECTIONS: dict[str, CollectionSpec] = {
    spec.name: spec
    for spec in [
        CollectionSpec(
            name="systemSettings", storage_name="systemSettings",
            export_types=[_S], exclude_deleted=False,
            redacted_fields=["upstreamServers", "clientApplications"],
        ),
        CollectionSpec(name="template", storage_name="template", export_types=[_S]),
        CollectionSpec(name="icon", storage_name="icon", export_types=[_S], has_files=True),
        CollectionSpec(name="helpCategory", storage_name="helpCategory", export_types=[_M, _S]),
        CollectionSpec(name="helpItem", storage_name="helpItem", export_types=[_M, _S]),
        CollectionSpec(name="language", storage_name="language", export_types=[_M, _S]),
        CollectionSpec(name="languageToken", storage_name="languageToken", export_types=[_M, _S]),
        CollectionSpec(
            name="outbreak", storage_name="outbreak", export_types=[_M, _O],
            outbreak_scoped=True, scope_field="_id",
        ),
        CollectionSpec(
            name="person", storage_name="person", export_types=[_M, _O],
            outbreak_scoped=True, active_subset=True, person_field="_id",
        ),
        CollectionSpec(
            name="labResult", storage_name="labResult", export_types=[_M, _O],
            outbreak_scoped=True, active_subset=True, person_field="personId",
        ),
        CollectionSpec(
            name="followUp", storage_name="followUp", export_types=[_M, _O],
            outbreak_scoped=True, active_subset=True, person_field="personId",
        ),
        CollectionSpec(
            name="relationship", storage_name="relationship", export_types=[_M, _O],
            outbreak_scoped=True, active_subset=True, person_field="persons.id",
        ),
        CollectionSpec(
            name="cluster", storage_name="cluster", export_types=[_M, _O],
            outbreak_scoped=True,
        ),
        CollectionSpec(
            name="referenceData", storage_name="referenceData", export_types=[_M, _S],
            outbreak_scoped=True, scope_optional=True,
        ),
        CollectionSpec(name="location", storage_name="location", export_types=[_M, _S]),
        CollectionSpec(name="team", storage_name="team", export_types=[_M, _S]),
        CollectionSpec(
            name="user", storage_name="user", export_types=[_M, _S],
            redacted_fields=["password", "securityQuestions", "loginRetriesCount"],
        ),
        CollectionSpec(name="role", storage_name="role", export_types=[_M, _S]),
        CollectionSpec(
            name="fileAttachment", storage_name="fileAttachment", export_types=[_O],
            has_files=True, outbreak_scoped=True,
        ),
    ]
}


def get_collection(name: str) -> CollectionSpec:
    """Look up a catalog entry.

    Raises:
        ConfigError: If the collection is not syncable.
    """
    try:
        return COLLECTIONS[name]
    except KeyError:
        raise ConfigError(f"Unknown collection '{name}'") from None


def collections_for_export_type(export_type: ExportType | str) -> list[str]:
    """Collection names included in an export type, in catalog order."""
    if isinstance(export_type, ExportType):
        kind = export_type
    else:
        try:
            kind = ExportType(str(export_type).lower())
        except ValueError:
            raise ConfigError(f"Unknown export type '{export_type}'") from None
    if kind is ExportType.FULL:
        return list(COLLECTIONS)
    return [name for name, spec in COLLECTIONS.items() if kind in spec.export_types]


def is_collection_file(filename: str) -> bool:
    """Whether a batch file name (``<collection>.<n>.json``) is syncable."""
    return filename.split(".", 1)[0] in COLLECTIONS
