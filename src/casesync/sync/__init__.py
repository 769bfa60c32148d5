"""
Data sync -- snapshot export/import and peer synchronization.

A node exports its collections into an (optionally encrypted) snapshot
archive, ships it to an upstream server, and the receiver merges every
record by last-writer-wins. Exports and imports run on a worker pool,
never on the request path.
"""

from .exporter import export_collections, export_snapshot
from .importer import apply_snapshot, import_and_apply, import_snapshot
from .orchestrator import PeerSyncOrchestrator

__all__ = [
    "PeerSyncOrchestrator",
    "apply_snapshot",
    "export_collections",
    "export_snapshot",
    "import_and_apply",
    "import_snapshot",
]
