"""
casesync -- replica synchronization for case-management nodes.

Every node keeps a full copy of the operational database. casesync
exports it in encrypted batches, ships it to an upstream peer, and
merges incoming snapshots record by record, last writer wins.
"""

import os

__version__ = "0.1.0"

SYNC_HOME = os.environ.get("CASESYNC_HOME", "~/.casesync")
