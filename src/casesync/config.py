"""
Node configuration and logging setup.

Configuration lives in ``<home>/config/config.yaml``:

    node_name: district-3
    sync:
      chunk_size: 10000
      debug: false
    upstream_servers:
      - url: https://central.example.org/api
        name: central
        credentials: {client_id: d3, client_secret: s3cr3t}
    client_applications:
      - name: field-laptop
        credentials: {client_id: fl1, client_secret: xyz}
        outbreak_ids: [outbreak-a]
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import SYNC_HOME
from .errors import PeerConfigError
from .models import PeerCredentials, PeerDescriptor, normalize_url

logger = logging.getLogger("casesync.config")

CONFIG_FILE = Path("config") / "config.yaml"
LOG_DIR = "logs"


class SyncSettings(BaseModel):
    """Tunables for the export/import pipelines and the orchestrator."""

    chunk_size: int = 10000
    decrypt_workers: int = 10
    file_workers: int = 5
    debug: bool = False
    asynchronous_import: bool = True
    status_poll_interval: float = 5.0
    status_poll_timeout: float = 1800.0
    worker_mode: str = "thread"
    attachments_dir: Optional[Path] = None


class ClientApplication(BaseModel):
    """A downstream node allowed to push snapshots to this one."""

    name: str
    credentials: PeerCredentials
    outbreak_ids: list[str] = Field(default_factory=list)
    active: bool = True


class NodeConfig(BaseModel):
    """Complete configuration for a node."""

    node_name: str = "casesync-node"
    sync: SyncSettings = Field(default_factory=SyncSettings)
    upstream_servers: list[PeerDescriptor] = Field(default_factory=list)
    client_applications: list[ClientApplication] = Field(default_factory=list)

    def find_peer(self, url: str) -> PeerDescriptor:
        """Resolve a configured, sync-enabled upstream server by URL.

        Raises:
            PeerConfigError: If the URL is unknown or sync is disabled.
        """
        wanted = normalize_url(url)
        for peer in self.upstream_servers:
            if peer.normalized_url == wanted:
                if not peer.sync_enabled:
                    raise PeerConfigError(
                        f"Sync is disabled for upstream server '{peer.display_name}'"
                    )
                return peer
        raise PeerConfigError(f"Upstream server '{url}' is not configured")

    def find_client(self, client_id: str, client_secret: str) -> Optional[ClientApplication]:
        """Authenticate a client application by its credentials."""
        for client in self.client_applications:
            if (
                client.active
                and client.credentials.client_id == client_id
                and client.credentials.client_secret == client_secret
            ):
                return client
        return None

    def attachments_root(self, home: Path) -> Path:
        return Path(self.sync.attachments_dir or Path(home) / "attachments").expanduser()


def resolve_home(home: Optional[Path] = None) -> Path:
    return Path(home or SYNC_HOME).expanduser()


def load_config(home: Optional[Path] = None) -> NodeConfig:
    """Load node configuration, falling back to defaults on errors."""
    config_file = resolve_home(home) / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return NodeConfig(**data)
        except (yaml.YAMLError, ValueError) as exc:
            logger.warning("Failed to load config %s: %s", config_file, exc)
    return NodeConfig()


def save_config(config: NodeConfig, home: Optional[Path] = None) -> Path:
    """Write node configuration back to YAML."""
    config_file = resolve_home(home) / CONFIG_FILE
    config_file.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json", exclude_none=True)
    config_file.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    return config_file


def setup_logging(home: Optional[Path] = None, verbose: bool = False) -> Path:
    """Log to ``<home>/logs/casesync.log`` and stderr.

    Returns:
        Path of the log file.
    """
    log_dir = resolve_home(home) / LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "casesync.log"

    fmt = logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    root = logging.getLogger("casesync")
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.handlers.clear()

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(fmt)
    stream_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(stream_handler)
    return log_file
