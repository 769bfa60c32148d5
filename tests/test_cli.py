"""Tests for the casesync CLI via Click's test runner."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from click.testing import CliRunner

from casesync import __version__
from casesync.cli import main
from casesync.config import load_config
from casesync.ledger import JobLedger
from casesync.store import JsonDocumentStore, open_store


@pytest.fixture(autouse=True)
def _close_log_handlers():
    yield
    logger = logging.getLogger("casesync")
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def invoke(runner: CliRunner, *args: str):
    return runner.invoke(main, list(args), catch_exceptions=False)


class TestInit:
    """Creating a node home."""

    def test_creates_layout(self, runner: CliRunner, tmp_path: Path):
        home = tmp_path / "node"
        result = invoke(runner, "init", "--home", str(home), "--node-name", "district-3")

        assert result.exit_code == 0
        for name in ("config", "db", "ledger", "logs", "attachments", "sync"):
            assert (home / name).is_dir()
        assert load_config(home).node_name == "district-3"

    def test_keeps_existing_config(self, runner: CliRunner, tmp_path: Path):
        home = tmp_path / "node"
        invoke(runner, "init", "--home", str(home), "--node-name", "district-3")
        invoke(runner, "init", "--home", str(home))
        assert load_config(home).node_name == "district-3"

    def test_uninitialized_home(self, runner: CliRunner, tmp_path: Path):
        result = invoke(runner, "jobs", "--home", str(tmp_path / "missing"))
        assert result.exit_code == 1
        assert "No node found" in result.output

    def test_version(self, runner: CliRunner):
        result = invoke(runner, "--version")
        assert __version__ in result.output


class TestPeerCommands:
    """Managing upstream servers."""

    def test_add_and_list(self, runner: CliRunner, sync_home: Path):
        result = invoke(
            runner, "peer", "add", "https://hq.example.org/api", "--home", str(sync_home),
            "--name", "HQ", "--client-id", "d3", "--client-secret", "s3cret", "--timeout", "30",
        )
        assert result.exit_code == 0

        listed = invoke(runner, "peer", "list", "--home", str(sync_home), "--json-out")
        peers = json.loads(listed.output)
        assert len(peers) == 1
        assert peers[0]["name"] == "HQ"
        assert peers[0]["timeout"] == 30
        assert "credentials" not in peers[0]

        config = load_config(sync_home)
        assert config.upstream_servers[0].credentials.client_secret == "s3cret"

    def test_add_replaces_same_url(self, runner: CliRunner, sync_home: Path):
        for name in ("first", "second"):
            invoke(
                runner, "peer", "add", "https://hq.example.org/api/", "--home", str(sync_home),
                "--name", name, "--client-id", "d3", "--client-secret", "x",
            )
        peers = load_config(sync_home).upstream_servers
        assert [p.name for p in peers] == ["second"]

    def test_empty_list(self, runner: CliRunner, sync_home: Path):
        result = invoke(runner, "peer", "list", "--home", str(sync_home))
        assert "No upstream servers configured" in result.output

    def test_check_unknown_peer(self, runner: CliRunner, sync_home: Path):
        result = invoke(runner, "peer", "check", "https://nowhere.example.org", "--home", str(sync_home))
        assert result.exit_code == 1
        assert "not configured" in result.output


class TestSnapshotCommands:
    """export and import."""

    def test_export(self, runner: CliRunner, seeded_store: JsonDocumentStore, sync_home: Path,
                    tmp_path: Path):
        out = tmp_path / "out"
        result = invoke(
            runner, "export", "--home", str(sync_home), "--type", "mobile",
            "--outbreak", "out-a", "--output-dir", str(out),
        )

        assert result.exit_code == 0
        assert "Snapshot:" in result.output
        assert len(list(out.glob("snapshot_*.zip"))) == 1

        jobs = json.loads(invoke(runner, "jobs", "--home", str(sync_home), "--json-out").output)
        assert len(jobs) == 1
        assert jobs[0]["status"] == "SUCCESS"
        assert jobs[0]["outbreak_ids"] == ["out-a"]

    def test_export_nothing(self, runner: CliRunner, sync_home: Path, tmp_path: Path):
        result = invoke(runner, "export", "--home", str(sync_home), "--output-dir", str(tmp_path))
        assert result.exit_code == 0
        assert "No data to export" in result.output

    def test_export_bad_where(self, runner: CliRunner, sync_home: Path):
        result = invoke(runner, "export", "--home", str(sync_home), "--where", "{oops")
        assert result.exit_code == 1
        assert "--where" in result.output

    def test_export_then_import(self, runner: CliRunner, seeded_store: JsonDocumentStore,
                                sync_home: Path, tmp_path: Path):
        out = tmp_path / "out"
        invoke(runner, "export", "--home", str(sync_home), "--collection", "person",
               "--output-dir", str(out))
        archive = next(out.glob("snapshot_*.zip"))

        peer_home = tmp_path / "peer"
        invoke(runner, "init", "--home", str(peer_home))
        result = invoke(runner, "import", str(archive), "--home", str(peer_home), "--outbreak", "out-b")

        assert result.exit_code == 0
        assert "SUCCESS" in result.output
        assert sorted(p["_id"] for p in open_store(peer_home).find("person")) == ["p10", "p8", "p9"]
        assert archive.exists()

        syncs = JobLedger(peer_home).list_sync_jobs()
        assert len(syncs) == 1

    def test_import_encrypted_without_password(self, runner: CliRunner, seeded_store: JsonDocumentStore,
                                               sync_home: Path, tmp_path: Path):
        out = tmp_path / "out"
        invoke(runner, "export", "--home", str(sync_home), "--collection", "language",
               "--password", "pw", "--output-dir", str(out))
        archive = next(out.glob("snapshot_*.zip"))

        result = invoke(runner, "import", str(archive), "--home", str(sync_home))
        assert result.exit_code == 1
        assert "FAILED" in result.output


class TestStatusCommands:
    """jobs and sync status."""

    def test_no_syncs(self, runner: CliRunner, sync_home: Path):
        result = invoke(runner, "sync", "status", "--home", str(sync_home))
        assert "No syncs yet" in result.output

    def test_no_export_jobs(self, runner: CliRunner, sync_home: Path):
        result = invoke(runner, "jobs", "--home", str(sync_home))
        assert "No export jobs yet" in result.output

    def test_sync_run_unknown_peer(self, runner: CliRunner, sync_home: Path):
        result = invoke(runner, "sync", "run", "https://nowhere.example.org", "--home", str(sync_home))
        assert result.exit_code == 1
        assert "not configured" in result.output
