"""Pytest fixtures for PhishBlock tests."""

import pytest

from phishblock.chain import ChainAnchorer, FakeLedgerClient
from phishblock.collapse import DocumentCollapser
from phishblock.config import PhishBlockConfig
from phishblock.guard import AnchoringGuard
from phishblock.journal import JournalWriter
from phishblock.models.evidence import Snapshot
from phishblock.paths import StatePaths
from phishblock.pipeline import AnchoringPipeline
from phishblock.snapshot import EvidenceSnapshotter
from phishblock.storage import ArchiveUploader, InMemoryContentStore
from phishblock.store import ReportStore

CREATED_AT = "2026-03-14T09:26:53.589Z"


class StubSnapshotter(EvidenceSnapshotter):
    """Returns a fixed snapshot without touching the network."""

    def __init__(self, snapshot: Snapshot | None = None):
        super().__init__()
        self.snapshot = snapshot or Snapshot(
            http_status=200,
            headers={"content-type": "text/html"},
            redirect_chain=["http://paypa1-login.example/", "https://paypa1-login.example/signin"],
            body="<html><form>password</form></html>",
        )
        self.targets: list[str] = []

    def capture(self, target: str) -> Snapshot:
        self.targets.append(target)
        return self.snapshot


@pytest.fixture
def state_paths(tmp_path):
    """Create a temporary state directory.

    Args:
        tmp_path: pytest's built-in temporary directory fixture

    Returns:
        StatePaths instance with directories created
    """
    paths = StatePaths(tmp_path / "state")
    for directory in paths.get_all_directories():
        directory.mkdir(parents=True, exist_ok=True)
    return paths


@pytest.fixture
def config(state_paths):
    """PhishBlockConfig pointing at the temporary state directory."""
    return PhishBlockConfig(state_dir=state_paths.root)


@pytest.fixture
def store(state_paths):
    return ReportStore(state_paths.db_file)


@pytest.fixture
def ledger():
    return FakeLedgerClient()


@pytest.fixture
def primary_store():
    return InMemoryContentStore(name="Web3.Storage")


@pytest.fixture
def fallback_store():
    return InMemoryContentStore(name="Pinata")


@pytest.fixture
def snapshotter():
    return StubSnapshotter()


@pytest.fixture
def pipeline(store, ledger, primary_store, fallback_store, snapshotter, state_paths, config):
    """Pipeline wired to fakes: in-memory ledger, two in-memory stores."""
    return AnchoringPipeline(
        store=store,
        guard=AnchoringGuard(store, lease_seconds=600),
        anchorer=ChainAnchorer(ledger, confirm_timeout=5),
        snapshotter=snapshotter,
        uploader=ArchiveUploader([primary_store, fallback_store]),
        collapser=DocumentCollapser(
            store,
            primary_gateway=config.storage.primary_gateway,
            backup_gateway=config.storage.backup_gateway,
        ),
        journal=JournalWriter(state_paths.journal_file),
        vote_threshold=10,
    )


@pytest.fixture
def make_report(store):
    """Factory creating a pending report with the given vote counts."""

    def _make(report_id: str = "post123", upvotes: int = 0, target: str = "http://paypa1-login.example/", **extra):
        store.create_report(
            report_id=report_id,
            target=target,
            description="Fake PayPal login page",
            author_id="uid_42",
            author_name="Ada",
            created_at=CREATED_AT,
        )
        fields = {"upvotes": upvotes}
        fields.update(extra)
        store.update_fields(report_id, fields)
        return report_id

    return _make


ENV_VARS = [
    "PHISHBLOCK_STATE_DIR",
    "VOTE_THRESHOLD",
    "BLOCKCHAIN_RPC",
    "BLOCKCHAIN_PRIVATE_KEY",
    "BLOCKCHAIN_CONTRACT_ADDRESS",
    "NFT_TOKEN",
    "PINATA_JWT",
    "PHISHBLOCK_SNAPSHOT_TIMEOUT",
    "PHISHBLOCK_SNAPSHOT_MAX_BYTES",
    "PHISHBLOCK_CONFIRM_TIMEOUT",
    "PHISHBLOCK_LEASE_SECONDS",
    "PHISHBLOCK_EXPLORER_TX_URL",
    "PHISHBLOCK_PRIMARY_GATEWAY",
    "PHISHBLOCK_BACKUP_GATEWAY",
    "PHISHBLOCK_UPLOAD_TIMEOUT",
]


@pytest.fixture
def clean_env(tmp_path, monkeypatch):
    """Empty environment and a CWD with no repo config above it."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'x'\n")
    monkeypatch.chdir(tmp_path)
    return tmp_path
