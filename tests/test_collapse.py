"""Tests for collapsing a certified report into its summary."""

import sqlite3
from unittest.mock import patch

import pytest

from phishblock.collapse import CollapseError, DocumentCollapser, build_anchored_summary
from phishblock.models.report import AnchoredReport

CREATED_AT = "2026-03-14T09:26:53.589Z"

GATEWAYS = {"primary_gateway": "https://gateway.pinata.cloud/ipfs/", "backup_gateway": "https://w3s.link/ipfs/"}
RESULT = {
    "tx_hash": "0xtx",
    "tx_url": "https://amoy.polygonscan.com/tx/0xtx",
    "cid": "bafkcid",
    "evidence_hash": "0xevidence",
    "archived_at": "2026-03-15T10:00:00.000Z",
}


@pytest.fixture
def collapser(store):
    return DocumentCollapser(store, **GATEWAYS)


def test_summary_from_current_document():
    current = {"url": "https://evil.example", "upvotes": 12, "downvotes": 1, "createdAt": CREATED_AT}

    summary = build_anchored_summary("post123", current, **RESULT, **GATEWAYS)

    assert summary.ipfs_gateway == "https://gateway.pinata.cloud/ipfs/bafkcid"
    assert summary.backup_link == "https://w3s.link/ipfs/bafkcid"
    assert summary.upvotes == 12
    assert summary.created_at == CREATED_AT


def test_summary_requires_created_at():
    with pytest.raises(CollapseError, match="createdAt"):
        build_anchored_summary("post123", {"url": "x"}, **RESULT, **GATEWAYS)


def test_collapse_replaces_document_entirely(collapser, store, make_report):
    """Test that mutable fields are gone and createdAt is kept byte-for-byte."""
    make_report("post123", upvotes=10, anchoringInProgress=True, leaseOwner="me", lastError="old")

    collapsed = collapser.collapse("post123", **RESULT)

    assert isinstance(collapsed, AnchoredReport)
    doc = store.get("post123")
    assert doc == {
        "kind": "anchored",
        "url": "http://paypa1-login.example/",
        "anchored": True,
        "anchorTx": "0xtx",
        "anchorTxUrl": "https://amoy.polygonscan.com/tx/0xtx",
        "archiveCid": "bafkcid",
        "ipfsGateway": "https://gateway.pinata.cloud/ipfs/bafkcid",
        "backupLink": "https://w3s.link/ipfs/bafkcid",
        "evidenceHash": "0xevidence",
        "archivedAt": "2026-03-15T10:00:00.000Z",
        "upvotes": 10,
        "downvotes": 0,
        "createdAt": CREATED_AT,
    }


def test_collapse_uses_counts_at_write_time(collapser, store, make_report):
    make_report("post123", upvotes=10)
    store.apply_vote("post123", "late-voter", 1)

    collapser.collapse("post123", **RESULT)

    assert store.get("post123")["upvotes"] == 11


def test_collapse_twice_fails(collapser, make_report):
    make_report("post123", upvotes=10)
    collapser.collapse("post123", **RESULT)

    with pytest.raises(CollapseError, match="already collapsed"):
        collapser.collapse("post123", **RESULT)


def test_collapse_datastore_failure_leaves_report_untouched(collapser, store, make_report):
    make_report("post123", upvotes=10)

    with patch.object(store, "_write", side_effect=sqlite3.OperationalError("disk I/O error")):
        with pytest.raises(CollapseError, match="disk I/O error"):
            collapser.collapse("post123", **RESULT)

    assert store.get("post123")["kind"] == "pending"
