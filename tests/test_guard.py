"""Tests for the anchoring guard (lease acquire/release/sweep)."""

from datetime import datetime, timedelta, timezone

import pytest

from phishblock.guard import AnchoringGuard
from phishblock.store import ReportNotFound

T0 = datetime(2026, 3, 14, 12, 0, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def guard(store, clock):
    return AnchoringGuard(store, lease_seconds=600, clock=clock)


def test_acquire_sets_lease_fields(guard, store, make_report):
    make_report("r1")

    lease = guard.acquire("r1")

    assert lease is not None
    assert lease.reclaimed_from is None
    doc = store.get("r1")
    assert doc["anchoringInProgress"] is True
    assert doc["leaseOwner"] == lease.owner
    assert doc["anchoringStartedAt"] == "2026-03-14T12:00:00.000Z"
    assert doc["leaseExpiresAt"] == "2026-03-14T12:10:00.000Z"


def test_second_acquire_is_contended(guard, make_report):
    """Test that only one caller can hold the lease."""
    make_report("r1")

    first = guard.acquire("r1")
    second = guard.acquire("r1")

    assert first is not None
    assert second is None


def test_release_clears_flag_and_allows_reacquire(guard, store, make_report):
    make_report("r1")
    lease = guard.acquire("r1")

    assert guard.release(lease) is True

    doc = store.get("r1")
    assert doc["anchoringInProgress"] is False
    assert "leaseOwner" not in doc
    assert "leaseExpiresAt" not in doc
    assert guard.acquire("r1") is not None


def test_release_by_stale_owner_is_noop(guard, store, clock, make_report):
    """Test that a reclaimed lease cannot be released by its previous owner."""
    make_report("r1")
    stale = guard.acquire("r1")
    clock.now = T0 + timedelta(seconds=601)
    fresh = guard.acquire("r1")

    assert guard.release(stale) is False
    assert store.get("r1")["leaseOwner"] == fresh.owner


def test_expired_lease_is_reclaimed(guard, clock, make_report):
    make_report("r1")
    first = guard.acquire("r1")

    clock.now = T0 + timedelta(seconds=599)
    assert guard.acquire("r1") is None

    clock.now = T0 + timedelta(seconds=600)
    second = guard.acquire("r1")
    assert second is not None
    assert second.reclaimed_from == first.owner


def test_flag_without_lease_ages_from_start_time(guard, store, clock, make_report):
    make_report("r1", anchoringInProgress=True, anchoringStartedAt="2026-03-14T11:00:00.000Z")

    lease = guard.acquire("r1")

    assert lease is not None
    assert lease.reclaimed_from == "unknown"


def test_flag_without_any_timestamp_is_never_reclaimed(guard, make_report):
    make_report("r1", anchoringInProgress=True)
    assert guard.acquire("r1") is None


def test_anchored_report_requires_allow_anchored(guard, make_report):
    make_report("r1", anchored=True, anchorTx="0xabc")

    assert guard.acquire("r1") is None
    assert guard.acquire("r1", allow_anchored=True) is not None


def test_collapsed_report_never_acquired(guard, store, make_report):
    make_report("r1")
    store.replace("r1", {"kind": "anchored", "anchored": True, "url": "x"})

    assert guard.acquire("r1", allow_anchored=True) is None


def test_acquire_unknown_report_raises(guard):
    with pytest.raises(ReportNotFound):
        guard.acquire("missing")


def test_sweep_releases_only_expired_leases(guard, store, clock, make_report):
    make_report("old")
    make_report("live")
    guard.acquire("old")
    clock.now = T0 + timedelta(seconds=300)
    guard.acquire("live")

    clock.now = T0 + timedelta(seconds=700)
    reclaimed = guard.sweep_expired()

    assert reclaimed == ["old"]
    assert store.get("old")["anchoringInProgress"] is False
    assert store.get("live")["anchoringInProgress"] is True
