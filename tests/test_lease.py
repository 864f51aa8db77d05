"""Tests for zonekeeper.lease: claim, takeover, read-back conflict and candidate ordering."""

from unittest.mock import MagicMock

import pytest

from conftest import FakeBackend, FakeClock
from zonekeeper.errors import LeaseRejected, NotFound, TransientBackendError
from zonekeeper.lease import CLAIMED, CONFLICT, REJECTED, LeaseManager
from zonekeeper.models import Attachment, LeaseRecord, ResourceDescriptor

LEASE_KEY = "lease-hold"
SELECTOR = {"kind": "zonekeeper-volume", "node-pool": "pool-a"}
ZONE = "us-east-1a"


def _resource(rid, lease=None, zone=ZONE, state="available", **extra_tags):
    tags = dict(SELECTOR)
    tags.update(extra_tags)
    if lease is not None:
        tags[LEASE_KEY] = lease
    return ResourceDescriptor(id=rid, kind="volume", zone=zone, tags=tags, state=state)


def _manager(backend, clock, holder="A", timeout=600, **kwargs):
    return LeaseManager(backend, "volume", holder, LEASE_KEY, lease_timeout=timeout, clock=clock, **kwargs)


# ── Lease record encoding ──


class TestLeaseRecord:
    def test_encode(self):
        assert LeaseRecord("A", 1000).encode() == "A_1000"

    def test_parse_holder_with_underscores(self):
        lease = LeaseRecord.parse("node_b_7_1050")
        assert lease.holder == "node_b_7"
        assert lease.timestamp == 1050

    @pytest.mark.parametrize("raw", ["", "A", "A_", "_1000", "A_12x", "A-1000"])
    def test_parse_rejects_malformed(self, raw):
        with pytest.raises(ValueError, match="Malformed"):
            LeaseRecord.parse(raw)

    def test_age(self):
        assert LeaseRecord("A", 1000).age(1650) == 650


# ── try_claim ──


class TestTryClaim:
    def test_unleased_resource_is_claimed(self, backend):
        clock = FakeClock(now=2000)
        backend.add(_resource("r1"))
        result = _manager(backend, clock).try_claim(backend.get("volume", "r1"))
        assert result.outcome == CLAIMED
        assert result.lease == LeaseRecord("A", 2000)
        assert backend.stored("volume", "r1").tags[LEASE_KEY] == "A_2000"
        assert result.resource.tags[LEASE_KEY] == "A_2000"
        assert not result.takeover

    def test_fresh_lease_of_other_node_is_rejected(self, backend):
        clock = FakeClock(now=1050)
        backend.add(_resource("r1", lease="A_1000"))
        result = _manager(backend, clock, holder="B").try_claim(backend.get("volume", "r1"))
        assert result.outcome == REJECTED
        assert result.reason == "lease_fresh"
        assert result.age_sec == 50
        assert result.previous.holder == "A"
        # No write happened
        assert backend.set_tags_calls == []
        assert backend.stored("volume", "r1").tags[LEASE_KEY] == "A_1000"

    def test_lease_exactly_at_timeout_is_still_fresh(self, backend):
        clock = FakeClock(now=1600)
        backend.add(_resource("r1", lease="A_1000"))
        result = _manager(backend, clock, holder="B").try_claim(backend.get("volume", "r1"))
        assert result.outcome == REJECTED

    def test_stale_lease_is_taken_over(self, backend):
        clock = FakeClock(now=1601)
        backend.add(_resource("r1", lease="A_1000"))
        takeovers = []
        mgr = _manager(backend, clock, holder="B", on_takeover=takeovers.append)
        result = mgr.try_claim(backend.get("volume", "r1"))
        assert result.outcome == CLAIMED
        assert result.takeover
        assert result.previous == LeaseRecord("A", 1000)
        assert backend.stored("volume", "r1").tags[LEASE_KEY] == "B_1601"
        assert takeovers == [result]

    def test_own_lease_is_reclaimed_and_restamped(self, backend):
        clock = FakeClock(now=1100)
        backend.add(_resource("r1", lease="A_1000"))
        result = _manager(backend, clock).try_claim(backend.get("volume", "r1"))
        assert result.outcome == CLAIMED
        assert not result.takeover
        assert backend.stored("volume", "r1").tags[LEASE_KEY] == "A_1100"

    def test_self_claim_twice_is_idempotent(self, backend):
        clock = FakeClock(now=1100)
        backend.add(_resource("r1"))
        mgr = _manager(backend, clock)
        first = mgr.try_claim(backend.get("volume", "r1"))
        second = mgr.try_claim(backend.get("volume", "r1"))
        assert first.claimed and second.claimed
        assert backend.stored("volume", "r1").tags[LEASE_KEY] == "A_1100"

    def test_unparsable_lease_is_treated_as_stale(self, backend, caplog):
        clock = FakeClock(now=1100)
        backend.add(_resource("r1", lease="garbage"))
        result = _manager(backend, clock, holder="B").try_claim(backend.get("volume", "r1"))
        assert result.outcome == CLAIMED
        assert backend.stored("volume", "r1").tags[LEASE_KEY] == "B_1100"
        assert "Unparsable lease" in caplog.text

    def test_lost_race_is_a_conflict(self, backend):
        clock = FakeClock(now=1700)
        backend.add(_resource("r1", lease="A_1000"))

        def _other_node_writes(be, kind, rid):
            be.resources[(kind, rid)].tags[LEASE_KEY] = "C_1700"

        backend.after_set_tags = _other_node_writes
        result = _manager(backend, clock, holder="B").try_claim(backend.get("volume", "r1"))
        assert result.outcome == CONFLICT
        assert result.reason == "lease_race"
        assert result.lease.holder == "C"
        assert not result.claimed
        with pytest.raises(LeaseRejected) as exc:
            result.raise_for_outcome()
        assert exc.value.holder == "C"

    def test_transient_tag_write_is_retried(self, backend):
        clock = FakeClock(now=1100)
        backend.add(_resource("r1"))
        backend.set_tags_errors = [TransientBackendError("throttled")]
        result = _manager(backend, clock).try_claim(backend.get("volume", "r1"))
        assert result.claimed
        assert len(backend.set_tags_calls) == 2

    def test_raise_for_outcome(self, backend):
        clock = FakeClock(now=1050)
        backend.add(_resource("r1", lease="A_1000"))
        result = _manager(backend, clock, holder="B").try_claim(backend.get("volume", "r1"))
        with pytest.raises(LeaseRejected) as exc:
            result.raise_for_outcome()
        assert exc.value.holder == "A"
        assert exc.value.age_sec == 50

    def test_custom_timeout(self, backend):
        clock = FakeClock(now=1061)
        backend.add(_resource("r1", lease="A_1000"))
        result = _manager(backend, clock, holder="B", timeout=60).try_claim(backend.get("volume", "r1"))
        assert result.takeover


# ── Candidate discovery ──


class TestFindReusable:
    def test_empty_pool_raises_not_found(self, backend, clock):
        with pytest.raises(NotFound):
            _manager(backend, clock).find_reusable(ZONE, SELECTOR)

    def test_filters_zone_state_attachments_and_tags(self, backend, clock):
        backend.add(_resource("other-zone", zone="us-east-1b"))
        backend.add(_resource("creating", state="creating"))
        attached = _resource("attached", state="in-use")
        attached.attachments.append(Attachment(node_id="i-x", state="attached"))
        backend.add(attached)
        wrong_pool = _resource("wrong-pool")
        wrong_pool.tags["node-pool"] = "pool-b"
        backend.add(wrong_pool)
        backend.add(_resource("good"))

        candidates = _manager(backend, clock).find_candidates(ZONE, SELECTOR)
        assert [r.id for r in candidates] == ["good"]

    def test_ordering_prefers_own_then_unleased_then_oldest_stale(self, backend):
        clock = FakeClock(now=5000)
        backend.add(_resource("fresh-other", lease="B_4900"))
        backend.add(_resource("stale-newer", lease="B_3000"))
        backend.add(_resource("stale-older", lease="C_1000"))
        backend.add(_resource("unleased"))
        backend.add(_resource("mine", lease="A_4990"))

        candidates = _manager(backend, clock).find_candidates(ZONE, SELECTOR)
        assert [r.id for r in candidates] == [
            "mine",
            "unleased",
            "stale-older",
            "stale-newer",
            "fresh-other",
        ]


class TestCreateAndRenew:
    def test_create_carries_lease_from_the_start(self, backend):
        clock = FakeClock(now=1000)
        created = _manager(backend, clock).create_and_claim(ZONE, SELECTOR, size_gb=10)
        assert created.tags[LEASE_KEY] == "A_1000"
        assert created.tags["node-pool"] == "pool-a"
        assert backend.created == [(created.id, {"size_gb": 10})]
        # No separate tag write is needed
        assert backend.set_tags_calls == []

    def test_renew_restamps(self, backend):
        clock = FakeClock(now=1000)
        backend.add(_resource("r1", lease="A_900"))
        resource = backend.get("volume", "r1")
        lease = _manager(backend, clock).renew(resource)
        assert lease == LeaseRecord("A", 1000)
        assert resource.tags[LEASE_KEY] == "A_1000"
        assert backend.stored("volume", "r1").tags[LEASE_KEY] == "A_1000"

    def test_holder_required(self, backend, clock):
        with pytest.raises(ValueError):
            LeaseManager(backend, "volume", "", LEASE_KEY, clock=clock)

    def test_tag_store_is_injectable(self, clock):
        store = MagicMock()
        store.read_tag.return_value = "A_1000"
        backend = FakeBackend()
        mgr = _manager(backend, clock, tag_store=store)
        result = mgr.try_claim(_resource("r1"))
        assert result.claimed
        store.write.assert_called_once_with("r1", {LEASE_KEY: "A_1000"})


class TestFleetScenario:
    """Three nodes sharing one zone: create, reject-and-create, stale takeover."""

    def test_create_reject_takeover(self):
        backend = FakeBackend()
        clock = FakeClock(now=1000)

        # Node A: empty pool, creates r1
        a = _manager(backend, clock, holder="A")
        with pytest.raises(NotFound):
            a.find_reusable(ZONE, SELECTOR)
        r1 = a.create_and_claim(ZONE, SELECTOR)
        assert r1.tags[LEASE_KEY] == "A_1000"

        # Node B, 50s later: r1 is found but A's lease is fresh, so B creates r2
        clock.set_now(1050)
        b = _manager(backend, clock, holder="B")
        candidate = b.find_reusable(ZONE, SELECTOR)
        assert candidate.id == r1.id
        assert b.try_claim(candidate).outcome == REJECTED
        r2 = b.create_and_claim(ZONE, SELECTOR)
        assert r2.id != r1.id
        assert len(backend.created) == 2

        # Node C, after A is long gone: r1's lease is stale and C takes it over
        clock.set_now(1700)
        c = _manager(backend, clock, holder="C")
        candidate = c.find_reusable(ZONE, SELECTOR)
        assert candidate.id == r1.id
        result = c.try_claim(candidate)
        assert result.takeover
        assert backend.stored("volume", r1.id).tags[LEASE_KEY] == "C_1700"
        assert len(backend.created) == 2
