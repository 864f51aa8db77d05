"""Tag-encoded leases over zonal resources.

Ownership is data, not a lock: each resource carries a lease tag
``<holder>_<unix-seconds>``. A node may claim a resource when the tag is
absent, already names it, or is older than the lease timeout. The tag write
is a plain read-then-write with no compare-and-swap, so two nodes can both
believe they won; the attach that follows is the real arbiter because the
provider refuses to attach a resource that is already attached elsewhere.

A lease held by someone else and still fresh is never waited on: the caller
creates a new resource instead, trading cost for bounded startup time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from zonekeeper.backend import ResourceBackend
from zonekeeper.clock import DEFAULT_CLOCK, SystemClock
from zonekeeper.errors import LeaseRejected, NotFound
from zonekeeper.models import LeaseRecord, ResourceDescriptor
from zonekeeper.state_machine import STATE_AVAILABLE
from zonekeeper.tag_store import TagStore

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TIMEOUT_SEC = 600

CLAIMED = "claimed"
REJECTED = "rejected"
CONFLICT = "conflict"


@dataclass
class ClaimResult:
    outcome: str
    resource: ResourceDescriptor
    lease: Optional[LeaseRecord] = None
    previous: Optional[LeaseRecord] = None
    reason: str = ""
    age_sec: float = 0.0

    @property
    def claimed(self) -> bool:
        return self.outcome == CLAIMED

    @property
    def takeover(self) -> bool:
        return self.claimed and self.previous is not None and self.previous.holder != self.lease.holder

    def raise_for_outcome(self) -> ResourceDescriptor:
        if self.claimed:
            return self.resource
        # On a conflict the lease read back is the winner's.
        winner = self.lease if self.outcome == CONFLICT else self.previous
        raise LeaseRejected(self.resource.id, winner.holder if winner else "unknown", self.age_sec)


class LeaseManager:
    def __init__(
        self,
        backend: ResourceBackend,
        kind: str,
        holder_id: str,
        lease_tag_key: str,
        lease_timeout: float = DEFAULT_LEASE_TIMEOUT_SEC,
        clock: SystemClock = DEFAULT_CLOCK,
        tag_store: Optional[TagStore] = None,
        on_takeover: Optional[Callable[[ClaimResult], None]] = None,
    ):
        if not holder_id:
            raise ValueError("holder_id must be set")
        self.backend = backend
        self.kind = kind
        self.holder_id = holder_id
        self.lease_tag_key = lease_tag_key
        self.lease_timeout = lease_timeout
        self.clock = clock
        self.tags = tag_store or TagStore(backend, kind)
        self.on_takeover = on_takeover

    # ── Lease inspection ──

    def current_lease(self, resource: ResourceDescriptor) -> Optional[LeaseRecord]:
        """Parse the lease tag; None when absent or unreadable."""
        raw = resource.tags.get(self.lease_tag_key)
        if not raw:
            return None
        try:
            return LeaseRecord.parse(raw)
        except ValueError:
            logger.warning(f"Unparsable lease '{raw}' on {resource.id}; treating as stale")
            return None

    def is_stale(self, lease: LeaseRecord) -> bool:
        return lease.age(self.clock.now()) > self.lease_timeout

    def _new_lease(self) -> LeaseRecord:
        return LeaseRecord(holder=self.holder_id, timestamp=int(self.clock.now()))

    def _candidate_rank(self, resource: ResourceDescriptor):
        lease = self.current_lease(resource)
        if lease is None:
            return (1, 0)
        if lease.holder == self.holder_id:
            return (0, 0)
        if self.is_stale(lease):
            return (2, lease.timestamp)
        return (3, lease.timestamp)

    # ── Operations ──

    def find_candidates(self, zone: str, selector_tags: Dict[str, str]) -> List[ResourceDescriptor]:
        found = self.backend.describe(self.kind, zone=zone, tags=selector_tags)
        candidates = [
            r for r in found
            if r.zone == zone
            and r.state == STATE_AVAILABLE
            and not r.attachments
            and r.matches_tags(selector_tags)
        ]
        return sorted(candidates, key=self._candidate_rank)

    def find_reusable(self, zone: str, selector_tags: Dict[str, str]) -> ResourceDescriptor:
        """Best unattached resource in ``zone`` matching the selector.

        Raises:
            NotFound: No reusable resource exists; the caller must create one.
        """
        candidates = self.find_candidates(zone, selector_tags)
        if not candidates:
            raise NotFound(f"No reusable {self.kind} in {zone} matching {selector_tags}")
        logger.info(
            f"Found {len(candidates)} reusable {self.kind}(s) in {zone}; "
            f"best candidate {candidates[0].id}"
        )
        return candidates[0]

    def try_claim(self, resource: ResourceDescriptor) -> ClaimResult:
        """Claim ``resource`` for this node unless another node holds a fresh lease."""
        previous = self.current_lease(resource)
        now = self.clock.now()

        if previous is not None and previous.holder != self.holder_id:
            age = previous.age(now)
            if age <= self.lease_timeout:
                logger.info(
                    f"{resource.id} leased by {previous.holder} {age:.0f}s ago "
                    f"(timeout {self.lease_timeout:.0f}s); not claiming"
                )
                return ClaimResult(
                    REJECTED, resource, previous=previous, reason="lease_fresh", age_sec=age
                )
            logger.warning(
                f"{resource.id} lease by {previous.holder} is stale ({age:.0f}s > "
                f"{self.lease_timeout:.0f}s); taking over"
            )

        lease = self._new_lease()
        self.tags.write(resource.id, {self.lease_tag_key: lease.encode()})

        # Read back: a concurrent claimant may have overwritten us in between.
        observed_raw = self.tags.read_tag(resource.id, self.lease_tag_key)
        if observed_raw != lease.encode():
            try:
                observed = LeaseRecord.parse(observed_raw or "")
            except ValueError:
                observed = None
            if observed is not None and observed.holder != self.holder_id:
                logger.warning(
                    f"Lost lease race on {resource.id}: tag now held by {observed.holder}"
                )
                return ClaimResult(CONFLICT, resource, lease=observed, previous=previous, reason="lease_race")

        resource.tags[self.lease_tag_key] = lease.encode()
        result = ClaimResult(CLAIMED, resource, lease=lease, previous=previous)
        if result.takeover:
            logger.warning(f"Took over {resource.id} from {previous.holder}")
            if self.on_takeover is not None:
                self.on_takeover(result)
        else:
            logger.info(f"Claimed {resource.id} as {self.holder_id}")
        return result

    def renew(self, resource: ResourceDescriptor) -> LeaseRecord:
        """Re-stamp this node's lease on a resource it already holds or has attached."""
        lease = self._new_lease()
        self.tags.write(resource.id, {self.lease_tag_key: lease.encode()})
        resource.tags[self.lease_tag_key] = lease.encode()
        logger.info(f"Renewed lease on {resource.id} ({lease.encode()})")
        return lease

    def create_and_claim(self, zone: str, tags: Dict[str, str], **params) -> ResourceDescriptor:
        """Create a new resource whose very first tags already carry our lease."""
        lease = self._new_lease()
        all_tags = dict(tags)
        all_tags[self.lease_tag_key] = lease.encode()
        logger.info(f"Creating {self.kind} in {zone} with lease {lease.encode()}")
        resource = self.backend.create(self.kind, zone, all_tags, **params)
        logger.info(f"Created {self.kind} {resource.id} in {zone}")
        return resource
