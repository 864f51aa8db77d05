"""Boot-time acquire → attach → prepare sequence for one resource kind.

1. A resource of this kind already attached to the node (per the provider,
   not the local cache) is reused as is. It is only initialized when the
   local record shows a created resource whose preparation never finished.
2. Otherwise the locally cached claim is re-claimed and re-attached.
3. Otherwise a reusable pooled resource is claimed, or a new one created.
4. The claim is persisted locally before attaching.
5. Attach, then converge to attached/in-use.
6. Kind-specific preparation; filesystem creation only for fresh volumes.
   The record is marked initialized once this succeeds.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from zonekeeper import disk
from zonekeeper.backend import ResourceBackend
from zonekeeper.clock import DEFAULT_CLOCK, SystemClock
from zonekeeper.errors import ConfigurationConflict, LeaseRejected, NotFound
from zonekeeper.lease import LeaseManager
from zonekeeper.local_state import LocalStateCache
from zonekeeper.models import (
    INITIALIZED_KEY,
    KIND_ADDRESS,
    KIND_INTERFACE,
    KIND_VOLUME,
    SOURCE_ATTACHED,
    SOURCE_CACHE,
    SOURCE_CLAIMED,
    SOURCE_CREATED,
    LocalStateRecord,
    NodeIdentity,
    ProvisionResult,
    ResourceDescriptor,
)
from zonekeeper.poller import DEFAULT_POLL_INTERVAL_SEC, DEFAULT_POLL_TIMEOUT_SEC, Target, wait_for
from zonekeeper.state_machine import ATTACH_ATTACHED, STATE_AVAILABLE, STATE_IN_USE

logger = logging.getLogger(__name__)


class ResourceProvisioner:
    kind = ""

    def __init__(
        self,
        backend: ResourceBackend,
        node: NodeIdentity,
        leases: LeaseManager,
        cache: LocalStateCache,
        selector_tags: Dict[str, str],
        create_params: Optional[Dict[str, Any]] = None,
        attach_params: Optional[Dict[str, Any]] = None,
        zone: Optional[str] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SEC,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT_SEC,
        publish_key: str = "",
        stop_event: Optional[threading.Event] = None,
        clock: SystemClock = DEFAULT_CLOCK,
    ):
        if leases.kind != self.kind:
            raise ValueError(f"Lease manager is for {leases.kind}, provisioner for {self.kind}")
        self.backend = backend
        self.node = node
        self.leases = leases
        self.cache = cache
        self.selector_tags = dict(selector_tags)
        self.create_params = dict(create_params or {})
        self.attach_params = dict(attach_params or {})
        self.zone = zone or self.placement_zone(node)
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.publish_key = publish_key
        self.stop_event = stop_event or threading.Event()
        self.clock = clock

    @staticmethod
    def placement_zone(node: NodeIdentity) -> str:
        return node.zone

    def attached_target(self) -> Target:
        return Target(STATE_IN_USE, ATTACH_ATTACHED, node_id=self.node.api_name)

    # ── Steps ──

    def find_attached(self) -> Optional[ResourceDescriptor]:
        """Resource of this kind the provider says is attached to us (step 1)."""
        attached = self.backend.describe(self.kind, tags=self.selector_tags, attached_to=self.node)
        attached = [r for r in attached if r.matches_tags(self.selector_tags)]
        if len(attached) > 1:
            ids = ", ".join(r.id for r in attached)
            raise ConfigurationConflict(
                f"{len(attached)} {self.kind}s attached to {self.node.api_name} match "
                f"{self.selector_tags}: {ids}"
            )
        if attached:
            logger.info(f"{self.kind} {attached[0].id} is already attached to this node")
            return attached[0]
        logger.info(f"No {self.kind} attached to this node")
        return None

    def from_cache(self, record: Optional[LocalStateRecord]) -> Optional[ResourceDescriptor]:
        """Re-claim the resource recorded locally, if it still exists and is ours to take (step 2)."""
        if record is None:
            return None
        if record.kind != self.kind:
            logger.warning(f"Local state is for a {record.kind}, not a {self.kind}; ignoring")
            return None

        try:
            resource = self.backend.get(self.kind, record.resource_id)
            return self.leases.try_claim(resource).raise_for_outcome()
        except NotFound:
            logger.warning(f"Cached {self.kind} {record.resource_id} no longer exists")
        except LeaseRejected as e:
            logger.warning(f"Cached {self.kind} is now held by another node: {e}")
        self.cache.clear()
        return None

    def claim_or_create(self) -> tuple:
        """Claim a pooled resource, or create one (step 3). Returns (resource, fresh)."""
        try:
            candidate = self.leases.find_reusable(self.zone, self.selector_tags)
            return self.leases.try_claim(candidate).raise_for_outcome(), False
        except (NotFound, LeaseRejected) as e:
            logger.info(f"{e}; creating a new {self.kind}")

        created = self.leases.create_and_claim(self.zone, self.selector_tags, **self.create_params)
        return created, True

    def attach(self, resource: ResourceDescriptor, fresh: bool) -> ResourceDescriptor:
        """Attach and converge (step 5)."""
        if not resource.attached_to(self.node.api_name):
            if fresh:
                resource = self._wait(resource, Target(STATE_AVAILABLE))
            attachment_id = self.backend.attach(self.kind, resource.id, self.node, **self.attach_params)
            logger.info(f"Attach requested for {resource.id} ({attachment_id})")
        return self._wait(resource, self.attached_target())

    def prepare(self, resource: ResourceDescriptor, fresh: bool) -> None:
        """Kind-specific initialization once attached (step 6)."""

    def publish_value(self, resource: ResourceDescriptor) -> str:
        return resource.id

    def cache_details(self, resource: ResourceDescriptor) -> Dict[str, Any]:
        return {}

    # ── Orchestration ──

    def provision(self) -> ProvisionResult:
        logger.info(f"Provisioning {self.kind} for {self.node.api_name} in {self.zone}")

        record = self.cache.load()
        resource = self.find_attached()
        fresh = False
        if resource is not None:
            source = SOURCE_ATTACHED
            self.leases.renew(resource)
        else:
            resource = self.from_cache(record)
            if resource is not None:
                source = SOURCE_CACHE
            else:
                resource, fresh = self.claim_or_create()
                source = SOURCE_CREATED if fresh else SOURCE_CLAIMED

        unfinished = record is not None and record.resource_id == resource.id and not record.initialized
        if unfinished and not fresh:
            logger.warning(f"{self.kind} {resource.id} was created but never prepared; preparing it now")
            fresh = True

        self._save(resource, {INITIALIZED_KEY: False} if fresh else None)
        resource = self.attach(resource, fresh)
        self.prepare(resource, fresh)
        # Details such as a public IP are only known once attached.
        details = self.cache_details(resource)
        if fresh:
            details[INITIALIZED_KEY] = True
        if details:
            self._save(resource, details)

        if self.publish_key:
            self.backend.publish(self.node, self.publish_key, self.publish_value(resource))
            logger.info(f"Published {self.publish_key} on {self.node.api_name}")

        logger.info(f"{self.kind} {resource.id} ready (source={source}, fresh={fresh})")
        return ProvisionResult(resource=resource, fresh=fresh, source=source)

    def _save(self, resource: ResourceDescriptor, details: Optional[Dict[str, Any]] = None) -> None:
        self.cache.save(
            LocalStateRecord(
                resource_id=resource.id,
                kind=self.kind,
                zone=resource.zone,
                claimed_at=int(self.clock.now()),
                details=details or {},
            )
        )

    def _wait(self, resource: ResourceDescriptor, target: Target) -> ResourceDescriptor:
        converged = wait_for(
            self.backend,
            self.kind,
            resource.id,
            target,
            interval=self.poll_interval,
            timeout=self.poll_timeout,
            stop_event=self.stop_event,
            clock=self.clock,
        )
        return converged or resource


class VolumeProvisioner(ResourceProvisioner):
    kind = KIND_VOLUME

    def __init__(
        self,
        *args,
        device_path: str = "",
        mount_dir: str = "",
        fs_type: str = "ext4",
        fstab_path: str | Path = disk.FSTAB_PATH,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.device_path = device_path
        self.mount_dir = mount_dir
        self.fs_type = fs_type
        self.fstab_path = fstab_path

    def _device(self, resource: ResourceDescriptor) -> str:
        if self.device_path:
            return self.device_path
        for a in resource.attachments:
            if a.node_id == self.node.api_name and a.device:
                return a.device
        raise ConfigurationConflict(f"Cannot tell which device {resource.id} is attached as")

    def prepare(self, resource: ResourceDescriptor, fresh: bool) -> None:
        if not self.mount_dir:
            logger.info("No mount directory configured; leaving the volume unformatted and unmounted")
            return
        device = self._device(resource)
        if fresh:
            logger.info(f"Fresh volume {resource.id}: creating {self.fs_type} on {device}")
            disk.mkfs(self.fs_type, device)
        else:
            logger.info(f"Reattached volume {resource.id}: keeping existing filesystem on {device}")
        disk.mount(self.fs_type, device, self.mount_dir)
        disk.update_fstab(self.fs_type, device, self.mount_dir, self.fstab_path)


class InterfaceProvisioner(ResourceProvisioner):
    kind = KIND_INTERFACE

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # Backends default the subnet and security groups to the node's own.
        self.create_params.setdefault("node", self.node)


class AddressProvisioner(ResourceProvisioner):
    kind = KIND_ADDRESS

    @staticmethod
    def placement_zone(node: NodeIdentity) -> str:
        # Addresses are regional.
        return node.region

    def find_attached(self) -> Optional[ResourceDescriptor]:
        # Any associated address counts, tagged or not: a node holds at most one.
        attached = self.backend.describe(self.kind, attached_to=self.node)
        if len(attached) > 1:
            ids = ", ".join(r.id for r in attached)
            raise ConfigurationConflict(
                f"{len(attached)} addresses associated with {self.node.api_name}: {ids}"
            )
        if attached:
            logger.info(f"Address {attached[0].id} is already associated with this node")
            return attached[0]
        logger.info("No address associated with this node")
        return None

    def cache_details(self, resource: ResourceDescriptor) -> Dict[str, Any]:
        public_ip = resource.details.get("public_ip", "")
        return {"public_ip": public_ip} if public_ip else {}

    def publish_value(self, resource: ResourceDescriptor) -> str:
        return json.dumps(
            {"id": resource.id, "public_ip": resource.details.get("public_ip", "")},
            sort_keys=True,
        )


PROVISIONERS = {
    KIND_VOLUME: VolumeProvisioner,
    KIND_INTERFACE: InterfaceProvisioner,
    KIND_ADDRESS: AddressProvisioner,
}
