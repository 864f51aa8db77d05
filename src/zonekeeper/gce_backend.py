"""Compute Engine backend: persistent disks (volume) and static addresses (address).

Tags are disk/address labels. Resource ids are resource names, since every
Compute Engine call addresses disks and addresses by name. Label writes go
through ``label_fingerprint``; a fingerprint mismatch means someone else
wrote in between, and the merge is retried against a fresh read.
"""

from __future__ import annotations

import contextlib
import logging
import uuid
from typing import Dict, Iterator, List, Optional

from google.api_core import exceptions as gexc
from google.auth import exceptions as gauth_exc
from google.cloud import compute_v1

from zonekeeper.backend import ResourceBackend
from zonekeeper.errors import (
    ConfigurationConflict,
    NotFound,
    ProvisionerError,
    TransientBackendError,
)
from zonekeeper.models import (
    KIND_ADDRESS,
    KIND_INTERFACE,
    KIND_VOLUME,
    Attachment,
    NodeIdentity,
    ResourceDescriptor,
    check_kind,
)
from zonekeeper.state_machine import (
    ATTACH_ATTACHED,
    STATE_AVAILABLE,
    STATE_CREATING,
    STATE_DELETING,
    STATE_FAILED,
    STATE_IN_USE,
)

logger = logging.getLogger(__name__)

LABEL_WRITE_ATTEMPTS = 3
OPERATION_TIMEOUT_SEC = 300
ACCESS_CONFIG_NAME = "external-nat"
NETWORK_INTERFACE = "nic0"
POOL_METADATA_KEY = "created-by"

_DISK_STATUS = {
    "CREATING": STATE_CREATING,
    "RESTORING": STATE_CREATING,
    "DELETING": STATE_DELETING,
    "FAILED": STATE_FAILED,
}

_ADDRESS_STATUS = {
    "RESERVING": STATE_CREATING,
    "RESERVED": STATE_AVAILABLE,
    "IN_USE": STATE_IN_USE,
}

_TRANSIENT = (
    gexc.TooManyRequests,
    gexc.ServiceUnavailable,
    gexc.InternalServerError,
    gexc.GatewayTimeout,
    gexc.DeadlineExceeded,
    gexc.RetryError,
)


@contextlib.contextmanager
def _api_errors(what: str, conflict_is_fatal: bool = False) -> Iterator[None]:
    """Translate google.api_core and google.auth exceptions into the provisioning taxonomy."""
    try:
        yield
    except gexc.NotFound as e:
        raise NotFound(f"{what}: {e}") from e
    except _TRANSIENT as e:
        raise TransientBackendError(f"{what}: {e}") from e
    except (gexc.BadRequest, gexc.Conflict) as e:
        if conflict_is_fatal:
            raise ConfigurationConflict(f"{what}: {e}") from e
        raise ProvisionerError(f"{what}: {e}") from e
    except gexc.GoogleAPICallError as e:
        raise ProvisionerError(f"{what}: {e}") from e
    except gauth_exc.GoogleAuthError as e:
        raise ProvisionerError(f"{what}: {e}") from e


def _last_segment(url: str) -> str:
    return url.rstrip("/").rsplit("/", 1)[-1]


def _label_filter(tags: Optional[Dict[str, str]]) -> str:
    if not tags:
        return ""
    return " ".join(f'(labels.{k} = "{v}")' for k, v in sorted(tags.items()))


class GCEBackend(ResourceBackend):
    name = "gce"

    def __init__(
        self,
        project: str,
        zone: str,
        region: str = "",
        name_prefix: str = "zonekeeper",
        disks_client=None,
        addresses_client=None,
        instances_client=None,
    ):
        if not project:
            raise ValueError("project must be set for the Compute Engine backend")
        self.project = project
        self.zone = zone
        self.region = region or zone.rsplit("-", 1)[0]
        self.name_prefix = name_prefix
        self._disks = disks_client
        self._addresses = addresses_client
        self._instances = instances_client

    # ── Lazy clients ──

    @property
    def disks(self):
        if self._disks is None:
            self._disks = compute_v1.DisksClient()
        return self._disks

    @property
    def addresses(self):
        if self._addresses is None:
            self._addresses = compute_v1.AddressesClient()
        return self._addresses

    @property
    def instances(self):
        if self._instances is None:
            self._instances = compute_v1.InstancesClient()
        return self._instances

    # ── Conversion ──

    def _disk_descriptor(self, disk) -> ResourceDescriptor:
        users = [_last_segment(u) for u in disk.users]
        status = disk.status
        if status == "READY":
            state = STATE_IN_USE if users else STATE_AVAILABLE
        else:
            state = _DISK_STATUS.get(status, status.lower())
        return ResourceDescriptor(
            id=disk.name,
            kind=KIND_VOLUME,
            zone=_last_segment(disk.zone),
            tags=dict(disk.labels),
            state=state,
            attachments=[
                # Disks are always attached with device_name = disk name.
                Attachment(node_id=u, state=ATTACH_ATTACHED, device=f"/dev/disk/by-id/google-{disk.name}")
                for u in users
            ],
            details={"self_link": disk.self_link, "label_fingerprint": disk.label_fingerprint},
        )

    def _address_descriptor(self, address) -> ResourceDescriptor:
        users = [_last_segment(u) for u in address.users]
        return ResourceDescriptor(
            id=address.name,
            kind=KIND_ADDRESS,
            zone=_last_segment(address.region),
            tags=dict(address.labels),
            state=_ADDRESS_STATUS.get(address.status, address.status.lower()),
            attachments=[Attachment(node_id=u, state=ATTACH_ATTACHED) for u in users],
            details={"public_ip": address.address, "label_fingerprint": address.label_fingerprint},
        )

    @staticmethod
    def _no_interfaces() -> ConfigurationConflict:
        return ConfigurationConflict(
            "Compute Engine has no detachable network interfaces; use the ec2 provider"
        )

    # ── ResourceBackend ──

    def describe(
        self,
        kind: str,
        zone: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None,
        attached_to: Optional[NodeIdentity] = None,
    ) -> List[ResourceDescriptor]:
        check_kind(kind)
        flt = _label_filter(tags)
        if kind == KIND_VOLUME:
            with _api_errors(f"list disks in {zone or self.zone}"):
                raw = list(self.disks.list(project=self.project, zone=zone or self.zone, filter=flt))
            found = [self._disk_descriptor(d) for d in raw]
        elif kind == KIND_ADDRESS:
            with _api_errors(f"list addresses in {zone or self.region}"):
                raw = list(self.addresses.list(project=self.project, region=zone or self.region, filter=flt))
            found = [self._address_descriptor(a) for a in raw]
        else:
            raise self._no_interfaces()

        if tags:
            found = [r for r in found if r.matches_tags(tags)]
        if attached_to is not None:
            found = [r for r in found if r.attached_to(attached_to.api_name)]
        return found

    def get(self, kind: str, resource_id: str) -> ResourceDescriptor:
        check_kind(kind)
        if kind == KIND_VOLUME:
            with _api_errors(f"get disk {resource_id}"):
                disk = self.disks.get(project=self.project, zone=self.zone, disk=resource_id)
            return self._disk_descriptor(disk)
        if kind == KIND_ADDRESS:
            with _api_errors(f"get address {resource_id}"):
                address = self.addresses.get(project=self.project, region=self.region, address=resource_id)
            return self._address_descriptor(address)
        raise self._no_interfaces()

    def create(self, kind: str, zone: str, tags: Dict[str, str], **params) -> ResourceDescriptor:
        check_kind(kind)
        name = f"{self.name_prefix}-{kind}-{uuid.uuid4().hex[:8]}"
        if kind == KIND_VOLUME:
            disk_type = params.get("volume_type") or "pd-balanced"
            disk = compute_v1.Disk(
                name=name,
                size_gb=int(params.get("size_gb") or 300),
                type_=f"zones/{zone}/diskTypes/{disk_type}",
                labels=dict(tags),
            )
            if params.get("iops"):
                disk.provisioned_iops = int(params["iops"])
            if params.get("throughput"):
                disk.provisioned_throughput = int(params["throughput"])
            logger.info(f"Creating disk {name} ({disk.size_gb}GB {disk_type}) in {zone}")
            with _api_errors(f"create disk {name}"):
                op = self.disks.insert(project=self.project, zone=zone, disk_resource=disk)
                op.result(timeout=OPERATION_TIMEOUT_SEC)
            return self.get(kind, name)

        if kind == KIND_ADDRESS:
            address = compute_v1.Address(
                name=name,
                labels=dict(tags),
                network_tier=params.get("network_tier") or "PREMIUM",
            )
            logger.info(f"Reserving address {name} in {zone}")
            with _api_errors(f"create address {name}"):
                op = self.addresses.insert(project=self.project, region=zone, address_resource=address)
                op.result(timeout=OPERATION_TIMEOUT_SEC)
            return self.get(kind, name)

        raise self._no_interfaces()

    def attach(self, kind: str, resource_id: str, node: NodeIdentity, **params) -> str:
        check_kind(kind)
        resource = self.get(kind, resource_id)
        if resource.attached_to(node.api_name):
            logger.info(f"{resource_id} already attached to {node.api_name}")
            return f"{node.api_name}/{resource_id}"
        if resource.attachments:
            owners = ", ".join(a.node_id for a in resource.attachments)
            raise ConfigurationConflict(f"{resource_id} is attached to {owners}")

        if kind == KIND_VOLUME:
            attached = compute_v1.AttachedDisk(
                source=resource.details["self_link"],
                device_name=resource_id,
                auto_delete=False,
            )
            logger.info(f"Attaching disk {resource_id} to {node.api_name}")
            with _api_errors(f"attach disk {resource_id}", conflict_is_fatal=True):
                op = self.instances.attach_disk(
                    project=self.project,
                    zone=node.zone,
                    instance=node.api_name,
                    attached_disk_resource=attached,
                )
                op.result(timeout=OPERATION_TIMEOUT_SEC)
            return f"{node.api_name}/{resource_id}"

        if kind == KIND_ADDRESS:
            self._associate_address(resource, node)
            return f"{node.api_name}/{NETWORK_INTERFACE}/{ACCESS_CONFIG_NAME}"

        raise self._no_interfaces()

    def _associate_address(self, resource: ResourceDescriptor, node: NodeIdentity) -> None:
        ip = resource.details["public_ip"]
        with _api_errors(f"get instance {node.api_name}"):
            instance = self.instances.get(project=self.project, zone=node.zone, instance=node.api_name)

        nics = [n for n in instance.network_interfaces if n.name == NETWORK_INTERFACE]
        if len(nics) != 1:
            raise ConfigurationConflict(f"{node.api_name} has no {NETWORK_INTERFACE}")
        for ac in nics[0].access_configs:
            if ac.nat_i_p == ip:
                return
            # An instance takes a single external NAT; replace the ephemeral one.
            logger.info(f"Removing access config {ac.name} ({ac.nat_i_p}) from {node.api_name}")
            with _api_errors(f"delete access config {ac.name}", conflict_is_fatal=True):
                op = self.instances.delete_access_config(
                    project=self.project,
                    zone=node.zone,
                    instance=node.api_name,
                    access_config=ac.name,
                    network_interface=NETWORK_INTERFACE,
                )
                op.result(timeout=OPERATION_TIMEOUT_SEC)

        access_config = compute_v1.AccessConfig(
            name=ACCESS_CONFIG_NAME,
            nat_i_p=ip,
            type_="ONE_TO_ONE_NAT",
        )
        logger.info(f"Associating {resource.id} ({ip}) with {node.api_name}")
        with _api_errors(f"associate address {resource.id}", conflict_is_fatal=True):
            op = self.instances.add_access_config(
                project=self.project,
                zone=node.zone,
                instance=node.api_name,
                network_interface=NETWORK_INTERFACE,
                access_config_resource=access_config,
            )
            op.result(timeout=OPERATION_TIMEOUT_SEC)

    def set_tags(self, kind: str, resource_id: str, tags: Dict[str, str]) -> None:
        check_kind(kind)
        if kind == KIND_INTERFACE:
            raise self._no_interfaces()

        for attempt in range(LABEL_WRITE_ATTEMPTS):
            current = self.get(kind, resource_id)
            labels = dict(current.tags)
            labels.update(tags)
            fingerprint = current.details["label_fingerprint"]
            try:
                with _api_errors(f"set labels on {resource_id}"):
                    if kind == KIND_VOLUME:
                        op = self.disks.set_labels(
                            project=self.project,
                            zone=self.zone,
                            resource=resource_id,
                            zone_set_labels_request_resource=compute_v1.ZoneSetLabelsRequest(
                                label_fingerprint=fingerprint, labels=labels
                            ),
                        )
                    else:
                        op = self.addresses.set_labels(
                            project=self.project,
                            region=self.region,
                            resource=resource_id,
                            region_set_labels_request_resource=compute_v1.RegionSetLabelsRequest(
                                label_fingerprint=fingerprint, labels=labels
                            ),
                        )
                    op.result(timeout=OPERATION_TIMEOUT_SEC)
            except ProvisionerError as e:
                if isinstance(e.__cause__, gexc.PreconditionFailed):
                    logger.info(
                        f"Label fingerprint conflict on {resource_id} "
                        f"(attempt {attempt+1}/{LABEL_WRITE_ATTEMPTS})"
                    )
                    continue
                raise
            return
        raise TransientBackendError(f"Label write retries exhausted for {resource_id}")

    def delete(self, kind: str, resource_id: str) -> None:
        check_kind(kind)
        if kind == KIND_VOLUME:
            with _api_errors(f"delete disk {resource_id}"):
                self.disks.delete(project=self.project, zone=self.zone, disk=resource_id)
        elif kind == KIND_ADDRESS:
            with _api_errors(f"delete address {resource_id}"):
                self.addresses.delete(project=self.project, region=self.region, address=resource_id)
        else:
            raise self._no_interfaces()
        logger.info(f"Delete requested for {kind} {resource_id}")

    def node_pool(self, node: NodeIdentity) -> Optional[str]:
        with _api_errors(f"get instance {node.api_name}"):
            instance = self.instances.get(project=self.project, zone=node.zone, instance=node.api_name)
        for item in instance.metadata.items:
            # projects/123/zones/us-east1-c/instanceGroupManagers/<name>
            if item.key == POOL_METADATA_KEY and item.value:
                return _last_segment(item.value)
        return None

    def publish(self, node: NodeIdentity, key: str, value: str) -> None:
        # Label values cannot hold IPs or JSON; instance metadata can.
        for attempt in range(LABEL_WRITE_ATTEMPTS):
            with _api_errors(f"get instance {node.api_name}"):
                instance = self.instances.get(project=self.project, zone=node.zone, instance=node.api_name)
            items = [
                compute_v1.Items(key=i.key, value=i.value)
                for i in instance.metadata.items
                if i.key != key
            ]
            items.append(compute_v1.Items(key=key, value=value))
            metadata = compute_v1.Metadata(fingerprint=instance.metadata.fingerprint, items=items)
            try:
                with _api_errors(f"set metadata on {node.api_name}"):
                    op = self.instances.set_metadata(
                        project=self.project,
                        zone=node.zone,
                        instance=node.api_name,
                        metadata_resource=metadata,
                    )
                    op.result(timeout=OPERATION_TIMEOUT_SEC)
            except ProvisionerError as e:
                if isinstance(e.__cause__, gexc.PreconditionFailed):
                    logger.info(
                        f"Metadata fingerprint conflict on {node.api_name} "
                        f"(attempt {attempt+1}/{LABEL_WRITE_ATTEMPTS})"
                    )
                    continue
                raise
            return
        raise TransientBackendError(f"Metadata write retries exhausted for {node.api_name}")
