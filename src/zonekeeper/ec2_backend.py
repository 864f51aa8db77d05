"""EC2 backend: EBS volumes, elastic network interfaces and elastic IPs."""

from __future__ import annotations

import contextlib
import logging
from typing import Dict, Iterator, List, Optional

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

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
from zonekeeper.state_machine import ATTACH_ATTACHED, STATE_AVAILABLE, STATE_IN_USE

logger = logging.getLogger(__name__)

# Do not create tags under "aws:"; only query them.
ASG_NAME_TAG_KEY = "aws:autoscaling:groupName"

VOLUME_TYPES = ("gp2", "gp3", "io1", "io2")

_TRANSIENT_CODES = frozenset({
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
    "InternalError",
    "ServiceUnavailable",
    "Unavailable",
})

_CONFLICT_CODES = frozenset({
    "VolumeInUse",
    "IncorrectState",
    "InvalidVolume.ZoneMismatch",
    "Resource.AlreadyAssociated",
    "InvalidParameterCombination",
    "AttachmentLimitExceeded",
})

_NETWORK_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


@contextlib.contextmanager
def _api_errors(what: str, conflict_is_fatal: bool = False) -> Iterator[None]:
    """Translate botocore exceptions into the provisioning taxonomy."""
    try:
        yield
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "")
        if code.endswith("NotFound"):
            raise NotFound(f"{what}: {code}") from e
        if code in _TRANSIENT_CODES:
            raise TransientBackendError(f"{what}: {code}") from e
        if conflict_is_fatal and code in _CONFLICT_CODES:
            raise ConfigurationConflict(f"{what}: {e}") from e
        raise ProvisionerError(f"{what}: {e}") from e
    except _NETWORK_ERRORS as e:
        raise TransientBackendError(f"{what}: {e}") from e
    except BotoCoreError as e:
        raise ProvisionerError(f"{what}: {e}") from e


def _tags_from(raw: Optional[List[dict]]) -> Dict[str, str]:
    return {t["Key"]: t["Value"] for t in raw or []}


def _tags_to(tags: Dict[str, str]) -> List[dict]:
    return [{"Key": k, "Value": v} for k, v in sorted(tags.items())]


def _filters(
    tags: Optional[Dict[str, str]] = None,
    zone_key: str = "",
    zone: Optional[str] = None,
    attached_key: str = "",
    attached_to: Optional[NodeIdentity] = None,
) -> List[dict]:
    out = [{"Name": f"tag:{k}", "Values": [v]} for k, v in sorted((tags or {}).items())]
    if zone and zone_key:
        out.append({"Name": zone_key, "Values": [zone]})
    if attached_to is not None and attached_key:
        out.append({"Name": attached_key, "Values": [attached_to.api_name]})
    return out


def convert_volume(raw: dict) -> ResourceDescriptor:
    return ResourceDescriptor(
        id=raw["VolumeId"],
        kind=KIND_VOLUME,
        zone=raw.get("AvailabilityZone", ""),
        tags=_tags_from(raw.get("Tags")),
        state=raw.get("State", ""),
        attachments=[
            Attachment(
                node_id=a.get("InstanceId", ""),
                state=a.get("State", ""),
                device=a.get("Device", ""),
            )
            for a in raw.get("Attachments") or []
            if a.get("State") != "detached"
        ],
        details={"size_gb": raw.get("Size"), "volume_type": raw.get("VolumeType")},
    )


def convert_interface(raw: dict) -> ResourceDescriptor:
    attachment = raw.get("Attachment")
    attachments = []
    status = raw.get("Status", "")
    if attachment and attachment.get("Status") != "detached":
        attachments.append(
            Attachment(
                node_id=attachment.get("InstanceId", ""),
                state=attachment.get("Status", ""),
                device=str(attachment.get("DeviceIndex", "")),
                attachment_id=attachment.get("AttachmentId", ""),
            )
        )
        # ENI status reports the attachment phase ("attaching", "associated"...).
        status = STATE_IN_USE
    return ResourceDescriptor(
        id=raw["NetworkInterfaceId"],
        kind=KIND_INTERFACE,
        zone=raw.get("AvailabilityZone", ""),
        tags=_tags_from(raw.get("TagSet")),
        state=status,
        attachments=attachments,
        details={
            "private_ip": raw.get("PrivateIpAddress", ""),
            "network_card_index": (attachment or {}).get("NetworkCardIndex"),
        },
    )


def convert_address(raw: dict, region: str) -> ResourceDescriptor:
    associated = bool(raw.get("AssociationId"))
    return ResourceDescriptor(
        id=raw["AllocationId"],
        kind=KIND_ADDRESS,
        zone=raw.get("NetworkBorderGroup") or region,
        tags=_tags_from(raw.get("Tags")),
        state=STATE_IN_USE if associated else STATE_AVAILABLE,
        attachments=[
            Attachment(
                node_id=raw.get("InstanceId", ""),
                state=ATTACH_ATTACHED,
                attachment_id=raw.get("AssociationId", ""),
            )
        ] if associated else [],
        details={"public_ip": raw.get("PublicIp", "")},
    )


class EC2Backend(ResourceBackend):
    name = "ec2"

    def __init__(self, region: str, client=None):
        if not region:
            raise ValueError("region must be set for the EC2 backend")
        self.region = region
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("ec2", region_name=self.region)
        return self._client

    def _instance(self, instance_id: str) -> dict:
        with _api_errors(f"describe instance {instance_id}"):
            out = self.client.describe_instances(InstanceIds=[instance_id])
        reservations = out.get("Reservations", [])
        if len(reservations) != 1 or len(reservations[0].get("Instances", [])) != 1:
            raise NotFound(f"instance {instance_id}: expected exactly one instance")
        return reservations[0]["Instances"][0]

    def _paginate(self, operation: str, result_key: str, **kwargs) -> List[dict]:
        items: List[dict] = []
        for page in self.client.get_paginator(operation).paginate(**kwargs):
            items.extend(page.get(result_key, []))
        return items

    # ── ResourceBackend ──

    def describe(
        self,
        kind: str,
        zone: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None,
        attached_to: Optional[NodeIdentity] = None,
    ) -> List[ResourceDescriptor]:
        check_kind(kind)
        if kind == KIND_VOLUME:
            flt = _filters(tags, "availability-zone", zone, "attachment.instance-id", attached_to)
            with _api_errors("describe volumes"):
                raw = self._paginate("describe_volumes", "Volumes", Filters=flt)
            found = [convert_volume(v) for v in raw]
        elif kind == KIND_INTERFACE:
            flt = _filters(tags, "availability-zone", zone, "attachment.instance-id", attached_to)
            with _api_errors("describe network interfaces"):
                raw = self._paginate("describe_network_interfaces", "NetworkInterfaces", Filters=flt)
            found = [convert_interface(n) for n in raw]
        else:
            # Addresses are regional; describe_addresses does not paginate.
            flt = _filters(tags, attached_key="instance-id", attached_to=attached_to)
            with _api_errors("describe addresses"):
                out = self.client.describe_addresses(Filters=flt)
            found = [convert_address(a, self.region) for a in out.get("Addresses", [])]

        if attached_to is not None:
            found = [r for r in found if r.attached_to(attached_to.api_name)]
        logger.debug(f"Described {len(found)} {kind}(s)")
        return found

    def get(self, kind: str, resource_id: str) -> ResourceDescriptor:
        check_kind(kind)
        if kind == KIND_VOLUME:
            with _api_errors(f"describe volume {resource_id}"):
                out = self.client.describe_volumes(VolumeIds=[resource_id])
            items = [convert_volume(v) for v in out.get("Volumes", [])]
        elif kind == KIND_INTERFACE:
            with _api_errors(f"describe network interface {resource_id}"):
                out = self.client.describe_network_interfaces(NetworkInterfaceIds=[resource_id])
            items = [convert_interface(n) for n in out.get("NetworkInterfaces", [])]
        else:
            with _api_errors(f"describe address {resource_id}"):
                out = self.client.describe_addresses(AllocationIds=[resource_id])
            items = [convert_address(a, self.region) for a in out.get("Addresses", [])]

        if not items:
            raise NotFound(f"{kind} {resource_id} does not exist")
        if len(items) != 1:
            raise TransientBackendError(f"expected 1 {kind} for {resource_id}, got {len(items)}")
        return items[0]

    def create(self, kind: str, zone: str, tags: Dict[str, str], **params) -> ResourceDescriptor:
        check_kind(kind)
        if kind == KIND_VOLUME:
            return self._create_volume(zone, tags, **params)
        if kind == KIND_INTERFACE:
            return self._create_interface(zone, tags, **params)
        return self._allocate_address(tags)

    def _create_volume(self, zone: str, tags: Dict[str, str], **params) -> ResourceDescriptor:
        volume_type = params.get("volume_type") or "gp3"
        if volume_type not in VOLUME_TYPES:
            raise ConfigurationConflict(f"invalid ec2 volume type '{volume_type}'")
        request = {
            "AvailabilityZone": zone,
            "VolumeType": volume_type,
            "Size": int(params.get("size_gb") or 300),
            "Encrypted": bool(params.get("encrypted", True)),
            "TagSpecifications": [{"ResourceType": "volume", "Tags": _tags_to(tags)}],
        }
        if volume_type in ("gp3", "io1", "io2"):
            request["Iops"] = int(params.get("iops") or 3000)
        if volume_type == "gp3":
            request["Throughput"] = int(params.get("throughput") or 500)

        logger.info(f"Creating {request['Size']}GB {volume_type} volume in {zone}")
        with _api_errors("create volume"):
            out = self.client.create_volume(**request)
        return self.get(KIND_VOLUME, out["VolumeId"])

    def _create_interface(self, zone: str, tags: Dict[str, str], **params) -> ResourceDescriptor:
        subnet_id = params.get("subnet_id")
        groups = list(params.get("security_group_ids") or [])
        node = params.get("node")
        if (not subnet_id or not groups) and node is not None:
            # Default to the node's own subnet and security groups.
            instance = self._instance(node.api_name)
            subnet_id = subnet_id or instance.get("SubnetId")
            groups = groups or [g["GroupId"] for g in instance.get("SecurityGroups", [])]
        if not subnet_id:
            raise ConfigurationConflict("subnet_id is required to create a network interface")

        request = {
            "SubnetId": subnet_id,
            "TagSpecifications": [{"ResourceType": "network-interface", "Tags": _tags_to(tags)}],
        }
        if groups:
            request["Groups"] = groups
        logger.info(f"Creating network interface in {subnet_id} ({zone})")
        with _api_errors("create network interface"):
            out = self.client.create_network_interface(**request)
        return convert_interface(out["NetworkInterface"])

    def _allocate_address(self, tags: Dict[str, str]) -> ResourceDescriptor:
        logger.info(f"Allocating elastic IP in {self.region}")
        with _api_errors("allocate address"):
            out = self.client.allocate_address(
                Domain="vpc",
                TagSpecifications=[{"ResourceType": "elastic-ip", "Tags": _tags_to(tags)}],
            )
        return self.get(KIND_ADDRESS, out["AllocationId"])

    def attach(self, kind: str, resource_id: str, node: NodeIdentity, **params) -> str:
        check_kind(kind)
        resource = self.get(kind, resource_id)
        if resource.attached_to(node.api_name):
            logger.info(f"{resource_id} already attached to {node.api_name}")
            return resource.attachments[0].attachment_id or f"{node.api_name}/{resource_id}"

        if kind == KIND_VOLUME:
            # Nitro instances ignore this name and expose /dev/nvme*; mkfs and mount need device_path there.
            device = params.get("device_name") or "/dev/xvdb"
            logger.info(f"Attaching volume {resource_id} to {node.api_name} as {device}")
            with _api_errors(f"attach volume {resource_id}", conflict_is_fatal=True):
                self.client.attach_volume(Device=device, InstanceId=node.api_name, VolumeId=resource_id)
            return f"{node.api_name}/{device}"

        if kind == KIND_INTERFACE:
            instance = self._instance(node.api_name)
            index = len(instance.get("NetworkInterfaces", []))
            logger.info(f"Attaching network interface {resource_id} to {node.api_name} at index {index}")
            with _api_errors(f"attach network interface {resource_id}", conflict_is_fatal=True):
                out = self.client.attach_network_interface(
                    DeviceIndex=index, InstanceId=node.api_name, NetworkInterfaceId=resource_id
                )
            return out["AttachmentId"]

        logger.info(f"Associating address {resource_id} with {node.api_name}")
        with _api_errors(f"associate address {resource_id}", conflict_is_fatal=True):
            out = self.client.associate_address(
                AllocationId=resource_id, InstanceId=node.api_name, AllowReassociation=False
            )
        return out["AssociationId"]

    def set_tags(self, kind: str, resource_id: str, tags: Dict[str, str]) -> None:
        check_kind(kind)
        with _api_errors(f"create tags on {resource_id}"):
            self.client.create_tags(Resources=[resource_id], Tags=_tags_to(tags))

    def delete(self, kind: str, resource_id: str) -> None:
        check_kind(kind)
        if kind == KIND_VOLUME:
            with _api_errors(f"delete volume {resource_id}"):
                self.client.delete_volume(VolumeId=resource_id)
        elif kind == KIND_INTERFACE:
            with _api_errors(f"delete network interface {resource_id}"):
                self.client.delete_network_interface(NetworkInterfaceId=resource_id)
        else:
            with _api_errors(f"release address {resource_id}"):
                self.client.release_address(AllocationId=resource_id)
        logger.info(f"Delete requested for {kind} {resource_id}")

    def node_pool(self, node: NodeIdentity) -> Optional[str]:
        for k, v in _tags_from(self._instance(node.api_name).get("Tags")).items():
            if k == ASG_NAME_TAG_KEY or k.endswith("autoscaling:groupName"):
                return v
        return None

    def publish(self, node: NodeIdentity, key: str, value: str) -> None:
        with _api_errors(f"create tags on {node.api_name}"):
            self.client.create_tags(Resources=[node.api_name], Tags=[{"Key": key, "Value": value}])
