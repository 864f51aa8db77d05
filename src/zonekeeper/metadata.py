"""Identity of the local node, read from the provider's metadata server."""

from __future__ import annotations

import logging

import requests

from zonekeeper.errors import TransientBackendError
from zonekeeper.models import NodeIdentity

logger = logging.getLogger(__name__)

GCE_METADATA_URL = "http://metadata.google.internal/computeMetadata/v1"
EC2_METADATA_URL = "http://169.254.169.254/latest"
EC2_TOKEN_TTL_SEC = 21600
METADATA_TIMEOUT_SEC = 10


def _get(url: str, headers: dict) -> str:
    try:
        resp = requests.get(url, headers=headers, timeout=METADATA_TIMEOUT_SEC)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise TransientBackendError(f"metadata request {url} failed: {e}") from e
    return resp.text.strip()


def fetch_gce_metadata(path: str) -> str:
    return _get(f"{GCE_METADATA_URL}/{path}", {"Metadata-Flavor": "Google"})


def fetch_gce_identity() -> NodeIdentity:
    """Numeric instance id (lease holder), instance name and zone."""
    instance_id = fetch_gce_metadata("instance/id")
    name = fetch_gce_metadata("instance/name")
    # projects/123456/zones/us-east1-c
    zone = fetch_gce_metadata("instance/zone").rsplit("/", 1)[-1]
    logger.info(f"Compute Engine instance {name} (id {instance_id}) in {zone}")
    return NodeIdentity(node_id=instance_id, zone=zone, name=name)


def fetch_ec2_token() -> str:
    """IMDSv2 session token."""
    url = f"{EC2_METADATA_URL}/api/token"
    try:
        resp = requests.put(
            url,
            headers={"X-aws-ec2-metadata-token-ttl-seconds": str(EC2_TOKEN_TTL_SEC)},
            timeout=METADATA_TIMEOUT_SEC,
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        raise TransientBackendError(f"metadata token request failed: {e}") from e
    return resp.text.strip()


def fetch_ec2_metadata(path: str, token: str | None = None) -> str:
    token = token or fetch_ec2_token()
    return _get(f"{EC2_METADATA_URL}/meta-data/{path}", {"X-aws-ec2-metadata-token": token})


def fetch_ec2_identity() -> NodeIdentity:
    token = fetch_ec2_token()
    instance_id = fetch_ec2_metadata("instance-id", token)
    zone = fetch_ec2_metadata("placement/availability-zone", token)
    logger.info(f"EC2 instance {instance_id} in {zone}")
    return NodeIdentity(node_id=instance_id, zone=zone)


def fetch_identity(provider: str) -> NodeIdentity:
    if provider == "gce":
        return fetch_gce_identity()
    if provider == "ec2":
        return fetch_ec2_identity()
    raise ValueError(f"Unknown provider '{provider}'")
