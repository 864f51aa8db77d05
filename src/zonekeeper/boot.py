"""Node boot sequence: jitter, identity, pool membership, then provisioning."""

from __future__ import annotations

import logging
import random
import threading
from typing import Optional

from zonekeeper.backend import ResourceBackend
from zonekeeper.clock import DEFAULT_CLOCK, SystemClock
from zonekeeper.config import ProvisionerConfig
from zonekeeper.errors import ConvergenceTimeout, PollCancelled, TransientBackendError
from zonekeeper.lease import ClaimResult, LeaseManager
from zonekeeper.local_state import LocalStateCache
from zonekeeper.metadata import fetch_identity
from zonekeeper.models import NodeIdentity, ProvisionResult
from zonekeeper.notify import notify
from zonekeeper.provisioner import PROVISIONERS, ResourceProvisioner, VolumeProvisioner

logger = logging.getLogger(__name__)


def initial_wait(
    max_seconds: float,
    stop_event: threading.Event,
    clock: SystemClock = DEFAULT_CLOCK,
    rng: Optional[random.Random] = None,
) -> float:
    """Sleep a random time so a freshly scaled fleet does not hit the tag store at once.

    Tags on new instances also take a while to populate.
    """
    if max_seconds <= 0:
        return 0.0
    delay = (rng or random).uniform(0, max_seconds)
    logger.info(f"Initial wait {delay:.1f}s (max {max_seconds:.0f}s)")
    if clock.wait(stop_event, delay):
        raise PollCancelled("stopped during initial wait")
    return delay


def resolve_node(cfg: ProvisionerConfig) -> NodeIdentity:
    """Node identity from config overrides, falling back to the metadata server."""
    if cfg.node_id and cfg.zone:
        return NodeIdentity(node_id=cfg.node_id, zone=cfg.zone, name=cfg.node_name)
    fetched = fetch_identity(cfg.provider)
    return NodeIdentity(
        node_id=cfg.node_id or fetched.node_id,
        zone=cfg.zone or fetched.zone,
        name=cfg.node_name or fetched.name,
    )


def build_backend(cfg: ProvisionerConfig, node: NodeIdentity) -> ResourceBackend:
    if cfg.provider == "gce":
        from zonekeeper.gce_backend import GCEBackend

        return GCEBackend(
            project=cfg.project,
            zone=node.zone,
            region=cfg.region or node.region,
            name_prefix=cfg.name_prefix,
        )
    from zonekeeper.ec2_backend import EC2Backend

    return EC2Backend(region=cfg.region or node.region)


def wait_for_pool(
    backend: ResourceBackend,
    node: NodeIdentity,
    timeout: float,
    interval: float,
    stop_event: threading.Event,
    clock: SystemClock = DEFAULT_CLOCK,
) -> str:
    """Poll until the node's auto-scaling group membership is visible."""
    deadline = clock.monotonic() + timeout
    while True:
        try:
            pool = backend.node_pool(node)
        except TransientBackendError as e:
            logger.warning(f"Pool lookup failed; retrying: {e}")
            pool = None
        if pool:
            logger.info(f"Node {node.api_name} belongs to pool {pool}")
            return pool

        remaining = deadline - clock.monotonic()
        if remaining <= 0:
            raise ConvergenceTimeout(
                f"pool membership of {node.api_name} not visible after {timeout:.0f}s"
            )
        logger.info(f"Pool membership of {node.api_name} not visible yet")
        if clock.wait(stop_event, min(interval, remaining)):
            raise PollCancelled("stopped while waiting for pool membership")


def build_provisioner(
    cfg: ProvisionerConfig,
    backend: ResourceBackend,
    node: NodeIdentity,
    pool: str,
    stop_event: threading.Event,
    clock: SystemClock = DEFAULT_CLOCK,
) -> ResourceProvisioner:
    def _announce_takeover(result: ClaimResult) -> None:
        notify(
            f"WARN: {node.api_name} took over {cfg.kind} {result.resource.id} "
            f"from {result.previous.holder} (lease {result.previous.encode()})",
            webhook_url=cfg.webhook_url,
        )

    leases = LeaseManager(
        backend,
        cfg.kind,
        holder_id=node.node_id,
        lease_tag_key=cfg.lease_tag_key,
        lease_timeout=cfg.lease_timeout,
        clock=clock,
        on_takeover=_announce_takeover,
    )
    kwargs = dict(
        create_params=cfg.create_params(),
        attach_params=cfg.attach_params(),
        poll_interval=cfg.poll_interval,
        poll_timeout=cfg.poll_timeout,
        publish_key=cfg.publish_key,
        stop_event=stop_event,
        clock=clock,
    )
    cls = PROVISIONERS[cfg.kind]
    if cls is VolumeProvisioner:
        kwargs.update(
            device_path=cfg.device_path,
            mount_dir=cfg.mount_dir,
            fs_type=cfg.fs_type,
            fstab_path=cfg.fstab_path,
        )
    return cls(
        backend,
        node,
        leases,
        LocalStateCache(cfg.resolved_state_file),
        cfg.selector_tags(pool),
        **kwargs,
    )


def run(
    cfg: ProvisionerConfig,
    stop_event: Optional[threading.Event] = None,
    clock: SystemClock = DEFAULT_CLOCK,
    backend: Optional[ResourceBackend] = None,
    node: Optional[NodeIdentity] = None,
) -> ProvisionResult:
    stop_event = stop_event or threading.Event()
    logger.info(f"zonekeeper starting (provider={cfg.provider}, kind={cfg.kind})")

    initial_wait(cfg.initial_wait_random_seconds, stop_event, clock)
    node = node or resolve_node(cfg)
    backend = backend or build_backend(cfg, node)

    pool = cfg.pool_tag_value or wait_for_pool(
        backend, node, cfg.pool_wait_timeout, cfg.pool_wait_interval, stop_event, clock
    )
    provisioner = build_provisioner(cfg, backend, node, pool, stop_event, clock)
    return provisioner.provision()
