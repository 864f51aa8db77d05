from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from zonekeeper.boot import run
from zonekeeper.config import ProvisionerConfig, load_config
from zonekeeper.errors import PollCancelled, ProvisionerError
from zonekeeper.notify import notify
from zonekeeper.state_machine import transitions_hash

logger = logging.getLogger("zonekeeper")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_STOPPED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zonekeeper",
        description="Claim or create a zonal volume, network interface or address and attach it to this node.",
    )
    parser.add_argument("--config", type=str, default="", help="Optional YAML config file.")
    parser.add_argument("--provider", choices=["gce", "ec2"], default=None, help="Cloud provider.")
    parser.add_argument(
        "--kind", choices=["volume", "interface", "address"], default=None, help="Resource kind to provision."
    )
    parser.add_argument("--project", type=str, default=None, help="Compute Engine project.")
    parser.add_argument("--region", type=str, default=None, help="Region (defaults to the node's).")
    parser.add_argument(
        "--zone", type=str, default=None, help="Placement zone (defaults to the node's, from the metadata server)."
    )
    parser.add_argument("--node-id", type=str, default=None, help="Lease holder id (defaults to the instance id).")
    parser.add_argument("--node-name", type=str, default=None, help="Instance name used for API calls.")

    tags = parser.add_argument_group("tags")
    tags.add_argument("--id-tag-key", type=str, default=None, help="Key of the 'id' tag.")
    tags.add_argument("--id-tag-value", type=str, default=None, help="Value of the 'id' tag (optional selector).")
    tags.add_argument("--kind-tag-key", type=str, default=None, help="Key of the 'kind' tag.")
    tags.add_argument(
        "--kind-tag-value", type=str, default=None, help="Value of the 'kind' tag (default <name-prefix>-<kind>)."
    )
    tags.add_argument("--pool-tag-key", type=str, default=None, help="Key of the pool-membership tag.")
    tags.add_argument(
        "--pool-tag-value",
        type=str,
        default=None,
        help="Pool name; when empty, wait for the node's auto-scaling group to become visible.",
    )
    tags.add_argument("--lease-tag-key", type=str, default=None, help="Key of the lease tag.")
    tags.add_argument(
        "--lease-timeout", type=float, default=None, help="Seconds after which another node's lease is stale."
    )
    tags.add_argument(
        "--publish-key", type=str, default=None, help="Record the claimed resource on the node under this key."
    )

    timing = parser.add_argument_group("timing")
    timing.add_argument(
        "--initial-wait-random-seconds",
        type=float,
        default=None,
        help="Maximum random wait before starting (>=60 recommended; tags take a while to populate).",
    )
    timing.add_argument("--poll-interval", type=float, default=None, help="Seconds between state polls.")
    timing.add_argument("--poll-timeout", type=float, default=None, help="Seconds to wait for each state.")
    timing.add_argument("--pool-wait-timeout", type=float, default=None, help="Seconds to wait for pool membership.")
    timing.add_argument(
        "--pool-wait-interval", type=float, default=None, help="Seconds between pool membership checks."
    )

    res = parser.add_argument_group("resource")
    res.add_argument("--state-file", type=str, default=None, help="Local record of the claimed resource.")
    res.add_argument("--volume-type", type=str, default=None, help="Disk/volume type (e.g. pd-balanced, gp3).")
    res.add_argument("--size-gb", type=int, default=None, help="Volume size in GB.")
    res.add_argument("--iops", type=int, default=None, help="Provisioned IOPS.")
    res.add_argument("--throughput", type=int, default=None, help="Provisioned throughput (MB/s).")
    res.add_argument("--device-name", type=str, default=None, help="Device name to attach the volume as (EC2).")
    res.add_argument(
        "--device-path",
        type=str,
        default=None,
        help="Block device to format and mount. Required on EC2 Nitro instances, where the volume "
        "shows up as an NVMe device (e.g. /dev/nvme1n1) rather than under its --device-name.",
    )
    res.add_argument("--mount-dir", type=str, default=None, help="Mount point; empty skips mkfs and mount.")
    res.add_argument("--fs-type", type=str, default=None, help="Filesystem type.")
    res.add_argument("--fstab-path", type=str, default=None, help="fstab file to record the mount in.")
    res.add_argument("--subnet-id", type=str, default=None, help="Subnet for new network interfaces.")
    res.add_argument(
        "--security-group-ids", type=str, default=None, help="Comma-separated security groups for new interfaces."
    )
    res.add_argument("--network-tier", type=str, default=None, help="Network tier for new GCE addresses.")
    res.add_argument("--name-prefix", type=str, default=None, help="Prefix for created resource names.")

    parser.add_argument("--webhook-url", type=str, default=None, help="Webhook for takeover/failure alerts.")
    parser.add_argument("--log-level", type=str, default=None, help="Logging level.")
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def config_from_args(args: argparse.Namespace) -> ProvisionerConfig:
    overrides = {k: v for k, v in vars(args).items() if k != "config" and v is not None}
    return load_config(args.config or None, overrides)


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _stop(signum, frame):
        logger.warning(f"Received signal {signum}; stopping")
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        cfg = config_from_args(args)
    except (OSError, ValueError) as e:
        print(f"zonekeeper: invalid configuration: {e}", file=sys.stderr)
        return EXIT_USAGE

    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    logger.info(f"resource_transitions.json SHA-256: {transitions_hash()}")

    stop_event = threading.Event()
    if threading.current_thread() is threading.main_thread():
        _install_signal_handlers(stop_event)

    try:
        result = run(cfg, stop_event)
    except PollCancelled as e:
        logger.warning(f"Provisioning stopped: {e}")
        return EXIT_STOPPED
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_STOPPED
    except ProvisionerError as e:
        logger.error(f"Provisioning {cfg.kind} failed: {type(e).__name__}: {e}", exc_info=True)
        notify(f"ERROR: zonekeeper {cfg.kind} provisioning failed: {e}", webhook_url=cfg.webhook_url)
        return EXIT_FAILED

    summary = {
        "id": result.resource.id,
        "kind": result.resource.kind,
        "zone": result.resource.zone,
        "source": result.source,
        "fresh": result.fresh,
    }
    if result.resource.details.get("public_ip"):
        summary["public_ip"] = result.resource.details["public_ip"]
    print(json.dumps(summary, sort_keys=True))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
