"""Filesystem helpers for attached block volumes (mkfs, mount, fstab)."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import List

from zonekeeper.errors import ProvisionerError

logger = logging.getLogger(__name__)

FSTAB_PATH = Path("/etc/fstab")


class DiskCommandError(ProvisionerError):
    pass


def device_path(device_name: str) -> str:
    if device_name.startswith("/dev/"):
        return device_name
    return f"/dev/{device_name}"


def _run(args: List[str]) -> str:
    cmd = shutil.which(args[0])
    if cmd is None:
        raise DiskCommandError(f"{args[0]} not found")
    logger.info(f"Running: {' '.join(args)}")
    proc = subprocess.run(
        [cmd] + args[1:],
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )
    if proc.returncode != 0:
        raise DiskCommandError(proc.stdout.strip() or f"{args[0]} exited {proc.returncode}")
    return proc.stdout


def mkfs(fs_type: str, device_name: str) -> str:
    """Create a filesystem. Only ever call this on a freshly created volume."""
    dev = device_path(device_name)
    try:
        return _run(["mkfs", "-t", fs_type, dev])
    except DiskCommandError as e:
        # e.g. "mke2fs 1.45.5 (07-Jan-2020) /dev/nvme1n1 is mounted; will not make a filesystem here!"
        if f"{dev} is mounted" in str(e):
            logger.warning(f"{dev} is already mounted; skipping mkfs")
            return str(e)
        raise


def mount(fs_type: str, device_name: str, mount_dir: str | Path) -> str:
    dev = device_path(device_name)
    Path(mount_dir).mkdir(parents=True, exist_ok=True)
    try:
        return _run(["mount", "-t", fs_type, dev, str(mount_dir)])
    except DiskCommandError as e:
        # e.g. "mount: /data: /dev/nvme1n1 already mounted on /data."
        if f"{dev} already mounted" in str(e):
            logger.warning(f"{dev} already mounted on {mount_dir}")
            return str(e)
        raise


def fstab_line(fs_type: str, device_name: str, mount_dir: str | Path) -> str:
    return f"{device_path(device_name)}       {mount_dir}   {fs_type}    defaults,nofail 0       2"


def update_fstab(
    fs_type: str,
    device_name: str,
    mount_dir: str | Path,
    fstab_path: str | Path = FSTAB_PATH,
) -> bool:
    """Append the mount to fstab so it survives a reboot. Returns False if already present."""
    fstab_path = Path(fstab_path)
    line = fstab_line(fs_type, device_name, mount_dir)
    current = fstab_path.read_text() if fstab_path.exists() else ""
    if line in current.splitlines():
        logger.info(f"{fstab_path} already contains '{line}'")
        return False

    updated = current
    if updated and not updated.endswith("\n"):
        updated += "\n"
    updated += line + "\n"

    fd, tmp = tempfile.mkstemp(prefix=".fstab.", dir=str(fstab_path.parent))
    with os.fdopen(fd, "w") as f:
        f.write(updated)
        f.flush()
        os.fsync(f.fileno())
    os.chmod(tmp, 0o644)
    os.replace(tmp, fstab_path)
    logger.info(f"Added '{line}' to {fstab_path}")
    return True
