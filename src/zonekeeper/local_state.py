from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from zonekeeper.models import LocalStateRecord

logger = logging.getLogger(__name__)


class LocalStateCache:
    """Durable record of the resource this node last claimed.

    Survives daemon restarts (and stop/start of the instance) so a reboot
    re-attaches without re-running the claim race. A missing file means this
    is effectively the node's first boot.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> Optional[LocalStateRecord]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info(f"No local state at {self.path}")
            return None

        try:
            record = LocalStateRecord.from_dict(json.loads(text))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable local state {self.path}: {e}")
            return None

        logger.info(f"Loaded local state: {record.kind} {record.resource_id}")
        return record

    def save(self, record: LocalStateRecord) -> None:
        """Atomically replace the state file and fsync it before returning."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(record.to_dict(), indent=2, sort_keys=True)

        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

        _fsync_dir(self.path.parent)
        logger.info(f"Saved local state: {record.kind} {record.resource_id} -> {self.path}")

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        _fsync_dir(self.path.parent)


def _fsync_dir(path: Path) -> None:
    # The rename is only durable once the directory entry is flushed.
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)
