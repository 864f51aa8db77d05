from __future__ import annotations

import logging
from typing import Dict, Optional

from zonekeeper.backend import ResourceBackend
from zonekeeper.errors import TransientBackendError

logger = logging.getLogger(__name__)

TAG_WRITE_ATTEMPTS = 3


class TagStore:
    """Resource tags used as the fleet's shared metadata store.

    There is no separate database: whatever the backend returns for a
    resource's tags is the truth every node sees.
    """

    def __init__(self, backend: ResourceBackend, kind: str):
        self.backend = backend
        self.kind = kind

    def read(self, resource_id: str) -> Dict[str, str]:
        return dict(self.backend.get(self.kind, resource_id).tags)

    def read_tag(self, resource_id: str, key: str) -> Optional[str]:
        return self.read(resource_id).get(key)

    def write(self, resource_id: str, tags: Dict[str, str]) -> None:
        """Merge ``tags`` into the resource, retrying transient failures."""
        last_error: Exception | None = None
        for attempt in range(TAG_WRITE_ATTEMPTS):
            try:
                self.backend.set_tags(self.kind, resource_id, tags)
                return
            except TransientBackendError as e:
                last_error = e
                logger.info(
                    f"Tag write on {resource_id} failed (attempt {attempt+1}/{TAG_WRITE_ATTEMPTS}): {e}"
                )
        logger.error(f"Tag write retries exhausted for {resource_id}")
        raise last_error
