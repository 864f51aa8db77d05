"""Capability interface every cloud adapter implements.

Adapters translate provider objects into ResourceDescriptor with the
normalized states from state_machine, and provider exceptions into the
errors module taxonomy: NotFound for missing resources,
TransientBackendError for network failures and throttling,
ConfigurationConflict for attach conflicts.
"""

from __future__ import annotations

import abc
from typing import Dict, List, Optional

from zonekeeper.models import NodeIdentity, ResourceDescriptor


class ResourceBackend(abc.ABC):
    name = "abstract"

    @abc.abstractmethod
    def describe(
        self,
        kind: str,
        zone: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None,
        attached_to: Optional[NodeIdentity] = None,
    ) -> List[ResourceDescriptor]:
        """List resources of ``kind`` matching every given filter. Never raises NotFound."""

    @abc.abstractmethod
    def get(self, kind: str, resource_id: str) -> ResourceDescriptor:
        """Describe one resource; raises NotFound when it does not exist."""

    @abc.abstractmethod
    def create(self, kind: str, zone: str, tags: Dict[str, str], **params) -> ResourceDescriptor:
        """Create a resource carrying ``tags`` from the start."""

    @abc.abstractmethod
    def attach(self, kind: str, resource_id: str, node: NodeIdentity, **params) -> str:
        """Attach (or associate) the resource to ``node``; returns an attachment id.

        Attaching a resource already attached to ``node`` is a no-op. Attaching
        one attached elsewhere raises ConfigurationConflict.
        """

    @abc.abstractmethod
    def set_tags(self, kind: str, resource_id: str, tags: Dict[str, str]) -> None:
        """Merge ``tags`` into the resource's tags."""

    @abc.abstractmethod
    def delete(self, kind: str, resource_id: str) -> None:
        ...

    @abc.abstractmethod
    def node_pool(self, node: NodeIdentity) -> Optional[str]:
        """Name of the auto-scaling group the node belongs to, once visible."""

    @abc.abstractmethod
    def publish(self, node: NodeIdentity, key: str, value: str) -> None:
        """Record ``key=value`` on the node itself so other tooling can find its resources."""
