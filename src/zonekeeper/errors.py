"""Error taxonomy shared by the lease, polling and provisioning layers.

Only TransientBackendError is absorbed internally (by the poller and by tag
writes); every other kind propagates to the boot sequence, which logs it and
exits non-zero.
"""

from __future__ import annotations


class ProvisionerError(Exception):
    """Base class for every error the boot sequence knows how to report."""


class NotFound(ProvisionerError):
    """No matching resource exists. Callers fall back to creating one."""


class LeaseRejected(ProvisionerError):
    """Another node holds a fresh lease on the resource."""

    def __init__(self, resource_id: str, holder: str, age_sec: float):
        super().__init__(
            f"{resource_id} is leased by {holder} ({age_sec:.0f}s ago)"
        )
        self.resource_id = resource_id
        self.holder = holder
        self.age_sec = age_sec


class TransientBackendError(ProvisionerError):
    """Network failure or throttling; safe to retry."""


class TerminalProviderFailure(ProvisionerError):
    """The resource entered a failed state or vanished while we waited on it."""


class ConfigurationConflict(ProvisionerError):
    """The provider state is ambiguous or contradicts this node's claim."""


class ConvergenceTimeout(ProvisionerError):
    """The resource did not reach its target state before the deadline."""


class PollCancelled(ProvisionerError):
    """Polling stopped because the stop signal was set."""
