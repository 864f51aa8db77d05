"""Drive an asynchronously provisioned resource to a target state by polling.

``poll`` is a generator: one ConvergenceEvent per tick, oldest first, with a
single cooperative suspension point per tick (``clock.wait`` on the stop
event). The first tick fires immediately so an already converged resource
returns without delay. A generator is not restartable; call ``poll`` again
for a fresh sequence.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Iterator, Optional

from zonekeeper.backend import ResourceBackend
from zonekeeper.clock import DEFAULT_CLOCK, SystemClock
from zonekeeper.errors import (
    ConvergenceTimeout,
    NotFound,
    PollCancelled,
    TerminalProviderFailure,
    TransientBackendError,
)
from zonekeeper.models import ConvergenceEvent, ResourceDescriptor
from zonekeeper.state_machine import STATE_DELETED, is_expected, is_terminal_failure

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SEC = 5.0
DEFAULT_POLL_TIMEOUT_SEC = 600.0


@dataclass(frozen=True)
class Target:
    """Wait until the resource is in ``state`` (and, if set, ``attachment_state``)."""

    state: str
    attachment_state: Optional[str] = None
    node_id: Optional[str] = None

    @classmethod
    def deleted(cls) -> "Target":
        return cls(STATE_DELETED)

    @property
    def wants_absent(self) -> bool:
        return self.state == STATE_DELETED

    def matches(self, resource: ResourceDescriptor) -> bool:
        if resource.state != self.state:
            return False
        if self.attachment_state is None:
            return True
        attachments = resource.attachments
        if self.node_id is not None:
            attachments = [a for a in attachments if a.node_id == self.node_id]
        if len(attachments) != 1:
            return False
        return attachments[0].state == self.attachment_state

    def __str__(self) -> str:
        if self.attachment_state:
            return f"{self.state}/{self.attachment_state}"
        return self.state


def poll(
    backend: ResourceBackend,
    kind: str,
    resource_id: str,
    target: Target,
    interval: float = DEFAULT_POLL_INTERVAL_SEC,
    timeout: float = DEFAULT_POLL_TIMEOUT_SEC,
    stop_event: Optional[threading.Event] = None,
    clock: SystemClock = DEFAULT_CLOCK,
) -> Iterator[ConvergenceEvent]:
    """Yield one event per tick until converged, failed, cancelled or past the deadline.

    Args:
        backend: Where the resource is described.
        kind: Resource kind passed through to the backend.
        resource_id: Resource to watch.
        target: Predicate to converge on.
        interval: Seconds between ticks after the first.
        timeout: Seconds from the call until the deadline.
        stop_event: Setting it ends the sequence with a PollCancelled event.
        clock: Injected clock; provides the wait.

    Terminal events carry ``converged=True`` or an ``error`` that is one of
    ConvergenceTimeout, PollCancelled or TerminalProviderFailure. Events with
    a TransientBackendError are informational; polling continues.
    """
    if interval <= 0:
        raise ValueError("interval must be positive")
    stop_event = stop_event or threading.Event()
    started = clock.monotonic()
    deadline = started + timeout
    prev_state: Optional[str] = None

    logger.info(
        f"Polling {kind} {resource_id} for {target} "
        f"(interval={interval:.0f}s, timeout={timeout:.0f}s)"
    )

    first = True
    while True:
        if stop_event.is_set():
            logger.warning(f"Polling {resource_id} stopped")
            yield ConvergenceEvent(error=PollCancelled(f"polling {resource_id} stopped"))
            return

        if not first:
            remaining = deadline - clock.monotonic()
            if remaining > 0 and clock.wait(stop_event, min(interval, remaining)):
                logger.warning(f"Polling {resource_id} stopped")
                yield ConvergenceEvent(error=PollCancelled(f"polling {resource_id} stopped"))
                return
            if clock.monotonic() >= deadline:
                elapsed = clock.monotonic() - started
                logger.warning(f"Polling {resource_id} gave up after {elapsed:.0f}s")
                yield ConvergenceEvent(
                    state=prev_state or "",
                    error=ConvergenceTimeout(
                        f"{kind} {resource_id} did not reach {target} within {timeout:.0f}s"
                    ),
                )
                return
        first = False

        try:
            resource = backend.get(kind, resource_id)
        except NotFound:
            if target.wants_absent:
                logger.info(f"{kind} {resource_id} is gone as desired")
                yield ConvergenceEvent(state=STATE_DELETED, converged=True)
                return
            logger.error(f"{kind} {resource_id} disappeared while waiting for {target}")
            yield ConvergenceEvent(
                error=TerminalProviderFailure(f"{kind} {resource_id} no longer exists")
            )
            return
        except TransientBackendError as e:
            logger.warning(f"Describe {resource_id} failed; retrying: {e}")
            yield ConvergenceEvent(state=prev_state or "", error=e)
            continue

        if prev_state is not None and not is_expected(prev_state, resource.state):
            logger.debug(f"{resource_id} jumped {prev_state} → {resource.state}")
        prev_state = resource.state

        logger.info(
            f"poll {resource_id}: state={resource.state} "
            f"attachment={resource.attachment_state or '-'} desired={target} "
            f"elapsed={clock.monotonic() - started:.0f}s"
        )

        if is_terminal_failure(resource.state):
            logger.error(f"{kind} {resource_id} entered terminal state {resource.state}")
            yield ConvergenceEvent(
                state=resource.state,
                attachment_state=resource.attachment_state,
                resource=resource,
                error=TerminalProviderFailure(
                    f"{kind} {resource_id} entered terminal state {resource.state}"
                ),
            )
            return

        converged = target.matches(resource)
        yield ConvergenceEvent(
            state=resource.state,
            attachment_state=resource.attachment_state,
            resource=resource,
            converged=converged,
        )
        if converged:
            logger.info(f"{kind} {resource_id} reached {target}")
            return


def wait_for(
    backend: ResourceBackend,
    kind: str,
    resource_id: str,
    target: Target,
    interval: float = DEFAULT_POLL_INTERVAL_SEC,
    timeout: float = DEFAULT_POLL_TIMEOUT_SEC,
    stop_event: Optional[threading.Event] = None,
    clock: SystemClock = DEFAULT_CLOCK,
) -> Optional[ResourceDescriptor]:
    """Drain ``poll``; return the converged descriptor or raise the terminating error."""
    last: Optional[ConvergenceEvent] = None
    for event in poll(backend, kind, resource_id, target, interval, timeout, stop_event, clock):
        last = event
    if last is None:
        raise ConvergenceTimeout(f"{kind} {resource_id}: no poll events")
    if last.converged:
        return last.resource
    if last.error is not None:
        raise last.error
    raise ConvergenceTimeout(f"{kind} {resource_id} did not reach {target}")
