"""Shared fakes: an in-memory backend and a controllable clock."""

import copy
import sys
import threading
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from zonekeeper.backend import ResourceBackend
from zonekeeper.errors import ConfigurationConflict, NotFound
from zonekeeper.models import Attachment, NodeIdentity, ResourceDescriptor
from zonekeeper.state_machine import (
    ATTACH_ATTACHED,
    STATE_AVAILABLE,
    STATE_DELETED,
    STATE_DELETING,
    STATE_IN_USE,
    can_transition,
)


class FakeClock:
    """Wall and monotonic time that only move when someone waits."""

    def __init__(self, now=1000.0):
        self._now = float(now)
        self._mono = 0.0
        self.waits = []
        self.on_wait = None

    def now(self):
        return self._now

    def monotonic(self):
        return self._mono

    def advance(self, seconds):
        self._now += seconds
        self._mono += seconds

    def set_now(self, now):
        self._now = float(now)

    def wait(self, stop_event, seconds):
        self.waits.append(seconds)
        if stop_event.is_set():
            return True
        self.advance(max(seconds, 0))
        if self.on_wait is not None:
            self.on_wait(self)
        return stop_event.is_set()


class FakeBackend(ResourceBackend):
    """In-memory tag store and provider. Refuses state changes the state machine forbids."""

    name = "fake"

    def __init__(self, create_state=STATE_AVAILABLE, pool="pool-a"):
        self.resources = {}
        self.create_state = create_state
        self.pool = pool
        self.published = {}
        self.created = []
        self.attach_calls = []
        self.set_tags_calls = []
        self.get_errors = []
        self.set_tags_errors = []
        self.after_set_tags = None
        self._seq = 0

    # ── Test helpers ──

    def add(self, resource):
        self.resources[(resource.kind, resource.id)] = copy.deepcopy(resource)
        return resource

    def stored(self, kind, resource_id):
        return self.resources[(kind, resource_id)]

    def set_state(self, kind, resource_id, state):
        stored = self.stored(kind, resource_id)
        can_transition(stored.state, state)
        stored.state = state

    # ── ResourceBackend ──

    def describe(self, kind, zone=None, tags=None, attached_to=None):
        found = []
        for (k, _), r in sorted(self.resources.items()):
            if k != kind:
                continue
            if zone is not None and r.zone != zone:
                continue
            if tags and not r.matches_tags(tags):
                continue
            if attached_to is not None and not r.attached_to(attached_to.api_name):
                continue
            found.append(copy.deepcopy(r))
        return found

    def get(self, kind, resource_id):
        if self.get_errors:
            raise self.get_errors.pop(0)
        try:
            return copy.deepcopy(self.resources[(kind, resource_id)])
        except KeyError:
            raise NotFound(f"{kind} {resource_id}") from None

    def create(self, kind, zone, tags, **params):
        self._seq += 1
        rid = f"{kind}-{self._seq}"
        can_transition(None, self.create_state)
        resource = ResourceDescriptor(
            id=rid, kind=kind, zone=zone, tags=dict(tags), state=self.create_state,
            details=dict(params.get("details") or {}),
        )
        self.resources[(kind, rid)] = resource
        self.created.append((rid, params))
        return copy.deepcopy(resource)

    def attach(self, kind, resource_id, node, **params):
        self.attach_calls.append((resource_id, node.api_name, params))
        stored = self.resources[(kind, resource_id)]
        if stored.attached_to(node.api_name):
            return f"{node.api_name}/{resource_id}"
        if stored.attachments:
            raise ConfigurationConflict(f"{resource_id} attached elsewhere")
        can_transition(stored.state, STATE_IN_USE)
        can_transition(None, ATTACH_ATTACHED, attachment=True)
        stored.state = STATE_IN_USE
        stored.attachments.append(
            Attachment(node_id=node.api_name, state=ATTACH_ATTACHED, device=f"/dev/fake-{resource_id}")
        )
        return f"{node.api_name}/{resource_id}"

    def set_tags(self, kind, resource_id, tags):
        self.set_tags_calls.append((resource_id, dict(tags)))
        if self.set_tags_errors:
            raise self.set_tags_errors.pop(0)
        self.resources[(kind, resource_id)].tags.update(tags)
        if self.after_set_tags is not None:
            self.after_set_tags(self, kind, resource_id)

    def delete(self, kind, resource_id):
        stored = self.resources[(kind, resource_id)]
        can_transition(stored.state, STATE_DELETING)
        can_transition(STATE_DELETING, STATE_DELETED)
        del self.resources[(kind, resource_id)]

    def node_pool(self, node):
        return self.pool

    def publish(self, node, key, value):
        self.published[(node.api_name, key)] = value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def node():
    return NodeIdentity(node_id="i-aaa", zone="us-east-1a")


@pytest.fixture
def stop_event():
    return threading.Event()
