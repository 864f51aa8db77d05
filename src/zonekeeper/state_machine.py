"""Resource state machine.

Loads resource_transitions.json, the canonical graph of normalized provider
states shared by the poller (to spot terminal failures and unexpected jumps)
and by test doubles (to refuse impossible transitions).
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

_TRANSITIONS_PATH = Path(__file__).resolve().parent / "resource_transitions.json"

STATE_CREATING = "creating"
STATE_AVAILABLE = "available"
STATE_IN_USE = "in-use"
STATE_DELETING = "deleting"
STATE_DELETED = "deleted"
STATE_FAILED = "failed"
STATE_ERROR = "error"

ATTACH_ATTACHING = "attaching"
ATTACH_ATTACHED = "attached"
ATTACH_DETACHING = "detaching"
ATTACH_DETACHED = "detached"

# No amount of further polling leaves these.
TERMINAL_FAILURE_STATES = frozenset({STATE_FAILED, STATE_ERROR})

_cached = None


def _load_transitions(path: Path | None = None) -> dict:
    """Load and return the transitions definition."""
    global _cached
    if path is None and _cached is not None:
        return _cached
    p = path or _TRANSITIONS_PATH
    with open(p) as f:
        data = json.load(f)
    if path is None:
        _cached = data
    return data


def transitions_hash(path: Path | None = None) -> str:
    """SHA-256 hash of the transitions file for version logging."""
    p = path or _TRANSITIONS_PATH
    return hashlib.sha256(p.read_bytes()).hexdigest()


def can_transition(
    from_state: str | None,
    to_state: str,
    transitions: dict | None = None,
    attachment: bool = False,
) -> bool:
    """Validate a state transition.

    Args:
        from_state: Current state (None for a resource that does not exist yet).
        to_state: Target state.
        transitions: Pre-loaded transitions dict (optional, loads from file if None).
        attachment: Validate against the attachment graph instead of the resource graph.

    Returns:
        True if transition is allowed. Staying in the same state is always allowed.

    Raises:
        ValueError: If the transition is not allowed.
    """
    if from_state == to_state:
        return True

    if transitions is None:
        transitions = _load_transitions()

    from_key = "null" if from_state is None else from_state
    edges = transitions.get("attachment_edges" if attachment else "edges", {})
    if to_state not in edges.get(from_key, []):
        raise ValueError(f"Transition {from_key} → {to_state} not allowed")
    return True


def is_expected(from_state: str | None, to_state: str, attachment: bool = False) -> bool:
    try:
        return can_transition(from_state, to_state, attachment=attachment)
    except ValueError:
        return False


def is_terminal_failure(state: str) -> bool:
    return state in TERMINAL_FAILURE_STATES
