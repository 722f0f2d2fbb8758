"""Instance lifecycle transition validation.

States only move forward: Initializing → Running → Ending. The controller owns
the first edge (assigning identity); the running application owns the rest.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, List, Optional

from instance_controller.resources import InstanceState

VALID_ACTORS = frozenset({"controller", "application"})

TERMINAL_STATES: FrozenSet[str] = frozenset({InstanceState.ENDING.value})

TRANSITIONS: Dict[str, Dict[str, List[str]]] = {
    "edges": {
        "null": [InstanceState.INITIALIZING.value],
        InstanceState.INITIALIZING.value: [InstanceState.RUNNING.value, InstanceState.ENDING.value],
        InstanceState.RUNNING.value: [InstanceState.ENDING.value],
        InstanceState.ENDING.value: [],
    },
    "actor_guards": {
        f"null:{InstanceState.INITIALIZING.value}": ["controller"],
    },
}


def can_transition(
    from_state: Optional[str],
    to_state: str,
    actor: str,
    transitions: Optional[dict] = None,
) -> bool:
    """Validate a state transition.

    Args:
        from_state: Current state (None or "" for a never-initialized instance).
        to_state: Target state.
        actor: Must be one of VALID_ACTORS.
        transitions: Alternative transitions table (defaults to TRANSITIONS).

    Returns:
        True if transition is allowed.

    Raises:
        ValueError: If actor is unknown or transition is not allowed.
    """
    if actor not in VALID_ACTORS:
        raise ValueError(f"Unknown actor '{actor}' (valid: {sorted(VALID_ACTORS)})")

    if transitions is None:
        transitions = TRANSITIONS

    from_key = from_state or "null"
    allowed_targets = transitions.get("edges", {}).get(from_key, [])

    if to_state not in allowed_targets:
        raise ValueError(f"Transition {from_key} → {to_state} not allowed")

    guard_key = f"{from_key}:{to_state}"
    actor_guards = transitions.get("actor_guards", {})
    if guard_key in actor_guards and actor not in actor_guards[guard_key]:
        raise ValueError(
            f"Transition {from_key} → {to_state} guarded — "
            f"actor '{actor}' not in allowed list {actor_guards[guard_key]}"
        )

    return True


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES


def check_state_write(current: Optional[str], proposed: Optional[str], actor: str) -> bool:
    """Validate a status write by `actor` that takes state from `current` to `proposed`.

    Writes that leave the state alone always pass; anything else must be an
    edge of the lifecycle, so a stale or buggy writer cannot move it backward.
    """
    if (current or None) == (proposed or None):
        return True
    if not proposed:
        raise ValueError(f"Transition {current} → null not allowed")
    return can_transition(current, proposed, actor)
