"""Explicit lifecycle state machine for a domain being created or destroyed."""

from __future__ import annotations

from typing import Dict, List, Set

from kvm_install_vm.exceptions import IllegalTransitionError
from kvm_install_vm.models import LifecycleState


ALLOWED_TRANSITIONS: Dict[LifecycleState, Set[LifecycleState]] = {
    LifecycleState.UNDEFINED: {LifecycleState.DEFINING},
    LifecycleState.DEFINING: {LifecycleState.DEFINED, LifecycleState.UNDEFINED},
    LifecycleState.DEFINED: {
        LifecycleState.STARTING,
        LifecycleState.STOPPING,
        LifecycleState.UNDEFINING,
    },
    LifecycleState.STARTING: {LifecycleState.ACTIVE, LifecycleState.DEFINED},
    LifecycleState.ACTIVE: {LifecycleState.STOPPING},
    LifecycleState.STOPPING: {LifecycleState.UNDEFINING},
    LifecycleState.UNDEFINING: {LifecycleState.UNDEFINED},
}


def can_transition(current: LifecycleState, target: LifecycleState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


class DomainLifecycle:
    """Tracks one domain through create or destroy and rejects illegal moves."""

    def __init__(self, name: str, state: LifecycleState = LifecycleState.UNDEFINED) -> None:
        self.name = name
        self.state = state
        self.history: List[LifecycleState] = [state]

    def advance(self, target: LifecycleState) -> None:
        if not can_transition(self.state, target):
            raise IllegalTransitionError(f"Domain {self.name}: illegal transition {self.state} -> {target}")
        self.state = target
        self.history.append(target)

    def __repr__(self) -> str:
        return f"DomainLifecycle(name={self.name!r}, state={self.state})"
