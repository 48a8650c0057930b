"""Pydantic models describing workflow-type transition tables."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from ..contracts import CANCEL, TERMINAL_STATES


class StepSpec(BaseModel):
    """A job to enqueue when a workflow enters a state."""

    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority_override: Optional[int] = None
    # Fan out one job per element of ``context[for_each]``.
    for_each: Optional[str] = None
    item_key: str = "item"


class TransitionTable(BaseModel):
    """State machine definition for one workflow type."""

    workflow_type: str
    description: Optional[str] = None
    initial_state: str
    terminal_states: List[str] = Field(default_factory=lambda: sorted(TERMINAL_STATES))
    transitions: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    steps: Dict[str, List[StepSpec]] = Field(default_factory=dict)
    default_priority: int = 0

    @model_validator(mode="after")
    def _check_consistency(self) -> "TransitionTable":
        missing = TERMINAL_STATES - set(self.terminal_states)
        if missing:
            raise ValueError(
                f"{self.workflow_type}: terminal states must include {sorted(missing)}"
            )
        known = self.states
        if self.initial_state in self.terminal_states:
            raise ValueError(f"{self.workflow_type}: initial state cannot be terminal")
        for state, edges in self.transitions.items():
            if state in self.terminal_states and edges:
                raise ValueError(
                    f"{self.workflow_type}: terminal state '{state}' has outgoing transitions"
                )
            if CANCEL in edges:
                raise ValueError(
                    f"{self.workflow_type}: '{CANCEL}' is reserved for cancellation"
                )
        for state in self.steps:
            if state not in known:
                raise ValueError(f"{self.workflow_type}: steps for unknown state '{state}'")
            if state in self.terminal_states and self.steps[state]:
                raise ValueError(
                    f"{self.workflow_type}: terminal state '{state}' cannot enqueue jobs"
                )
        return self

    @property
    def states(self) -> set[str]:
        found = {self.initial_state, *self.terminal_states, *self.transitions}
        for edges in self.transitions.values():
            found.update(edges.values())
        return found

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal_states

    def next_state(self, state: str, outcome: str) -> Optional[str]:
        """Return the target of ``(state, outcome)`` or ``None`` if undefined."""
        return self.transitions.get(state, {}).get(outcome)

    def outcomes_for(self, state: str) -> List[str]:
        return sorted(self.transitions.get(state, {}))

    def steps_for(self, state: str) -> List[StepSpec]:
        return list(self.steps.get(state, []))
