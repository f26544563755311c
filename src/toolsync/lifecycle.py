"""Sync engine lifecycle state machine.

Uninitialized -> AuthPending -> Loading -> Ready | Degraded. A refresh
returns a degraded engine to Ready; a repeated initialize re-enters
AuthPending. Mutations never change the state.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
	UNINITIALIZED = "uninitialized"
	AUTH_PENDING = "auth_pending"
	LOADING = "loading"
	READY = "ready"
	DEGRADED = "degraded"


_ALLOWED: dict[EngineState, frozenset[EngineState]] = {
	EngineState.UNINITIALIZED: frozenset({EngineState.AUTH_PENDING, EngineState.LOADING}),
	EngineState.AUTH_PENDING: frozenset({EngineState.LOADING}),
	EngineState.LOADING: frozenset({EngineState.READY, EngineState.DEGRADED}),
	EngineState.READY: frozenset({EngineState.AUTH_PENDING, EngineState.LOADING, EngineState.READY}),
	EngineState.DEGRADED: frozenset({EngineState.AUTH_PENDING, EngineState.LOADING, EngineState.READY}),
}


@dataclass
class StateTransition:
	from_state: EngineState
	to_state: EngineState
	trigger: str
	timestamp: float = field(default_factory=time.monotonic)


class EngineLifecycle:
	"""Tracks the engine's top-level state and records every transition."""

	def __init__(self, on_transition: Callable[[StateTransition], None] | None = None) -> None:
		self._state = EngineState.UNINITIALIZED
		self._on_transition = on_transition
		self._transitions: list[StateTransition] = []

	def transition(self, new_state: EngineState, trigger: str) -> None:
		if new_state == self._state:
			return
		if new_state not in _ALLOWED[self._state]:
			raise ValueError(f"Illegal engine transition {self._state.value} -> {new_state.value}")
		transition = StateTransition(from_state=self._state, to_state=new_state, trigger=trigger)
		self._state = new_state
		self._transitions.append(transition)
		log = logger.warning if new_state == EngineState.DEGRADED else logger.debug
		log("Engine state: %s -> %s (trigger: %s)", transition.from_state.value, new_state.value, trigger)
		if self._on_transition:
			self._on_transition(transition)

	@property
	def state(self) -> EngineState:
		return self._state

	@property
	def is_degraded(self) -> bool:
		return self._state == EngineState.DEGRADED

	@property
	def accepts_mutations(self) -> bool:
		return self._state in (EngineState.READY, EngineState.DEGRADED)

	@property
	def transitions(self) -> list[StateTransition]:
		return list(self._transitions)

	def get_status_dict(self) -> dict[str, Any]:
		return {
			"state": self._state.value,
			"transitions": len(self._transitions),
			"last_trigger": self._transitions[-1].trigger if self._transitions else None,
		}
