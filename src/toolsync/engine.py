"""Synchronization engine: the single owner of the working tool collection.

The engine reconciles the authoritative remote store with the local cache
snapshot. Each mutation follows one of two explicit strategies:

- server-returns-canonical-then-replace: the remote call returns (or
  confirms) the canonical records, which then replace local state.
- server-confirms-then-locally-patch: the remote call only acknowledges;
  the engine patches the affected fields locally without re-fetching.

Nothing is applied locally before the remote store has answered.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NoReturn, Protocol

from toolsync.cache import LocalCache
from toolsync.errors import RemoteUnavailable, ToolSyncError, ToolValidationError
from toolsync.events import (
	OUTCOME_DEGRADED,
	OUTCOME_ERROR,
	OUTCOME_NOOP,
	OUTCOME_OK,
	SyncEvent,
	SyncObserver,
	log_observer,
)
from toolsync.lifecycle import EngineLifecycle, EngineState, StateTransition
from toolsync.models import Tool, ToolDraft
from toolsync.remote import RemoteStore
from toolsync.search import MAX_LOCAL_RESULTS, search_local

logger = logging.getLogger(__name__)


class MutationStrategy(str, Enum):
	CANONICAL_REPLACE = "server-returns-canonical-then-replace"
	CONFIRM_THEN_PATCH = "server-confirms-then-locally-patch"


OPERATION_STRATEGIES: dict[str, MutationStrategy] = {
	"add_tool": MutationStrategy.CANONICAL_REPLACE,
	"add_multiple_tools": MutationStrategy.CANONICAL_REPLACE,
	"update_tool": MutationStrategy.CANONICAL_REPLACE,
	"remove_tool": MutationStrategy.CANONICAL_REPLACE,
	"toggle_pin": MutationStrategy.CONFIRM_THEN_PATCH,
	"toggle_favorite": MutationStrategy.CONFIRM_THEN_PATCH,
	"add_tool_to_category": MutationStrategy.CONFIRM_THEN_PATCH,
	"remove_tool_from_category": MutationStrategy.CONFIRM_THEN_PATCH,
	"track_usage": MutationStrategy.CONFIRM_THEN_PATCH,
}


class IdentityProbe(Protocol):
	async def is_authenticated(self) -> bool: ...


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _unique_ids(tools: Sequence[Tool]) -> list[Tool]:
	"""Keep the first record for each id."""
	seen: set[str] = set()
	result: list[Tool] = []
	for tool in tools:
		if tool.id in seen:
			continue
		seen.add(tool.id)
		result.append(tool)
	return result


def _as_error(exc: Exception) -> ToolSyncError:
	if isinstance(exc, ToolSyncError):
		return exc
	return RemoteUnavailable(str(exc) or exc.__class__.__name__)


class SyncEngine:
	"""Owns the in-memory tool collection and mirrors it into the local cache."""

	def __init__(
		self,
		remote: RemoteStore,
		cache: LocalCache,
		probe: IdentityProbe | None = None,
		observers: Sequence[SyncObserver] | None = None,
		on_transition: Callable[[StateTransition], None] | None = None,
		max_local_results: int = MAX_LOCAL_RESULTS,
	) -> None:
		self._remote = remote
		self._cache = cache
		self._probe = probe
		self._observers: list[SyncObserver] = list(observers) if observers is not None else [log_observer]
		self._lifecycle = EngineLifecycle(on_transition)
		self._max_local_results = max_local_results
		self._tools: list[Tool] = []
		self.last_error: ToolSyncError | None = None
		self.authenticated = False

	# -- Read-only view --

	@property
	def tools(self) -> tuple[Tool, ...]:
		return tuple(self._tools)

	@property
	def state(self) -> EngineState:
		return self._lifecycle.state

	@property
	def is_degraded(self) -> bool:
		return self._lifecycle.is_degraded

	@property
	def lifecycle(self) -> EngineLifecycle:
		return self._lifecycle

	def get_tool(self, tool_id: str) -> Tool | None:
		for tool in self._tools:
			if tool.id == tool_id:
				return tool
		return None

	def search(self, query: str, limit: int | None = None) -> list[Tool]:
		return search_local(self._tools, query, self._max_local_results if limit is None else limit)

	def get_status_dict(self) -> dict[str, Any]:
		return {
			**self._lifecycle.get_status_dict(),
			"tools": len(self._tools),
			"authenticated": self.authenticated,
			"last_error_kind": self.last_error.kind if self.last_error else None,
			"last_error": self.last_error.message if self.last_error else None,
		}

	# -- Observability --

	def add_observer(self, observer: SyncObserver) -> None:
		self._observers.append(observer)

	def _emit(self, event: SyncEvent) -> None:
		if event.strategy is None and event.operation in OPERATION_STRATEGIES:
			event.strategy = OPERATION_STRATEGIES[event.operation].value
		for observer in self._observers:
			try:
				observer(event)
			except Exception:
				logger.exception("Sync observer failed for %s", event.operation)

	def _fail(self, operation: str, exc: Exception, tool_id: str | None = None) -> NoReturn:
		"""Record, emit and raise a typed error for a failed operation."""
		error = _as_error(exc)
		self.last_error = error
		self._emit(SyncEvent(
			operation=operation,
			outcome=OUTCOME_ERROR,
			tool_id=tool_id,
			error_kind=error.kind,
			message=error.message,
		))
		if error is exc:
			raise error
		raise error from exc

	# -- Collection writes --

	def _commit(self, tools: list[Tool]) -> None:
		"""Replace the in-memory collection, then mirror it into the cache."""
		self._tools = tools
		try:
			self._cache.set_snapshot(tools)
		except sqlite3.Error as exc:
			logger.warning("Cache write failed, snapshot will be rewritten on next change: %s", exc)
			self._emit(SyncEvent(
				operation="cache_write",
				outcome=OUTCOME_ERROR,
				error_kind="cache_write_failed",
				message=str(exc),
			))

	def _prepend_canonical(self, records: list[Tool]) -> None:
		ids = {r.id for r in records}
		self._commit(_unique_ids(records) + [t for t in self._tools if t.id not in ids])

	def _replace_canonical(self, record: Tool) -> None:
		if self.get_tool(record.id) is None:
			self._prepend_canonical([record])
			return
		self._commit([record if t.id == record.id else t for t in self._tools])

	def _drop(self, tool_id: str) -> None:
		self._commit([t for t in self._tools if t.id != tool_id])

	def _patch(self, tool_id: str, patch: Callable[[Tool], Tool]) -> Tool | None:
		"""Apply a local field patch to the current record with this id, if any."""
		patched: Tool | None = None
		tools: list[Tool] = []
		for tool in self._tools:
			if tool.id == tool_id:
				patched = patch(tool)
				tools.append(patched)
			else:
				tools.append(tool)
		if patched is not None:
			self._commit(tools)
		return patched

	# -- Load / refresh --

	async def _probe_identity(self) -> bool:
		if self._probe is None:
			return False
		try:
			return await self._probe.is_authenticated()
		except Exception as exc:
			logger.warning("Identity probe failed, continuing anonymously: %s", exc)
			return False

	async def initialize(self) -> list[Tool]:
		"""Wait for identity resolution, then load. Probe failures fail open."""
		self._lifecycle.transition(EngineState.AUTH_PENDING, "initialize")
		self.authenticated = await self._probe_identity()
		logger.debug("Identity resolved (authenticated=%s)", self.authenticated)
		return await self.load()

	async def load(self) -> list[Tool]:
		"""Fetch the remote collection, falling back to the cache snapshot.

		Raises:
			ToolSyncError: If the remote store fails and the cache is empty.
		"""
		self._lifecycle.transition(EngineState.LOADING, "load")
		try:
			tools = await self._remote.list_tools()
		except Exception as exc:
			error = _as_error(exc)
			self.last_error = error
			cached = _unique_ids(self._cache.get_snapshot())
			if cached:
				self._tools = cached
				self._lifecycle.transition(EngineState.DEGRADED, "load_failed_cache_fallback")
				self._emit(SyncEvent(
					operation="load",
					outcome=OUTCOME_DEGRADED,
					count=len(cached),
					error_kind=error.kind,
					message=f"Using {len(cached)} cached tools: {error.message}",
				))
				return list(self._tools)
			self._lifecycle.transition(EngineState.DEGRADED, "load_failed_no_cache")
			self._fail("load", exc)

		self._commit(_unique_ids(tools))
		self.last_error = None
		self._lifecycle.transition(EngineState.READY, "load_ok")
		self._emit(SyncEvent(operation="load", count=len(self._tools)))
		return list(self._tools)

	async def refresh(self) -> list[Tool]:
		"""Re-fetch from the remote store. Failures propagate; no cache fallback."""
		if self.state in (EngineState.UNINITIALIZED, EngineState.AUTH_PENDING):
			self._lifecycle.transition(EngineState.LOADING, "refresh")
		try:
			tools = await self._remote.list_tools()
		except Exception as exc:
			self._fail("refresh", exc)
		self._commit(_unique_ids(tools))
		self.last_error = None
		self._lifecycle.transition(EngineState.READY, "refresh_ok")
		self._emit(SyncEvent(operation="refresh", count=len(self._tools)))
		return list(self._tools)

	# -- Server-returns-canonical-then-replace --

	async def add_tool(self, draft: ToolDraft) -> Tool:
		operation = "add_tool"
		try:
			draft.validate()
			created = await self._remote.create(draft)
		except Exception as exc:
			self._fail(operation, exc)
		self._prepend_canonical([created])
		self._emit(SyncEvent(operation=operation, tool_id=created.id, count=len(self._tools)))
		return created

	async def add_multiple_tools(self, drafts: Sequence[ToolDraft]) -> list[Tool]:
		"""Create all drafts in one batch. The batch fully succeeds or changes nothing."""
		operation = "add_multiple_tools"
		if not drafts:
			return []
		try:
			for draft in drafts:
				draft.validate()
			created = await self._remote.create_batch(list(drafts))
		except Exception as exc:
			self._fail(operation, exc)
		self._prepend_canonical(created)
		self._emit(SyncEvent(operation=operation, count=len(created)))
		return created

	async def update_tool(self, tool: Tool) -> Tool:
		operation = "update_tool"
		try:
			if not tool.id:
				raise ToolValidationError("Cannot update a tool without an id")
			if not tool.name.strip() or not tool.url.strip():
				raise ToolValidationError("Tool name and URL are required")
			updated = await self._remote.update(tool)
		except Exception as exc:
			self._fail(operation, exc, tool.id)
		self._replace_canonical(updated)
		self._emit(SyncEvent(operation=operation, tool_id=updated.id))
		return updated

	async def remove_tool(self, tool_id: str) -> None:
		operation = "remove_tool"
		try:
			await self._remote.delete(tool_id)
		except Exception as exc:
			self._fail(operation, exc, tool_id)
		self._drop(tool_id)
		self._emit(SyncEvent(operation=operation, tool_id=tool_id, count=len(self._tools)))

	# -- Server-confirms-then-locally-patch --

	def _missing(self, operation: str, tool_id: str) -> None:
		logger.warning("Cannot %s: tool %s not found", operation.replace("_", " "), tool_id)
		self._emit(SyncEvent(operation=operation, outcome=OUTCOME_NOOP, tool_id=tool_id, message="tool not found"))

	async def toggle_pin(self, tool_id: str) -> Tool | None:
		"""Flip ``is_pinned``. Unknown ids are a logged no-op with no remote call."""
		operation = "toggle_pin"
		tool = self.get_tool(tool_id)
		if tool is None:
			self._missing(operation, tool_id)
			return None
		pinned = not tool.is_pinned
		try:
			await self._remote.set_pinned(tool_id, pinned)
		except Exception as exc:
			self._fail(operation, exc, tool_id)
		patched = self._patch(tool_id, lambda t: replace(t, is_pinned=pinned, updated_at=_now_iso()))
		self._emit(SyncEvent(operation=operation, tool_id=tool_id))
		return patched

	async def toggle_favorite(self, tool_id: str) -> Tool | None:
		operation = "toggle_favorite"
		tool = self.get_tool(tool_id)
		if tool is None:
			self._missing(operation, tool_id)
			return None
		favorite = not tool.is_favorite
		try:
			await self._remote.set_favorite(tool_id, favorite)
		except Exception as exc:
			self._fail(operation, exc, tool_id)
		patched = self._patch(tool_id, lambda t: replace(t, is_favorite=favorite, updated_at=_now_iso()))
		self._emit(SyncEvent(operation=operation, tool_id=tool_id))
		return patched

	async def _set_categories(self, operation: str, tool_id: str, categories: list[str]) -> Tool | None:
		try:
			await self._remote.set_categories(tool_id, categories)
		except Exception as exc:
			self._fail(operation, exc, tool_id)
		patched = self._patch(tool_id, lambda t: replace(t, categories=list(categories), updated_at=_now_iso()))
		self._emit(SyncEvent(operation=operation, tool_id=tool_id))
		return patched

	async def add_tool_to_category(self, tool_id: str, category: str) -> Tool | None:
		operation = "add_tool_to_category"
		category = category.strip()
		if not category:
			self._fail(operation, ToolValidationError("Category name is required"), tool_id)
		tool = self.get_tool(tool_id)
		if tool is None:
			self._missing(operation, tool_id)
			return None
		if category in tool.categories:
			return tool
		return await self._set_categories(operation, tool_id, [*tool.categories, category])

	async def remove_tool_from_category(self, tool_id: str, category: str) -> Tool | None:
		operation = "remove_tool_from_category"
		tool = self.get_tool(tool_id)
		if tool is None:
			self._missing(operation, tool_id)
			return None
		if category not in tool.categories:
			return tool
		return await self._set_categories(operation, tool_id, [c for c in tool.categories if c != category])

	async def track_usage(self, tool_id: str) -> Tool | None:
		"""Best-effort usage tick. Failures are logged and emitted, never raised."""
		operation = "track_usage"
		try:
			await self._remote.increment_usage(tool_id)
		except Exception as exc:
			error = _as_error(exc)
			logger.warning("Failed to track usage for %s: %s", tool_id, error.message)
			self._emit(SyncEvent(
				operation=operation,
				outcome=OUTCOME_ERROR,
				tool_id=tool_id,
				error_kind=error.kind,
				message=error.message,
			))
			return None
		now = _now_iso()
		patched = self._patch(
			tool_id, lambda t: replace(t, usage_count=t.usage_count + 1, last_used=now, updated_at=now),
		)
		self._emit(SyncEvent(operation=operation, outcome=OUTCOME_OK, tool_id=tool_id))
		return patched
