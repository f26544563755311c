"""Tests for the synchronization engine."""

from __future__ import annotations

import sqlite3
from dataclasses import replace
from unittest.mock import AsyncMock, patch

import pytest
from conftest import FakeRemoteStore, make_draft, make_tool

from toolsync.cache import LocalCache
from toolsync.engine import OPERATION_STRATEGIES, MutationStrategy, SyncEngine
from toolsync.errors import RemoteUnavailable, ToolNotFound, ToolValidationError
from toolsync.events import OUTCOME_DEGRADED, OUTCOME_ERROR, OUTCOME_NOOP, SyncEvent
from toolsync.lifecycle import EngineState


def _snapshot_dicts(cache: LocalCache) -> list[dict]:
	return [t.to_dict() for t in cache.get_snapshot()]


def _memory_dicts(engine: SyncEngine) -> list[dict]:
	return [t.to_dict() for t in engine.tools]


def _assert_in_sync(engine: SyncEngine, cache: LocalCache) -> None:
	assert _memory_dicts(engine) == _snapshot_dicts(cache)
	ids = [t.id for t in engine.tools]
	assert len(ids) == len(set(ids))


class TestStrategies:
	def test_patch_operations(self) -> None:
		for op in ("toggle_pin", "toggle_favorite", "track_usage", "add_tool_to_category"):
			assert OPERATION_STRATEGIES[op] is MutationStrategy.CONFIRM_THEN_PATCH

	def test_canonical_operations(self) -> None:
		for op in ("add_tool", "add_multiple_tools", "update_tool", "remove_tool"):
			assert OPERATION_STRATEGIES[op] is MutationStrategy.CANONICAL_REPLACE


class TestLoad:
	@pytest.mark.asyncio
	async def test_success_replaces_memory_and_cache(
		self, engine: SyncEngine, cache: LocalCache, events: list[SyncEvent],
	) -> None:
		cache.set_snapshot([make_tool(id="stale", url="https://stale.example")])
		tools = await engine.load()
		assert [t.id for t in tools] == ["t1", "t2"]
		assert engine.state == EngineState.READY
		_assert_in_sync(engine, cache)
		assert events[-1].operation == "load"
		assert events[-1].count == 2

	@pytest.mark.asyncio
	async def test_empty_remote_is_not_an_error(self, cache: LocalCache) -> None:
		cache.set_snapshot([make_tool()])
		engine = SyncEngine(FakeRemoteStore([]), cache, observers=[])
		assert await engine.load() == []
		assert engine.state == EngineState.READY
		assert cache.get_snapshot() == []
		assert engine.last_error is None

	@pytest.mark.asyncio
	async def test_failure_falls_back_to_cache(
		self, engine: SyncEngine, remote: FakeRemoteStore, cache: LocalCache, events: list[SyncEvent],
	) -> None:
		cache.set_snapshot([make_tool(id="c1"), make_tool(id="c2", url="https://c2.example")])
		remote.fail["list_tools"] = RemoteUnavailable("connection refused")

		tools = await engine.load()

		assert [t.id for t in tools] == ["c1", "c2"]
		assert engine.state == EngineState.DEGRADED
		assert engine.is_degraded is True
		assert engine.last_error is not None
		assert engine.last_error.kind == "remote_unavailable"
		assert events[-1].outcome == OUTCOME_DEGRADED
		assert events[-1].count == 2
		_assert_in_sync(engine, cache)

	@pytest.mark.asyncio
	async def test_failure_with_empty_cache_surfaces_error(
		self, engine: SyncEngine, remote: FakeRemoteStore, events: list[SyncEvent],
	) -> None:
		remote.fail["list_tools"] = RemoteUnavailable("backend down")
		with pytest.raises(RemoteUnavailable, match="backend down"):
			await engine.load()
		assert engine.tools == ()
		assert engine.state == EngineState.DEGRADED
		assert events[-1].outcome == OUTCOME_ERROR

	@pytest.mark.asyncio
	async def test_unexpected_exception_is_typed(self, engine: SyncEngine, remote: FakeRemoteStore) -> None:
		remote.fail["list_tools"] = OSError("socket closed")
		with pytest.raises(RemoteUnavailable) as exc_info:
			await engine.load()
		assert isinstance(exc_info.value.__cause__, OSError)

	@pytest.mark.asyncio
	async def test_duplicate_remote_ids_collapsed(self, cache: LocalCache) -> None:
		remote = FakeRemoteStore([make_tool(id="a"), make_tool(id="a", name="dup")])
		engine = SyncEngine(remote, cache, observers=[])
		tools = await engine.load()
		assert [t.name for t in tools] == ["GitHub"]


class TestInitialize:
	@pytest.mark.asyncio
	async def test_waits_for_identity_then_loads(self, remote: FakeRemoteStore, cache: LocalCache) -> None:
		probe = AsyncMock()
		probe.is_authenticated.return_value = True
		seen: list[tuple[EngineState, EngineState]] = []
		engine = SyncEngine(
			remote, cache, probe=probe, observers=[],
			on_transition=lambda t: seen.append((t.from_state, t.to_state)),
		)
		await engine.initialize()
		probe.is_authenticated.assert_awaited_once()
		assert engine.authenticated is True
		assert seen == [
			(EngineState.UNINITIALIZED, EngineState.AUTH_PENDING),
			(EngineState.AUTH_PENDING, EngineState.LOADING),
			(EngineState.LOADING, EngineState.READY),
		]

	@pytest.mark.asyncio
	async def test_probe_failure_fails_open(self, remote: FakeRemoteStore, cache: LocalCache) -> None:
		probe = AsyncMock()
		probe.is_authenticated.side_effect = RuntimeError("auth service down")
		engine = SyncEngine(remote, cache, probe=probe, observers=[])
		tools = await engine.initialize()
		assert engine.authenticated is False
		assert len(tools) == 2
		assert engine.state == EngineState.READY

	@pytest.mark.asyncio
	async def test_without_probe_is_anonymous(self, engine: SyncEngine) -> None:
		await engine.initialize()
		assert engine.authenticated is False

	@pytest.mark.asyncio
	async def test_reinitialize_after_ready(self, engine: SyncEngine, remote: FakeRemoteStore) -> None:
		await engine.initialize()
		remote.tools.pop()
		tools = await engine.initialize()
		assert [t.id for t in tools] == ["t1"]
		assert engine.state == EngineState.READY

	@pytest.mark.asyncio
	async def test_reinitialize_after_degraded(
		self, engine: SyncEngine, remote: FakeRemoteStore, cache: LocalCache,
	) -> None:
		cache.set_snapshot([make_tool(id="old")])
		remote.fail["list_tools"] = RemoteUnavailable("down")
		await engine.initialize()
		assert engine.state == EngineState.DEGRADED

		del remote.fail["list_tools"]
		await engine.initialize()
		assert engine.state == EngineState.READY
		_assert_in_sync(engine, cache)


class TestAddTool:
	@pytest.mark.asyncio
	async def test_prepends_canonical_record(
		self, engine: SyncEngine, cache: LocalCache,
	) -> None:
		await engine.load()
		created = await engine.add_tool(make_draft())
		assert created.id.startswith("srv-")
		assert engine.tools[0] == created
		assert [t.id for t in engine.tools] == [created.id, "t1", "t2"]
		_assert_in_sync(engine, cache)

	@pytest.mark.asyncio
	async def test_categories_default_from_category(self, engine: SyncEngine) -> None:
		created = await engine.add_tool(make_draft(category="Design", categories=[]))
		assert created.categories == ["Design"]

	@pytest.mark.asyncio
	async def test_invalid_draft_never_reaches_remote(
		self, engine: SyncEngine, remote: FakeRemoteStore, events: list[SyncEvent],
	) -> None:
		with pytest.raises(ToolValidationError) as exc_info:
			await engine.add_tool(make_draft(url="  "))
		assert exc_info.value.kind == "validation_error"
		assert remote.calls == []
		assert events[-1].error_kind == "validation_error"

	@pytest.mark.asyncio
	async def test_failure_leaves_collections_unchanged(
		self, engine: SyncEngine, remote: FakeRemoteStore, cache: LocalCache,
	) -> None:
		await engine.load()
		before = _memory_dicts(engine)
		remote.fail["create"] = RemoteUnavailable("insert rejected")
		with pytest.raises(RemoteUnavailable):
			await engine.add_tool(make_draft())
		assert _memory_dicts(engine) == before
		assert _snapshot_dicts(cache) == before
		assert engine.last_error is not None
		assert engine.last_error.message == "insert rejected"

	@pytest.mark.asyncio
	async def test_add_remove_sequence_keeps_ids_unique(
		self, engine: SyncEngine, cache: LocalCache,
	) -> None:
		await engine.load()
		a = await engine.add_tool(make_draft(name="A", url="https://a.example"))
		_assert_in_sync(engine, cache)
		await engine.remove_tool("t1")
		_assert_in_sync(engine, cache)
		b = await engine.add_tool(make_draft(name="B", url="https://b.example"))
		_assert_in_sync(engine, cache)
		await engine.remove_tool(a.id)
		_assert_in_sync(engine, cache)
		assert [t.id for t in engine.tools] == [b.id, "t2"]


class TestAddMultipleTools:
	@pytest.mark.asyncio
	async def test_batch_prepended_in_order(self, engine: SyncEngine, cache: LocalCache) -> None:
		await engine.load()
		created = await engine.add_multiple_tools([
			make_draft(name="A", url="https://a.example"),
			make_draft(name="B", url="https://b.example"),
		])
		assert [t.name for t in engine.tools[:2]] == ["A", "B"]
		assert len(created) == 2
		_assert_in_sync(engine, cache)

	@pytest.mark.asyncio
	async def test_batch_failure_inserts_nothing(
		self, engine: SyncEngine, remote: FakeRemoteStore, cache: LocalCache,
	) -> None:
		await engine.load()
		before = _memory_dicts(engine)
		remote.fail["create_batch"] = RemoteUnavailable("connection reset mid-batch")
		with pytest.raises(RemoteUnavailable):
			await engine.add_multiple_tools([
				make_draft(name="A", url="https://a.example"),
				make_draft(name="B", url="https://b.example"),
			])
		assert _memory_dicts(engine) == before
		assert _snapshot_dicts(cache) == before

	@pytest.mark.asyncio
	async def test_one_invalid_draft_rejects_whole_batch(
		self, engine: SyncEngine, remote: FakeRemoteStore,
	) -> None:
		with pytest.raises(ToolValidationError):
			await engine.add_multiple_tools([make_draft(), make_draft(name="")])
		assert remote.calls == []

	@pytest.mark.asyncio
	async def test_empty_batch_makes_no_call(self, engine: SyncEngine, remote: FakeRemoteStore) -> None:
		assert await engine.add_multiple_tools([]) == []
		assert remote.calls == []


class TestUpdateTool:
	@pytest.mark.asyncio
	async def test_replaces_with_canonical_response(self, engine: SyncEngine, cache: LocalCache) -> None:
		await engine.load()
		edited = replace(engine.tools[1], name="Visual Studio Code")
		updated = await engine.update_tool(edited)
		assert updated.updated_at == "2024-06-01T00:00:00+00:00"
		assert engine.tools[1].name == "Visual Studio Code"
		assert engine.get_tool("t2") == updated
		_assert_in_sync(engine, cache)

	@pytest.mark.asyncio
	async def test_not_found_propagates(self, engine: SyncEngine, cache: LocalCache) -> None:
		await engine.load()
		before = _memory_dicts(engine)
		with pytest.raises(ToolNotFound) as exc_info:
			await engine.update_tool(make_tool(id="ghost"))
		assert exc_info.value.kind == "not_found"
		assert _memory_dicts(engine) == before
		assert _snapshot_dicts(cache) == before

	@pytest.mark.asyncio
	async def test_blank_name_rejected(self, engine: SyncEngine, remote: FakeRemoteStore) -> None:
		await engine.load()
		with pytest.raises(ToolValidationError):
			await engine.update_tool(replace(engine.tools[0], name=" "))
		assert "update" not in remote.calls


class TestTogglePin:
	@pytest.mark.asyncio
	async def test_flips_after_acknowledgement(
		self, engine: SyncEngine, remote: FakeRemoteStore, cache: LocalCache,
	) -> None:
		await engine.load()
		before = engine.get_tool("t1")
		assert before is not None and before.is_pinned is False

		patched = await engine.toggle_pin("t1")

		assert patched is not None
		assert patched.is_pinned is True
		assert patched.updated_at > before.updated_at
		assert remote.calls[-1] == "set_pinned"
		_assert_in_sync(engine, cache)

		await engine.toggle_pin("t1")
		assert engine.get_tool("t1").is_pinned is False

	@pytest.mark.asyncio
	async def test_unknown_id_is_noop(
		self, engine: SyncEngine, remote: FakeRemoteStore, cache: LocalCache, events: list[SyncEvent],
	) -> None:
		await engine.load()
		calls_before = list(remote.calls)
		memory_before = _memory_dicts(engine)
		cache_before = cache.get_flag("dev-dashboard-tools-cache")

		assert await engine.toggle_pin("missing") is None

		assert remote.calls == calls_before
		assert _memory_dicts(engine) == memory_before
		assert cache.get_flag("dev-dashboard-tools-cache") == cache_before
		assert events[-1].outcome == OUTCOME_NOOP

	@pytest.mark.asyncio
	async def test_remote_failure_raises_and_keeps_state(
		self, engine: SyncEngine, remote: FakeRemoteStore, cache: LocalCache,
	) -> None:
		await engine.load()
		before = _memory_dicts(engine)
		remote.fail["set_pinned"] = RemoteUnavailable("timeout")
		with pytest.raises(RemoteUnavailable):
			await engine.toggle_pin("t1")
		assert _memory_dicts(engine) == before
		assert _snapshot_dicts(cache) == before

	@pytest.mark.asyncio
	async def test_record_removed_while_in_flight(self, engine: SyncEngine, remote: FakeRemoteStore) -> None:
		await engine.load()

		async def racing_delete(tool_id: str, pinned: bool) -> None:
			engine._drop(tool_id)

		with patch.object(remote, "set_pinned", side_effect=racing_delete):
			assert await engine.toggle_pin("t1") is None
		assert engine.get_tool("t1") is None


class TestFavoritesAndCategories:
	@pytest.mark.asyncio
	async def test_toggle_favorite(self, engine: SyncEngine, cache: LocalCache) -> None:
		await engine.load()
		patched = await engine.toggle_favorite("t2")
		assert patched is not None and patched.is_favorite is True
		_assert_in_sync(engine, cache)

	@pytest.mark.asyncio
	async def test_toggle_favorite_unknown_id(self, engine: SyncEngine, remote: FakeRemoteStore) -> None:
		await engine.load()
		assert await engine.toggle_favorite("nope") is None
		assert remote.writes == []

	@pytest.mark.asyncio
	async def test_add_and_remove_category(self, engine: SyncEngine, cache: LocalCache) -> None:
		await engine.load()
		patched = await engine.add_tool_to_category("t1", "Favorites")
		assert patched is not None
		assert patched.categories == ["Development", "Favorites"]
		patched = await engine.remove_tool_from_category("t1", "Development")
		assert patched is not None
		assert patched.categories == ["Favorites"]
		_assert_in_sync(engine, cache)

	@pytest.mark.asyncio
	async def test_existing_category_skips_remote(self, engine: SyncEngine, remote: FakeRemoteStore) -> None:
		await engine.load()
		tool = await engine.add_tool_to_category("t1", "Development")
		assert tool is not None
		assert tool.categories == ["Development"]
		assert remote.writes == []

	@pytest.mark.asyncio
	async def test_blank_category_rejected(self, engine: SyncEngine) -> None:
		await engine.load()
		with pytest.raises(ToolValidationError):
			await engine.add_tool_to_category("t1", "   ")


class TestRemoveTool:
	@pytest.mark.asyncio
	async def test_success_filters_both(self, engine: SyncEngine, cache: LocalCache) -> None:
		await engine.load()
		await engine.remove_tool("t1")
		assert [t.id for t in engine.tools] == ["t2"]
		_assert_in_sync(engine, cache)

	@pytest.mark.asyncio
	async def test_failure_keeps_record(
		self, engine: SyncEngine, remote: FakeRemoteStore, cache: LocalCache,
	) -> None:
		await engine.load()
		remote.fail["delete"] = RemoteUnavailable("permission denied")
		with pytest.raises(RemoteUnavailable):
			await engine.remove_tool("t1")
		assert engine.get_tool("t1") is not None
		assert any(t.id == "t1" for t in cache.get_snapshot())


class TestTrackUsage:
	@pytest.mark.asyncio
	async def test_increments_once(self, engine: SyncEngine, cache: LocalCache) -> None:
		await engine.load()
		patched = await engine.track_usage("t1")
		assert patched is not None
		assert patched.usage_count == 1
		assert patched.last_used is not None
		assert patched.updated_at == patched.last_used
		_assert_in_sync(engine, cache)

	@pytest.mark.asyncio
	async def test_failure_is_swallowed(
		self, engine: SyncEngine, remote: FakeRemoteStore, cache: LocalCache, events: list[SyncEvent],
	) -> None:
		await engine.load()
		remote.fail["increment_usage"] = RemoteUnavailable("offline")

		assert await engine.track_usage("t1") is None

		assert engine.get_tool("t1").usage_count == 0
		assert all(t.usage_count == 0 for t in cache.get_snapshot())
		assert events[-1].outcome == OUTCOME_ERROR
		assert events[-1].error_kind == "remote_unavailable"
		assert engine.last_error is None

	@pytest.mark.asyncio
	async def test_unexpected_failure_is_swallowed(self, engine: SyncEngine, remote: FakeRemoteStore) -> None:
		await engine.load()
		remote.fail["increment_usage"] = ValueError("bad response")
		assert await engine.track_usage("t1") is None


class TestRefresh:
	@pytest.mark.asyncio
	async def test_failure_propagates_without_cache_fallback(
		self, engine: SyncEngine, remote: FakeRemoteStore, cache: LocalCache,
	) -> None:
		await engine.load()
		before = _memory_dicts(engine)
		remote.fail["list_tools"] = RemoteUnavailable("gateway timeout")
		with pytest.raises(RemoteUnavailable):
			await engine.refresh()
		assert _memory_dicts(engine) == before
		assert _snapshot_dicts(cache) == before
		assert engine.state == EngineState.READY

	@pytest.mark.asyncio
	async def test_success_recovers_from_degraded(
		self, engine: SyncEngine, remote: FakeRemoteStore, cache: LocalCache,
	) -> None:
		cache.set_snapshot([make_tool(id="old")])
		remote.fail["list_tools"] = RemoteUnavailable("down")
		await engine.load()
		assert engine.state == EngineState.DEGRADED

		del remote.fail["list_tools"]
		tools = await engine.refresh()

		assert [t.id for t in tools] == ["t1", "t2"]
		assert engine.state == EngineState.READY
		assert engine.last_error is None
		_assert_in_sync(engine, cache)

	@pytest.mark.asyncio
	async def test_refresh_before_initialize(self, engine: SyncEngine) -> None:
		await engine.refresh()
		assert engine.state == EngineState.READY


class TestObservability:
	@pytest.mark.asyncio
	async def test_events_carry_strategy(self, engine: SyncEngine, events: list[SyncEvent]) -> None:
		await engine.load()
		await engine.toggle_pin("t1")
		assert events[-1].strategy == MutationStrategy.CONFIRM_THEN_PATCH.value
		await engine.add_tool(make_draft())
		assert events[-1].strategy == MutationStrategy.CANONICAL_REPLACE.value

	@pytest.mark.asyncio
	async def test_failing_observer_does_not_break_operations(
		self, remote: FakeRemoteStore, cache: LocalCache,
	) -> None:
		def broken(event: SyncEvent) -> None:
			raise RuntimeError("observer bug")

		engine = SyncEngine(remote, cache, observers=[broken])
		tools = await engine.load()
		assert len(tools) == 2

	@pytest.mark.asyncio
	async def test_cache_write_failure_is_reported(
		self, engine: SyncEngine, cache: LocalCache, events: list[SyncEvent],
	) -> None:
		await engine.load()
		with patch.object(cache, "set_snapshot", side_effect=sqlite3.OperationalError("disk I/O error")):
			patched = await engine.toggle_pin("t1")
		assert patched is not None
		assert engine.get_tool("t1").is_pinned is True
		assert any(e.error_kind == "cache_write_failed" for e in events)

	@pytest.mark.asyncio
	async def test_status_dict(self, engine: SyncEngine) -> None:
		await engine.load()
		status = engine.get_status_dict()
		assert status["state"] == "ready"
		assert status["tools"] == 2
		assert status["last_error"] is None


class TestSearch:
	@pytest.mark.asyncio
	async def test_search_uses_working_collection(self, engine: SyncEngine) -> None:
		await engine.load()
		assert [t.id for t in engine.search("editor")] == ["t2"]
		assert engine.search("") == []
