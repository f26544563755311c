"""Shared pytest fixtures and factory functions for toolsync tests."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import replace
from typing import Any

import pytest

from toolsync.cache import LocalCache
from toolsync.engine import SyncEngine
from toolsync.errors import ToolNotFound
from toolsync.events import SyncEvent
from toolsync.models import Tool, ToolDraft

CREATED_AT = "2024-01-01T00:00:00+00:00"
SERVER_UPDATED_AT = "2024-06-01T00:00:00+00:00"

READ_CALLS = frozenset({"list_tools", "ping"})


def make_tool(**overrides: Any) -> Tool:
	"""Create a Tool with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": "t1",
		"name": "GitHub",
		"url": "https://github.com",
		"description": "Code hosting",
		"category": "Development",
		"categories": ["Development"],
		"tags": ["git"],
		"created_at": CREATED_AT,
		"updated_at": CREATED_AT,
	}
	defaults.update(overrides)
	return Tool(**defaults)


def make_draft(**overrides: Any) -> ToolDraft:
	"""Create a ToolDraft with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"name": "Figma",
		"url": "https://figma.com",
		"description": "Design tool",
		"category": "Design",
	}
	defaults.update(overrides)
	return ToolDraft(**defaults)


class FakeRemoteStore:
	"""In-memory RemoteStore that records calls and can be told to fail."""

	def __init__(self, tools: list[Tool] | None = None) -> None:
		self.tools: list[Tool] = list(tools or [])
		self.calls: list[str] = []
		self.batches: list[list[ToolDraft]] = []
		self.fail: dict[str, Exception] = {}
		self._next_id = 100

	def _record(self, operation: str) -> None:
		self.calls.append(operation)
		if operation in self.fail:
			raise self.fail[operation]

	def _index(self, tool_id: str) -> int:
		for i, tool in enumerate(self.tools):
			if tool.id == tool_id:
				return i
		raise ToolNotFound(tool_id)

	def _materialize(self, draft: ToolDraft) -> Tool:
		self._next_id += 1
		return Tool(
			id=f"srv-{self._next_id}",
			name=draft.name,
			url=draft.url,
			description=draft.description,
			notes=draft.notes,
			category=draft.category,
			categories=list(draft.categories),
			tags=list(draft.tags),
			is_pinned=draft.is_pinned,
			is_favorite=draft.is_favorite,
			usage_count=draft.usage_count,
			created_at=SERVER_UPDATED_AT,
			updated_at=SERVER_UPDATED_AT,
		)

	@property
	def writes(self) -> list[str]:
		return [c for c in self.calls if c not in READ_CALLS]

	async def list_tools(self) -> list[Tool]:
		self._record("list_tools")
		return [replace(t) for t in self.tools]

	async def create(self, draft: ToolDraft) -> Tool:
		self._record("create")
		tool = self._materialize(draft)
		self.tools.insert(0, tool)
		return replace(tool)

	async def create_batch(self, drafts: list[ToolDraft]) -> list[Tool]:
		self._record("create_batch")
		self.batches.append(list(drafts))
		created = [self._materialize(d) for d in drafts]
		self.tools = created + self.tools
		return [replace(t) for t in created]

	async def update(self, tool: Tool) -> Tool:
		self._record("update")
		index = self._index(tool.id)
		self.tools[index] = replace(tool, updated_at=SERVER_UPDATED_AT)
		return replace(self.tools[index])

	async def delete(self, tool_id: str) -> None:
		self._record("delete")
		del self.tools[self._index(tool_id)]

	async def set_pinned(self, tool_id: str, pinned: bool) -> None:
		self._record("set_pinned")
		index = self._index(tool_id)
		self.tools[index] = replace(self.tools[index], is_pinned=pinned)

	async def set_favorite(self, tool_id: str, favorite: bool) -> None:
		self._record("set_favorite")
		index = self._index(tool_id)
		self.tools[index] = replace(self.tools[index], is_favorite=favorite)

	async def set_categories(self, tool_id: str, categories: list[str]) -> None:
		self._record("set_categories")
		index = self._index(tool_id)
		self.tools[index] = replace(self.tools[index], categories=list(categories))

	async def increment_usage(self, tool_id: str) -> None:
		self._record("increment_usage")
		index = self._index(tool_id)
		current = self.tools[index]
		self.tools[index] = replace(current, usage_count=current.usage_count + 1)

	async def ping(self) -> bool:
		self.calls.append("ping")
		return "ping" not in self.fail


@pytest.fixture()
def cache() -> Iterator[LocalCache]:
	"""In-memory LocalCache with schema initialized."""
	store = LocalCache(":memory:")
	yield store
	store.close()


@pytest.fixture()
def remote() -> FakeRemoteStore:
	return FakeRemoteStore([
		make_tool(id="t1", name="GitHub", url="https://github.com"),
		make_tool(id="t2", name="VS Code", url="https://code.visualstudio.com", tags=["editor"]),
	])


@pytest.fixture()
def events() -> list[SyncEvent]:
	return []


@pytest.fixture()
def engine(remote: FakeRemoteStore, cache: LocalCache, events: list[SyncEvent]) -> SyncEngine:
	return SyncEngine(remote, cache, observers=[events.append])
