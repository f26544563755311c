"""Local tool search and debounced merging of network suggestions.

Local matching is synchronous and always available. Network suggestions
come from an external ``SuggestionSource``; they are debounced, rate
limited, and filtered so that no suggestion points at a host the user
already has a tool for.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from toolsync.matching import exclude_known, hostname_key
from toolsync.models import Tool

logger = logging.getLogger(__name__)

MAX_LOCAL_RESULTS = 5


@dataclass
class Suggestion:
	"""A tool suggested by a network search, not yet in the dashboard."""

	name: str
	url: str
	description: str = ""
	category: str = ""
	tags: list[str] = field(default_factory=list)


class SuggestionSource(Protocol):
	async def search(self, query: str) -> list[Suggestion]: ...


@dataclass
class SearchResults:
	local: list[Tool] = field(default_factory=list)
	suggestions: list[Suggestion] = field(default_factory=list)
	superseded: bool = False


def _rank(tool: Tool, term: str) -> int | None:
	"""0 = name prefix, 1 = name contains, 2 = other field, None = no match."""
	name = tool.name.lower()
	if name.startswith(term):
		return 0
	if term in name:
		return 1
	haystack = [tool.description or "", tool.url or "", tool.notes or "", *tool.tags]
	if any(term in text.lower() for text in haystack):
		return 2
	return None


def search_local(tools: Sequence[Tool], query: str, limit: int = MAX_LOCAL_RESULTS) -> list[Tool]:
	"""Case-insensitive substring match over name, description, tags, url and notes."""
	term = query.strip().lower()
	if not term or limit <= 0:
		return []
	ranked: list[tuple[int, int, Tool]] = []
	for position, tool in enumerate(tools):
		rank = _rank(tool, term)
		if rank is not None:
			ranked.append((rank, position, tool))
	ranked.sort(key=lambda item: (item[0], item[1]))
	return [tool for _, _, tool in ranked[:limit]]


def exclude_known_hosts(suggestions: Sequence[Suggestion], tools: Sequence[Tool]) -> list[Suggestion]:
	return exclude_known(suggestions, (t.url for t in tools), lambda s: s.url, key=hostname_key)


class SearchSession:
	"""Combines local matches with debounced, rate-limited network suggestions."""

	def __init__(
		self,
		tools: Callable[[], Sequence[Tool]],
		source: SuggestionSource | None = None,
		max_local_results: int = MAX_LOCAL_RESULTS,
		min_query_length: int = 3,
		debounce_seconds: float = 0.5,
		min_interval_seconds: float = 1.0,
	) -> None:
		self._tools = tools
		self._source = source
		self._max_local_results = max_local_results
		self._min_query_length = min_query_length
		self._debounce_seconds = debounce_seconds
		self._min_interval_seconds = min_interval_seconds
		self._generation = 0
		self._last_call_at: float | None = None
		self._rate_lock = asyncio.Lock()

	def local(self, query: str) -> list[Tool]:
		return search_local(self._tools(), query, self._max_local_results)

	async def _wait_for_slot(self) -> None:
		async with self._rate_lock:
			if self._last_call_at is not None:
				remaining = self._min_interval_seconds - (time.monotonic() - self._last_call_at)
				if remaining > 0:
					await asyncio.sleep(remaining)
			self._last_call_at = time.monotonic()

	async def search(self, query: str) -> SearchResults:
		results = SearchResults(local=self.local(query))
		if self._source is None or len(query.strip()) < self._min_query_length:
			return results

		self._generation += 1
		generation = self._generation
		if self._debounce_seconds > 0:
			await asyncio.sleep(self._debounce_seconds)
		if generation != self._generation:
			results.superseded = True
			return results

		await self._wait_for_slot()
		try:
			suggestions = await self._source.search(query.strip())
		except Exception as exc:
			logger.warning("Suggestion search failed for %r: %s", query, exc)
			return results
		results.suggestions = exclude_known_hosts(suggestions, self._tools())
		return results
