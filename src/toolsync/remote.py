"""Remote tool store client.

The remote store is the authoritative copy of a user's tools. The
concrete client speaks PostgREST over httpx (the REST dialect of hosted
Postgres backends); every query is scoped by ``user_id``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from toolsync.errors import RemoteUnavailable, ToolNotFound
from toolsync.models import UNCATEGORIZED, Tool, ToolDraft, ToolRow

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "tools"
RETURN_REPRESENTATION = "return=representation"


class RemoteStore(Protocol):
	"""What the sync and migration engines need from the authoritative store."""

	async def list_tools(self) -> list[Tool]: ...

	async def create(self, draft: ToolDraft) -> Tool: ...

	async def create_batch(self, drafts: list[ToolDraft]) -> list[Tool]: ...

	async def update(self, tool: Tool) -> Tool: ...

	async def delete(self, tool_id: str) -> None: ...

	async def set_pinned(self, tool_id: str, pinned: bool) -> None: ...

	async def set_favorite(self, tool_id: str, favorite: bool) -> None: ...

	async def set_categories(self, tool_id: str, categories: list[str]) -> None: ...

	async def increment_usage(self, tool_id: str) -> None: ...

	async def ping(self) -> bool: ...


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _primary_category(category: str, categories: list[str]) -> str:
	if category:
		return category
	if categories:
		return categories[0]
	return UNCATEGORIZED


class PostgrestToolStore:
	"""RemoteStore backed by a PostgREST ``tools`` table."""

	def __init__(
		self,
		base_url: str,
		api_key: str,
		user_id: str,
		access_token: str = "",
		table: str = DEFAULT_TABLE,
		timeout: float = 10.0,
		transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self._base_url = base_url.rstrip("/")
		self._api_key = api_key
		self._access_token = access_token
		self._user_id = user_id
		self._table = table
		self._timeout = timeout
		self._transport = transport
		self._client: httpx.AsyncClient | None = None

	@property
	def user_id(self) -> str:
		return self._user_id

	async def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(
				base_url=f"{self._base_url}/rest/v1/",
				headers={
					"apikey": self._api_key,
					"Authorization": f"Bearer {self._access_token or self._api_key}",
					"Content-Type": "application/json",
				},
				timeout=self._timeout,
				transport=self._transport,
			)
		return self._client

	async def aclose(self) -> None:
		if self._client is not None:
			await self._client.aclose()
			self._client = None

	async def __aenter__(self) -> PostgrestToolStore:
		return self

	async def __aexit__(self, *args: object) -> None:
		await self.aclose()

	@staticmethod
	def _error_message(resp: httpx.Response) -> str:
		detail = ""
		try:
			body = resp.json()
			if isinstance(body, dict):
				detail = str(body.get("message") or body.get("error") or "")
		except ValueError:
			detail = resp.text[:200]
		if detail:
			return f"Remote store error ({resp.status_code}): {detail}"
		return f"Remote store error ({resp.status_code})"

	async def _request(
		self,
		method: str,
		params: dict[str, str],
		payload: Any = None,
		representation: bool = False,
	) -> Any:
		client = await self._ensure_client()
		headers = {"Prefer": RETURN_REPRESENTATION} if representation else None
		try:
			resp = await client.request(method, self._table, params=params, json=payload, headers=headers)
		except httpx.HTTPError as exc:
			raise RemoteUnavailable(f"Remote store unreachable: {exc}") from exc
		if resp.status_code >= 400:
			raise RemoteUnavailable(self._error_message(resp))
		if not resp.content:
			return None
		try:
			return resp.json()
		except ValueError as exc:
			raise RemoteUnavailable("Remote store returned invalid JSON") from exc

	@staticmethod
	def _to_tools(data: Any) -> list[Tool]:
		if not isinstance(data, list):
			raise RemoteUnavailable("Remote store returned an unexpected payload")
		try:
			return [ToolRow.model_validate(row).to_tool() for row in data]
		except ValidationError as exc:
			raise RemoteUnavailable(f"Remote store returned a malformed tool: {exc.error_count()} error(s)") from exc

	def _scope(self, tool_id: str | None = None) -> dict[str, str]:
		params = {"user_id": f"eq.{self._user_id}"}
		if tool_id is not None:
			params["id"] = f"eq.{tool_id}"
		return params

	def _insert_payload(self, draft: ToolDraft) -> dict[str, Any]:
		return {
			"title": draft.name,
			"url": draft.url,
			"description": draft.description,
			"category": _primary_category(draft.category, draft.categories),
			"categories": draft.categories or ([draft.category] if draft.category else []),
			"tags": draft.tags,
			"is_pinned": draft.is_pinned,
			"is_favorite": draft.is_favorite,
			"logo_url": draft.favicon,
			"rating": draft.rating,
			"email": draft.email,
			"api_key": draft.api_key,
			"notes": draft.notes,
			"usage_count": draft.usage_count,
			"user_id": self._user_id,
		}

	def _update_payload(self, tool: Tool) -> dict[str, Any]:
		return {
			"title": tool.name,
			"url": tool.url,
			"description": tool.description,
			"category": _primary_category(tool.category, tool.categories),
			"categories": tool.categories,
			"tags": tool.tags,
			"is_pinned": tool.is_pinned,
			"is_favorite": tool.is_favorite,
			"logo_url": tool.favicon,
			"rating": tool.rating,
			"email": tool.email,
			"api_key": tool.api_key,
			"notes": tool.notes,
			"usage_count": tool.usage_count,
			"last_used": tool.last_used,
			"updated_at": _now_iso(),
		}

	async def _patch(self, tool_id: str, fields: dict[str, Any]) -> list[Tool]:
		data = await self._request("PATCH", self._scope(tool_id), fields, representation=True)
		tools = self._to_tools(data)
		if not tools:
			raise ToolNotFound(tool_id)
		return tools

	# -- RemoteStore --

	async def list_tools(self) -> list[Tool]:
		params = {"select": "*", "order": "created_at.desc", **self._scope()}
		return self._to_tools(await self._request("GET", params))

	async def create(self, draft: ToolDraft) -> Tool:
		data = await self._request("POST", {}, self._insert_payload(draft), representation=True)
		tools = self._to_tools(data)
		if len(tools) != 1:
			raise RemoteUnavailable(f"Remote store returned {len(tools)} rows for one insert")
		return tools[0]

	async def create_batch(self, drafts: list[ToolDraft]) -> list[Tool]:
		if not drafts:
			return []
		payload = [self._insert_payload(d) for d in drafts]
		tools = self._to_tools(await self._request("POST", {}, payload, representation=True))
		if len(tools) != len(drafts):
			raise RemoteUnavailable(f"Batch insert stored {len(tools)} of {len(drafts)} tools")
		return tools

	async def update(self, tool: Tool) -> Tool:
		return (await self._patch(tool.id, self._update_payload(tool)))[0]

	async def delete(self, tool_id: str) -> None:
		data = await self._request("DELETE", self._scope(tool_id), representation=True)
		if not self._to_tools(data or []):
			raise ToolNotFound(tool_id)

	async def set_pinned(self, tool_id: str, pinned: bool) -> None:
		await self._patch(tool_id, {"is_pinned": pinned, "updated_at": _now_iso()})

	async def set_favorite(self, tool_id: str, favorite: bool) -> None:
		await self._patch(tool_id, {"is_favorite": favorite, "updated_at": _now_iso()})

	async def set_categories(self, tool_id: str, categories: list[str]) -> None:
		await self._patch(tool_id, {"categories": categories, "updated_at": _now_iso()})

	async def increment_usage(self, tool_id: str) -> None:
		params = {"select": "usage_count", **self._scope(tool_id)}
		rows = await self._request("GET", params)
		if not rows:
			raise ToolNotFound(tool_id)
		current = rows[0].get("usage_count") or 0
		now = _now_iso()
		await self._patch(tool_id, {"usage_count": current + 1, "last_used": now, "updated_at": now})

	async def ping(self) -> bool:
		try:
			await self._request("GET", {"select": "id", "limit": "1", **self._scope()})
		except RemoteUnavailable as exc:
			logger.info("Remote store unavailable: %s", exc)
			return False
		return True
