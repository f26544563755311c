"""Session/identity probe for the hosted backend's auth endpoint."""

from __future__ import annotations

import logging
import uuid
from typing import Any

import httpx

from toolsync.cache import DEVICE_ID_KEY, LocalCache
from toolsync.errors import RemoteUnavailable

logger = logging.getLogger(__name__)


class SessionProbe:
	"""Reports whether the caller holds a valid session.

	``is_authenticated`` never raises: any failure degrades to anonymous.
	Anonymous callers are identified by a device id persisted in the cache.
	"""

	def __init__(
		self,
		base_url: str,
		api_key: str,
		access_token: str = "",
		cache: LocalCache | None = None,
		timeout: float = 10.0,
		transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self._base_url = base_url.rstrip("/")
		self._api_key = api_key
		self._access_token = access_token
		self._cache = cache
		self._timeout = timeout
		self._transport = transport
		self._client: httpx.AsyncClient | None = None

	async def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
		return self._client

	async def aclose(self) -> None:
		if self._client is not None:
			await self._client.aclose()
			self._client = None

	async def _fetch_user(self) -> dict[str, Any] | None:
		if not self._access_token:
			return None
		client = await self._ensure_client()
		try:
			resp = await client.get(
				f"{self._base_url}/auth/v1/user",
				headers={"apikey": self._api_key, "Authorization": f"Bearer {self._access_token}"},
			)
		except httpx.HTTPError as exc:
			raise RemoteUnavailable(f"Auth endpoint unreachable: {exc}") from exc
		if resp.status_code in (401, 403):
			return None
		if resp.status_code >= 400:
			raise RemoteUnavailable(f"Auth endpoint error ({resp.status_code})")
		user = resp.json()
		return user if isinstance(user, dict) and user.get("id") else None

	async def is_authenticated(self) -> bool:
		try:
			return await self._fetch_user() is not None
		except Exception as exc:
			logger.warning("Session check failed, continuing anonymously: %s", exc)
			return False

	async def resolve_user_id(self) -> str:
		"""Return the signed-in user's id, or this installation's device id."""
		try:
			user = await self._fetch_user()
		except Exception as exc:
			logger.warning("Could not resolve signed-in user: %s", exc)
			user = None
		if user:
			return str(user["id"])
		return self.device_id()

	def device_id(self) -> str:
		if self._cache is None:
			return "anonymous"
		existing = self._cache.get_flag(DEVICE_ID_KEY)
		if existing:
			return existing
		device_id = str(uuid.uuid4())
		self._cache.set_flag(DEVICE_ID_KEY, device_id)
		logger.info("Created new device id %s", device_id)
		return device_id
