"""One-shot migration of legacy local-only tools into the remote store.

Legacy tools are the records the dashboard kept in browser storage before
it had a remote backend. They are merged at most once per installation:
the completed flag, once set, suppresses every later attempt. Records
whose URL already exists remotely are skipped.
"""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from toolsync.cache import LEGACY_BACKUP_KEY, LEGACY_TOOLS_KEY, MIGRATION_FLAG_KEY, LocalCache
from toolsync.errors import MigrationAborted, ToolValidationError
from toolsync.matching import exclude_known, url_key
from toolsync.models import LegacyTool, MigrationResult
from toolsync.remote import RemoteStore

logger = logging.getLogger(__name__)

FLAG_TRUE = "true"


def parse_legacy_blob(raw: str | None) -> list[LegacyTool]:
	"""Parse a legacy JSON array, skipping entries without a name or URL.

	Returns an empty list for a missing blob, invalid JSON, or a non-list.
	"""
	if not raw:
		return []
	try:
		data = json.loads(raw)
	except json.JSONDecodeError:
		logger.warning("Legacy tools blob is not valid JSON")
		return []
	if not isinstance(data, list):
		logger.warning("Legacy tools blob is not a list")
		return []
	tools: list[LegacyTool] = []
	for index, item in enumerate(data):
		try:
			tools.append(LegacyTool.model_validate(item))
		except ValidationError as exc:
			logger.warning("Skipping legacy tool #%d: %d validation error(s)", index, exc.error_count())
	return tools


class MigrationEngine:
	"""Moves legacy tools from the local cache into the remote store."""

	def __init__(self, remote: RemoteStore, cache: LocalCache) -> None:
		self._remote = remote
		self._cache = cache

	@property
	def completed(self) -> bool:
		return self._cache.get_flag(MIGRATION_FLAG_KEY) == FLAG_TRUE

	def _mark_completed(self) -> None:
		self._cache.set_flag(MIGRATION_FLAG_KEY, FLAG_TRUE)

	async def check_migration_needed(self) -> bool:
		"""True when legacy tools may still need migrating.

		Fails open: if the check itself errors, migration is offered.
		"""
		try:
			if self.completed:
				logger.debug("Migration previously marked as completed")
				return False
			legacy = parse_legacy_blob(self._cache.get_flag(LEGACY_TOOLS_KEY))
			if not legacy:
				logger.debug("No legacy tools to migrate")
				return False
			remote_tools = await self._remote.list_tools()
			if len(remote_tools) >= len(legacy):
				logger.info("Legacy tools appear to be already migrated")
				self._mark_completed()
				return False
			logger.info(
				"Migration needed: %d legacy tools, %d remote", len(legacy), len(remote_tools),
			)
			return True
		except Exception as exc:
			logger.warning("Could not check migration status, offering migration: %s", exc)
			return True

	async def migrate(self) -> MigrationResult:
		"""Merge legacy tools into the remote store. Never raises."""
		try:
			return await self._migrate()
		except Exception as exc:
			error = MigrationAborted(str(exc) or "Unknown error during migration")
			logger.error("Migration failed: %s", error.message)
			return MigrationResult(success=False, error=error.message, error_kind=error.kind)

	async def _migrate(self) -> MigrationResult:
		if self.completed:
			return MigrationResult(success=True, count=0)
		raw = self._cache.get_flag(LEGACY_TOOLS_KEY)
		legacy = parse_legacy_blob(raw)
		if not legacy:
			return MigrationResult(success=True, count=0)

		existing = await self._remote.list_tools()
		pending = exclude_known(legacy, (t.url for t in existing), lambda t: t.url, key=url_key)
		if not pending:
			logger.info("All %d legacy tools already exist remotely", len(legacy))
			self._mark_completed()
			return MigrationResult(success=True, count=0)

		drafts = [t.to_draft() for t in pending]
		for draft in drafts:
			try:
				draft.validate()
			except ToolValidationError as exc:
				raise MigrationAborted(f"Legacy tool '{draft.name}' is invalid: {exc.message}") from exc
		await self._remote.create_batch(drafts)

		# Kept for manual recovery only.
		self._cache.set_flag(LEGACY_BACKUP_KEY, raw or "")
		self._mark_completed()
		logger.info("Migrated %d legacy tools (%d already remote)", len(drafts), len(legacy) - len(drafts))
		return MigrationResult(success=True, count=len(drafts))

	def skip_migration(self) -> None:
		"""Permanently give up on the legacy tools for this installation."""
		logger.warning("Skipping migration; legacy tools will not be migrated")
		self._mark_completed()

	def import_legacy(self, raw: str) -> int:
		"""Store a legacy JSON export for migration. Returns the number of usable tools.

		Raises:
			ToolValidationError: If the export contains no usable tools.
		"""
		tools = parse_legacy_blob(raw)
		if not tools:
			raise ToolValidationError("Legacy export contains no usable tools")
		self._cache.set_flag(LEGACY_TOOLS_KEY, raw)
		logger.info("Imported %d legacy tools", len(tools))
		return len(tools)
