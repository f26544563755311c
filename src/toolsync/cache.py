"""SQLite key/value cache for the tool snapshot and migration flags."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

from toolsync.models import Tool

logger = logging.getLogger(__name__)

TOOLS_CACHE_KEY = "dev-dashboard-tools-cache"
MIGRATION_FLAG_KEY = "migration-completed"
LEGACY_TOOLS_KEY = "dev-dashboard-tools"
LEGACY_BACKUP_KEY = "dev-dashboard-tools-backup"
DEVICE_ID_KEY = "dev-dashboard-device-id"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv (
	key TEXT PRIMARY KEY,
	value TEXT NOT NULL,
	updated_at TEXT NOT NULL
);
"""


class LocalCache:
	"""Durable local store: tools snapshot, migration flag, legacy blob and backup."""

	def __init__(self, path: str | Path = ":memory:") -> None:
		db_path = str(path)
		if db_path != ":memory:":
			Path(db_path).parent.mkdir(parents=True, exist_ok=True)
		self.conn = sqlite3.connect(db_path)
		self.conn.row_factory = sqlite3.Row
		logger.debug("Opened cache connection: %s", db_path)
		if db_path != ":memory:":
			self.conn.execute("PRAGMA journal_mode=WAL")
			self.conn.execute("PRAGMA busy_timeout=5000")
		self.conn.executescript(SCHEMA_SQL)

	def close(self) -> None:
		logger.debug("Closing cache connection")
		self.conn.close()

	def __enter__(self) -> LocalCache:
		return self

	def __exit__(self, *args: object) -> None:
		self.close()

	@contextmanager
	def transaction(self) -> Generator[sqlite3.Connection, None, None]:
		"""Commit on success, roll back on exception."""
		try:
			yield self.conn
		except Exception:
			self.conn.rollback()
			raise
		else:
			self.conn.commit()

	# -- Flags --

	def get_flag(self, key: str) -> str | None:
		row = self.conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
		return row["value"] if row else None

	def set_flag(self, key: str, value: str) -> None:
		with self.transaction() as conn:
			conn.execute(
				"""INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
				ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
				(key, value, datetime.now(timezone.utc).isoformat()),
			)

	def delete_flag(self, key: str) -> None:
		with self.transaction() as conn:
			conn.execute("DELETE FROM kv WHERE key = ?", (key,))

	# -- Snapshot --

	def get_snapshot(self) -> list[Tool]:
		raw = self.get_flag(TOOLS_CACHE_KEY)
		if not raw:
			return []
		try:
			data = json.loads(raw)
		except json.JSONDecodeError as exc:
			logger.warning("Ignoring corrupt tools snapshot: %s", exc)
			return []
		if not isinstance(data, list):
			logger.warning("Ignoring tools snapshot that is not a list")
			return []
		tools: list[Tool] = []
		for item in data:
			try:
				tools.append(Tool.from_dict(item))
			except (TypeError, AttributeError) as exc:
				logger.warning("Skipping malformed cached tool: %s", exc)
		return tools

	def set_snapshot(self, tools: list[Tool]) -> None:
		payload = json.dumps([t.to_dict() for t in tools], separators=(",", ":"))
		self.set_flag(TOOLS_CACHE_KEY, payload)
		logger.debug("Cached %d tools", len(tools))
