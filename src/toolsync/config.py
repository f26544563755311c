"""TOML configuration loader for toolsync."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit


@dataclass
class RemoteConfig:
	"""Hosted backend connection settings."""

	url: str = ""
	api_key: str = ""
	access_token: str = ""
	table: str = "tools"
	timeout: float = 10.0


@dataclass
class CacheConfig:
	"""Local cache database settings."""

	path: str = "~/.toolsync/cache.db"

	@property
	def resolved_path(self) -> Path:
		return Path(os.path.expanduser(self.path))


@dataclass
class SearchConfig:
	"""Local search and network suggestion settings."""

	max_local_results: int = 5
	min_query_length: int = 3
	debounce_seconds: float = 0.5
	min_interval_seconds: float = 1.0


@dataclass
class LoggingConfig:
	level: str = "INFO"
	event_log: str = ""  # JSONL path for sync events; empty disables


@dataclass
class ToolSyncConfig:
	"""Top-level toolsync configuration."""

	remote: RemoteConfig = field(default_factory=RemoteConfig)
	cache: CacheConfig = field(default_factory=CacheConfig)
	search: SearchConfig = field(default_factory=SearchConfig)
	logging: LoggingConfig = field(default_factory=LoggingConfig)


def _build_remote(data: dict[str, Any]) -> RemoteConfig:
	rc = RemoteConfig()
	for key in ("url", "api_key", "access_token", "table"):
		if key in data:
			setattr(rc, key, str(data[key]))
	if "timeout" in data:
		rc.timeout = float(data["timeout"])
	return rc


def _build_cache(data: dict[str, Any]) -> CacheConfig:
	cc = CacheConfig()
	if "path" in data:
		cc.path = str(data["path"])
	return cc


def _build_search(data: dict[str, Any]) -> SearchConfig:
	sc = SearchConfig()
	for key in ("max_local_results", "min_query_length"):
		if key in data:
			setattr(sc, key, int(data[key]))
	for key in ("debounce_seconds", "min_interval_seconds"):
		if key in data:
			setattr(sc, key, float(data[key]))
	return sc


def _build_logging(data: dict[str, Any]) -> LoggingConfig:
	lc = LoggingConfig()
	if "level" in data:
		lc.level = str(data["level"]).upper()
	if "event_log" in data:
		lc.event_log = str(data["event_log"])
	return lc


def _apply_env(config: ToolSyncConfig) -> None:
	"""Fill unset remote credentials from the environment."""
	rc = config.remote
	if not rc.url:
		rc.url = os.environ.get("TOOLSYNC_REMOTE_URL", "")
	if not rc.api_key:
		rc.api_key = os.environ.get("TOOLSYNC_API_KEY", "")
	if not rc.access_token:
		rc.access_token = os.environ.get("TOOLSYNC_ACCESS_TOKEN", "")


def load_config(path: str | Path) -> ToolSyncConfig:
	"""Load a toolsync.toml config file.

	Args:
		path: Path to the TOML config file.

	Returns:
		Parsed ToolSyncConfig.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	tc = ToolSyncConfig()
	if "remote" in data:
		tc.remote = _build_remote(data["remote"])
	if "cache" in data:
		tc.cache = _build_cache(data["cache"])
	if "search" in data:
		tc.search = _build_search(data["search"])
	if "logging" in data:
		tc.logging = _build_logging(data["logging"])
	_apply_env(tc)
	return tc


def validate_config(config: ToolSyncConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded ToolSyncConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	# 1. Remote endpoint
	rc = config.remote
	if not rc.url:
		issues.append(("error", "remote.url is not set (or TOOLSYNC_REMOTE_URL)"))
	else:
		parts = urlsplit(rc.url)
		if parts.scheme not in ("http", "https") or not parts.netloc:
			issues.append(("error", f"remote.url is not an http(s) URL: {rc.url}"))
		elif parts.scheme == "http" and parts.hostname not in ("localhost", "127.0.0.1"):
			issues.append(("warning", "remote.url uses plain http"))
	if not rc.api_key:
		issues.append(("error", "remote.api_key is not set (or TOOLSYNC_API_KEY)"))
	if not rc.table:
		issues.append(("error", "remote.table must not be empty"))
	if rc.timeout <= 0:
		issues.append(("error", f"remote.timeout must be positive: {rc.timeout}"))

	# 2. Cache directory is writable
	cache_dir = config.cache.resolved_path.parent
	if cache_dir.exists() and not os.access(cache_dir, os.W_OK):
		issues.append(("error", f"cache directory is not writable: {cache_dir}"))

	# 3. Search bounds
	sc = config.search
	if sc.max_local_results <= 0:
		issues.append(("error", f"search.max_local_results must be positive: {sc.max_local_results}"))
	if sc.min_query_length < 1:
		issues.append(("warning", "search.min_query_length below 1 sends every keystroke to the network"))
	if sc.debounce_seconds < 0 or sc.min_interval_seconds < 0:
		issues.append(("error", "search debounce/interval must not be negative"))

	# 4. Logging level
	if logging.getLevelName(config.logging.level) == f"Level {config.logging.level}":
		issues.append(("warning", f"unknown logging.level: {config.logging.level}"))

	return issues
