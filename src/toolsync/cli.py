"""CLI interface for toolsync."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path

from toolsync.cache import LocalCache
from toolsync.config import ToolSyncConfig, load_config, validate_config
from toolsync.engine import SyncEngine
from toolsync.errors import ToolSyncError
from toolsync.events import EventStream, SyncObserver, log_observer
from toolsync.identity import SessionProbe
from toolsync.migration import MigrationEngine
from toolsync.models import Tool, ToolDraft
from toolsync.remote import PostgrestToolStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "toolsync.toml"

DEFAULT_TOML = """\
[remote]
url = ""          # or TOOLSYNC_REMOTE_URL
api_key = ""      # or TOOLSYNC_API_KEY
table = "tools"
timeout = 10.0

[cache]
path = "~/.toolsync/cache.db"

[search]
max_local_results = 5
min_query_length = 3

[logging]
level = "INFO"
event_log = ""
"""

Action = Callable[[SyncEngine, MigrationEngine], Awaitable[int]]


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="toolsync",
		description="toolsync - keep your tool dashboard in sync",
	)
	sub = parser.add_subparsers(dest="command")

	# toolsync init
	init_cmd = sub.add_parser("init", help="Write a starter toolsync.toml")
	init_cmd.add_argument("path", nargs="?", default=".")

	# toolsync list
	ls = sub.add_parser("list", help="List tools")
	ls.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	ls.add_argument("--pinned", action="store_true", help="Only pinned tools")

	# toolsync add
	add = sub.add_parser("add", help="Add a tool")
	add.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	add.add_argument("name")
	add.add_argument("url")
	add.add_argument("--description", default="")
	add.add_argument("--category", default="")
	add.add_argument("--tag", action="append", default=[], dest="tags", help="Tag (repeatable)")
	add.add_argument("--notes", default=None)

	# toolsync remove / pin / favorite / use
	for name, help_text in (
		("remove", "Delete a tool"),
		("pin", "Toggle a tool's pin"),
		("favorite", "Toggle a tool's favorite mark"),
		("use", "Record a use of a tool"),
	):
		cmd = sub.add_parser(name, help=help_text)
		cmd.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
		cmd.add_argument("tool_id")

	# toolsync refresh
	refresh = sub.add_parser("refresh", help="Re-fetch tools from the remote store")
	refresh.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")

	# toolsync search
	search = sub.add_parser("search", help="Search tools by name, tags, URL and notes")
	search.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	search.add_argument("query")

	# toolsync status
	status = sub.add_parser("status", help="Show sync status")
	status.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")

	# toolsync migrate / skip-migration
	migrate = sub.add_parser("migrate", help="Migrate legacy local tools to the remote store")
	migrate.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	skip = sub.add_parser("skip-migration", help="Never migrate legacy tools")
	skip.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")

	# toolsync import-legacy
	imp = sub.add_parser("import-legacy", help="Load a legacy tools JSON export for migration")
	imp.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	imp.add_argument("file")

	# toolsync validate-config
	vc = sub.add_parser("validate-config", help="Validate config file semantically")
	vc.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")

	return parser


def _format_tool(tool: Tool) -> str:
	pin = "*" if tool.is_pinned else " "
	return f"{pin} {tool.id}  {tool.name}  {tool.url}  ({tool.usage_count} uses)"


@asynccontextmanager
async def open_engine(config: ToolSyncConfig) -> AsyncIterator[tuple[SyncEngine, MigrationEngine]]:
	"""Wire cache, identity, remote store and observers into engines."""
	rc = config.remote
	cache = LocalCache(config.cache.resolved_path)
	probe = SessionProbe(rc.url, rc.api_key, rc.access_token, cache=cache, timeout=rc.timeout)
	stream: EventStream | None = None
	observers: list[SyncObserver] = [log_observer]
	if config.logging.event_log:
		stream = EventStream(Path(config.logging.event_log).expanduser())
		stream.open()
		observers.append(stream)
	remote: PostgrestToolStore | None = None
	try:
		user_id = await probe.resolve_user_id()
		remote = PostgrestToolStore(
			rc.url, rc.api_key, user_id,
			access_token=rc.access_token, table=rc.table, timeout=rc.timeout,
		)
		engine = SyncEngine(
			remote, cache, probe=probe, observers=observers,
			max_local_results=config.search.max_local_results,
		)
		yield engine, MigrationEngine(remote, cache)
	finally:
		if remote is not None:
			await remote.aclose()
		await probe.aclose()
		if stream is not None:
			stream.close()
		cache.close()


def _run(args: argparse.Namespace, action: Action, initialize: bool = True) -> int:
	try:
		config = load_config(args.config)
	except FileNotFoundError as exc:
		print(f"Error: {exc}. Run 'toolsync init' first.")
		return 1
	level = logging.getLevelName(config.logging.level)
	if isinstance(level, int):
		logging.getLogger().setLevel(level)
	else:
		logger.warning("Ignoring unknown logging.level: %s", config.logging.level)

	async def _main() -> int:
		async with open_engine(config) as (engine, migration):
			if initialize:
				await engine.initialize()
			return await action(engine, migration)

	try:
		return asyncio.run(_main())
	except ToolSyncError as exc:
		print(f"Error [{exc.kind}]: {exc.message}")
		return 1


def cmd_init(args: argparse.Namespace) -> int:
	"""Write a starter config file."""
	target = Path(args.path) / DEFAULT_CONFIG
	if target.exists():
		print(f"Config already exists: {target}")
		return 1
	target.parent.mkdir(parents=True, exist_ok=True)
	target.write_text(DEFAULT_TOML)
	print(f"Created {target}")
	return 0


def cmd_list(args: argparse.Namespace) -> int:
	async def action(engine: SyncEngine, _: MigrationEngine) -> int:
		tools = [t for t in engine.tools if t.is_pinned or not args.pinned]
		if engine.is_degraded:
			print("(offline: showing cached tools)")
		if not tools:
			print("No tools yet.")
		for tool in tools:
			print(_format_tool(tool))
		return 0

	return _run(args, action)


def cmd_add(args: argparse.Namespace) -> int:
	async def action(engine: SyncEngine, _: MigrationEngine) -> int:
		draft = ToolDraft(
			name=args.name,
			url=args.url,
			description=args.description,
			category=args.category,
			tags=list(args.tags),
			notes=args.notes,
		)
		tool = await engine.add_tool(draft)
		print(f"Added {tool.name} ({tool.id})")
		return 0

	return _run(args, action)


def cmd_remove(args: argparse.Namespace) -> int:
	async def action(engine: SyncEngine, _: MigrationEngine) -> int:
		await engine.remove_tool(args.tool_id)
		print(f"Removed {args.tool_id}")
		return 0

	return _run(args, action)


def cmd_pin(args: argparse.Namespace) -> int:
	async def action(engine: SyncEngine, _: MigrationEngine) -> int:
		tool = await engine.toggle_pin(args.tool_id)
		if tool is None:
			print(f"No tool with id {args.tool_id}")
			return 1
		print(f"{tool.name} is now {'pinned' if tool.is_pinned else 'unpinned'}")
		return 0

	return _run(args, action)


def cmd_favorite(args: argparse.Namespace) -> int:
	async def action(engine: SyncEngine, _: MigrationEngine) -> int:
		tool = await engine.toggle_favorite(args.tool_id)
		if tool is None:
			print(f"No tool with id {args.tool_id}")
			return 1
		print(f"{tool.name} is {'now' if tool.is_favorite else 'no longer'} a favorite")
		return 0

	return _run(args, action)


def cmd_use(args: argparse.Namespace) -> int:
	async def action(engine: SyncEngine, _: MigrationEngine) -> int:
		tool = await engine.track_usage(args.tool_id)
		if tool is not None:
			print(f"{tool.name}: {tool.usage_count} uses")
		return 0

	return _run(args, action)


def cmd_refresh(args: argparse.Namespace) -> int:
	async def action(engine: SyncEngine, _: MigrationEngine) -> int:
		tools = await engine.refresh()
		print(f"Refreshed {len(tools)} tools")
		return 0

	# Refresh must not fall back to the cache, so skip the initial load.
	return _run(args, action, initialize=False)


def cmd_search(args: argparse.Namespace) -> int:
	async def action(engine: SyncEngine, _: MigrationEngine) -> int:
		matches = engine.search(args.query)
		if not matches:
			print("No matches.")
		for tool in matches:
			print(_format_tool(tool))
		return 0

	return _run(args, action)


def cmd_status(args: argparse.Namespace) -> int:
	async def action(engine: SyncEngine, migration: MigrationEngine) -> int:
		status = engine.get_status_dict()
		print(f"State: {status['state']}")
		print(f"Tools: {status['tools']}")
		print(f"Signed in: {'yes' if status['authenticated'] else 'no'}")
		print(f"Legacy migration: {'done' if migration.completed else 'pending'}")
		if status["last_error"]:
			print(f"Last error [{status['last_error_kind']}]: {status['last_error']}")
		return 0

	return _run(args, action)


def cmd_migrate(args: argparse.Namespace) -> int:
	async def action(engine: SyncEngine, migration: MigrationEngine) -> int:
		if not await migration.check_migration_needed():
			print("No migration needed.")
			return 0
		result = await migration.migrate()
		if not result.success:
			print(f"Migration failed: {result.error}")
			print("Retry later, or run 'toolsync skip-migration' to discard the legacy tools.")
			return 1
		print(f"Migrated {result.count} tools.")
		return 0

	return _run(args, action, initialize=False)


def cmd_skip_migration(args: argparse.Namespace) -> int:
	async def action(engine: SyncEngine, migration: MigrationEngine) -> int:
		migration.skip_migration()
		print("Legacy tools will not be migrated.")
		return 0

	return _run(args, action, initialize=False)


def cmd_import_legacy(args: argparse.Namespace) -> int:
	path = Path(args.file)
	if not path.exists():
		print(f"File not found: {path}")
		return 1
	raw = path.read_text(encoding="utf-8")

	async def action(engine: SyncEngine, migration: MigrationEngine) -> int:
		count = migration.import_legacy(raw)
		print(f"Imported {count} legacy tools. Run 'toolsync migrate' to upload them.")
		return 0

	return _run(args, action, initialize=False)


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config file semantically."""
	try:
		config = load_config(args.config)
	except FileNotFoundError as exc:
		print(f"Error: {exc}")
		return 1
	issues = validate_config(config)
	if not issues:
		print("Config OK.")
		return 0
	has_errors = False
	for level, message in issues:
		print(f"  [{level.upper()}] {message}")
		if level == "error":
			has_errors = True
	return 1 if has_errors else 0


COMMANDS = {
	"init": cmd_init,
	"list": cmd_list,
	"add": cmd_add,
	"remove": cmd_remove,
	"pin": cmd_pin,
	"favorite": cmd_favorite,
	"use": cmd_use,
	"refresh": cmd_refresh,
	"search": cmd_search,
	"status": cmd_status,
	"migrate": cmd_migrate,
	"skip-migration": cmd_skip_migration,
	"import-legacy": cmd_import_legacy,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	logging.basicConfig(
		level=logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)
	parser = build_parser()
	args = parser.parse_args(argv)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	return handler(args)


if __name__ == "__main__":
	sys.exit(main())
