"""Typed errors surfaced to dashboard callers.

Every error carries a stable machine-checkable ``kind`` and a short
``message`` suitable for direct display.
"""

from __future__ import annotations


class ToolSyncError(RuntimeError):
	"""Base class for all toolsync errors."""

	kind = "tool_sync_error"

	def __init__(self, message: str) -> None:
		super().__init__(message)
		self.message = message


class RemoteUnavailable(ToolSyncError):
	"""The remote store is unreachable or returned a backend error."""

	kind = "remote_unavailable"


class ToolValidationError(ToolSyncError):
	"""Malformed input, e.g. a draft missing a required field."""

	kind = "validation_error"


class ToolNotFound(ToolSyncError):
	"""The operation targets an id that does not exist."""

	kind = "not_found"

	def __init__(self, tool_id: str, message: str | None = None) -> None:
		super().__init__(message or f"Tool {tool_id} not found")
		self.tool_id = tool_id


class MigrationAborted(ToolSyncError):
	"""A legacy-data migration failed. Non-fatal; retried on next launch."""

	kind = "migration_aborted"


def error_kind(exc: BaseException) -> str:
	"""Return the ``kind`` of a toolsync error, or a generic kind otherwise."""
	if isinstance(exc, ToolSyncError):
		return exc.kind
	return "unexpected_error"
