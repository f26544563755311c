"""Structured sync events: one per engine operation.

Observers receive a ``SyncEvent`` and must not affect engine behavior.
``EventStream`` writes the events as JSONL for jq-friendly analysis.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Callable

logger = logging.getLogger(__name__)

OUTCOME_OK = "ok"
OUTCOME_DEGRADED = "degraded"
OUTCOME_ERROR = "error"
OUTCOME_NOOP = "noop"


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


@dataclass
class SyncEvent:
	operation: str
	outcome: str = OUTCOME_OK
	count: int | None = None
	tool_id: str | None = None
	strategy: str | None = None
	error_kind: str | None = None
	message: str = ""
	timestamp: str = field(default_factory=_now_iso)

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)


SyncObserver = Callable[[SyncEvent], None]


def log_observer(event: SyncEvent) -> None:
	"""Log an event at a level matching its outcome."""
	if event.outcome == OUTCOME_ERROR:
		logger.warning(
			"%s failed [%s]: %s", event.operation, event.error_kind, event.message,
		)
	elif event.outcome == OUTCOME_DEGRADED:
		logger.warning("%s degraded: %s", event.operation, event.message)
	elif event.count is not None:
		logger.info("%s ok (%d tools)", event.operation, event.count)
	else:
		logger.debug("%s %s %s", event.operation, event.outcome, event.tool_id or "")


class EventStream:
	"""Append-only JSONL writer for sync events."""

	def __init__(self, path: Path) -> None:
		self._path = path
		self._file: IO[str] | None = None

	def open(self) -> None:
		self._path.parent.mkdir(parents=True, exist_ok=True)
		self._file = self._path.open("a", encoding="utf-8")

	def close(self) -> None:
		if self._file is not None:
			self._file.close()
			self._file = None

	def __call__(self, event: SyncEvent) -> None:
		if self._file is None:
			return
		self._file.write(json.dumps(event.to_dict(), separators=(",", ":")) + "\n")
		self._file.flush()
