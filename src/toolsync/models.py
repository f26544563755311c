"""Data models for toolsync state."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

from toolsync.errors import ToolValidationError

UNCATEGORIZED = "Uncategorized"


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _unique(items: list[str] | None) -> list[str]:
	"""Drop blanks and duplicates, keeping first-seen order."""
	seen: set[str] = set()
	result: list[str] = []
	for item in items or []:
		if not item or item in seen:
			continue
		seen.add(item)
		result.append(item)
	return result


@dataclass
class Tool:
	"""A dashboard tool as held in memory and in the cache snapshot."""

	id: str
	name: str
	url: str
	description: str = ""
	notes: str | None = None
	category: str = ""
	categories: list[str] = field(default_factory=list)
	tags: list[str] = field(default_factory=list)
	is_pinned: bool = False
	is_favorite: bool = False
	favicon: str | None = None
	rating: float | None = None
	email: str | None = None
	api_key: str | None = None
	usage_count: int = 0
	last_used: str | None = None
	created_at: str = field(default_factory=_now_iso)
	updated_at: str = field(default_factory=_now_iso)

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> Tool:
		known = {f.name for f in fields(cls)}
		return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ToolDraft:
	"""Input for creating a tool. The remote store assigns id and timestamps."""

	name: str
	url: str
	description: str = ""
	notes: str | None = None
	category: str = ""
	categories: list[str] = field(default_factory=list)
	tags: list[str] = field(default_factory=list)
	is_pinned: bool = False
	is_favorite: bool = False
	favicon: str | None = None
	rating: float | None = None
	email: str | None = None
	api_key: str | None = None
	usage_count: int = 0

	def validate(self) -> ToolDraft:
		"""Check required fields and normalize tags/categories in place.

		Raises:
			ToolValidationError: If name or url is blank, or usage_count is negative.
		"""
		if not self.name or not self.name.strip():
			raise ToolValidationError("Tool name is required")
		if not self.url or not self.url.strip():
			raise ToolValidationError(f"Tool '{self.name}' is missing a URL")
		if self.usage_count < 0:
			raise ToolValidationError(f"Tool '{self.name}' has a negative usage count")
		self.name = self.name.strip()
		self.url = self.url.strip()
		self.tags = _unique(self.tags)
		self.categories = _unique(self.categories)
		if not self.categories and self.category:
			self.categories = [self.category]
		return self


@dataclass
class MigrationResult:
	"""Outcome of a legacy-data migration attempt."""

	success: bool
	count: int = 0
	error: str | None = None
	error_kind: str | None = None

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)


# -- Wire schemas --


class ToolRow(BaseModel, extra="ignore"):
	"""Pydantic schema for validating a tools row returned by the remote store."""

	id: str
	title: str
	url: str | None = None
	description: str | None = None
	category: str | None = None
	categories: list[str] | None = None
	tags: list[str] | None = None
	is_pinned: bool | None = None
	is_favorite: bool | None = None
	logo_url: str | None = None
	rating: float | None = None
	email: str | None = None
	api_key: str | None = None
	notes: str | None = None
	usage_count: int | None = None
	last_used: str | None = None
	created_at: str
	updated_at: str

	def to_tool(self) -> Tool:
		categories = self.categories or ([self.category] if self.category else [])
		return Tool(
			id=self.id,
			name=self.title,
			url=self.url or "",
			description=self.description or "",
			notes=self.notes,
			category=self.category or "",
			categories=list(categories),
			tags=_unique(self.tags),
			is_pinned=bool(self.is_pinned),
			is_favorite=bool(self.is_favorite),
			favicon=self.logo_url,
			rating=self.rating,
			email=self.email,
			api_key=self.api_key,
			usage_count=self.usage_count or 0,
			last_used=self.last_used,
			created_at=self.created_at,
			updated_at=self.updated_at,
		)


class LegacyTool(BaseModel, extra="ignore", populate_by_name=True):
	"""A tool record from the pre-remote browser storage (camelCase keys)."""

	name: str = Field(min_length=1)
	url: str = Field(min_length=1)
	description: str | None = None
	tags: list[str] | None = None
	category: str | None = None
	is_pinned: bool | None = Field(default=None, alias="isPinned")
	favicon: str | None = None
	rating: float | None = None
	email: str | None = None
	api_key: str | None = Field(default=None, alias="apiKey")
	notes: str | None = None
	usage_count: int | None = Field(default=None, alias="usageCount")

	@field_validator("name", "url", mode="before")
	@classmethod
	def _strip(cls, value: Any) -> Any:
		return value.strip() if isinstance(value, str) else value

	def to_draft(self) -> ToolDraft:
		category = self.category or UNCATEGORIZED
		return ToolDraft(
			name=self.name,
			url=self.url,
			description=self.description or "",
			tags=_unique(self.tags),
			category=category,
			categories=[category],
			is_pinned=self.is_pinned or False,
			favicon=self.favicon,
			rating=self.rating,
			email=self.email,
			api_key=self.api_key,
			notes=self.notes,
			usage_count=max(self.usage_count or 0, 0),
		)
