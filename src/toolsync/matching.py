"""De-duplication of candidate tools against tools that already exist.

Migration compares exact URLs; search suggestions compare hostnames.
Both go through ``exclude_known`` with a different key function.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TypeVar
from urllib.parse import urlsplit

T = TypeVar("T")

UrlKey = Callable[[str], "str | None"]


def url_key(url: str) -> str | None:
	"""Exact URL, or None for a blank one."""
	return url or None


def hostname_key(url: str) -> str | None:
	"""Lowercased hostname, or None when the URL has no parseable host."""
	if not url:
		return None
	try:
		host = urlsplit(url).hostname
	except ValueError:
		return None
	return host or None


def known_keys(urls: Iterable[str], key: UrlKey) -> set[str]:
	keys: set[str] = set()
	for url in urls:
		k = key(url)
		if k is not None:
			keys.add(k)
	return keys


def exclude_known(
	candidates: Iterable[T],
	known_urls: Iterable[str],
	url_of: Callable[[T], str],
	key: UrlKey = url_key,
) -> list[T]:
	"""Return candidates whose URL key is not among the known URLs' keys.

	Candidates without a key (blank or unparseable URL) never match and
	are kept.
	"""
	known = known_keys(known_urls, key)
	result: list[T] = []
	for candidate in candidates:
		k = key(url_of(candidate))
		if k is None or k not in known:
			result.append(candidate)
	return result
