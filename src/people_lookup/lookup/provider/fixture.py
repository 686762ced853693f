"""Provider backed by a JSON fixture file, used by the CLI and tests."""

from __future__ import annotations

import json
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from people_lookup.lookup.errors import ProviderError
from people_lookup.lookup.models import DetailRecord
from people_lookup.lookup.provider.base import DetailFetch, SearchPage


class FixtureLookupProvider:
    """Deterministic provider answering from canned search pages and detail payloads.

    Fixture layout::

        {
          "available": true,
          "searches": {"Jane Doe": [["link-1", "link-2"], ["link-3"]],
                       "Jane Doe|Austin, TX": [["link-4"]]},
          "details": {"link-1": {"name": "Jane Doe", "age": 61, ...}},
          "failing_searches": ["Broken Name"],
          "failing_details": ["link-9"]
        }

    Search keys are ``name`` or ``name|location``; a located query falls back to
    the bare name when no located key exists.
    """

    def __init__(self, data: Mapping[str, Any]) -> None:
        self._available = bool(data.get("available", True))
        self._searches: dict[str, list[list[str]]] = {
            str(key): [list(page) for page in pages]
            for key, pages in (data.get("searches") or {}).items()
        }
        self._details: dict[str, dict[str, Any]] = dict(data.get("details") or {})
        self._failing_searches = frozenset(data.get("failing_searches") or ())
        self._failing_details = frozenset(data.get("failing_details") or ())
        self._lock = threading.Lock()
        self.search_calls: list[tuple[str, str | None, int]] = []
        self.detail_calls: list[str] = []

    @classmethod
    def from_path(cls, path: Path) -> FixtureLookupProvider:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise ValueError(f"Cannot read provider fixture {path}: {error}") from error
        if not isinstance(data, dict):
            raise ValueError(f"Provider fixture {path} must contain a JSON object.")
        return cls(data)

    def is_available(self) -> bool:
        return self._available

    def search(self, name: str, location: str | None, page: int) -> SearchPage:
        key = f"{name}|{location}" if location else name
        with self._lock:
            self.search_calls.append((name, location, page))
        if key in self._failing_searches or name in self._failing_searches:
            raise ProviderError(f"Search failed for {key!r}")
        pages = self._searches.get(key)
        if pages is None:
            pages = self._searches.get(name, [])
        if page > len(pages):
            return SearchPage(detail_links=[], pages_consumed=1, has_more=False)
        return SearchPage(
            detail_links=list(pages[page - 1]),
            pages_consumed=1,
            has_more=page < len(pages),
        )

    def fetch_detail(self, detail_link: str) -> DetailFetch:
        with self._lock:
            self.detail_calls.append(detail_link)
        if detail_link in self._failing_details:
            raise ProviderError(f"Detail fetch failed for {detail_link!r}", requests_used=1)
        payload = self._details.get(detail_link)
        if payload is None:
            raise ProviderError(f"Detail record not found: {detail_link!r}", requests_used=1)
        record = DetailRecord.from_payload({**payload, "detail_link": detail_link})
        return DetailFetch(record=record, requests_used=1)
