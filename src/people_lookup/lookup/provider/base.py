"""Lookup provider contract consumed by the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from people_lookup.lookup.models import DetailRecord


@dataclass(slots=True)
class SearchPage:
    """One page of search results for a single (name, location) query."""

    detail_links: list[str] = field(default_factory=list)
    pages_consumed: int = 1
    has_more: bool = False


@dataclass(slots=True)
class DetailFetch:
    record: DetailRecord
    requests_used: int = 1


class LookupProvider(Protocol):
    """Metered remote people-search service.

    Implementations raise ``ProviderError`` for a failed call, carrying the
    number of billable requests the failed call still consumed.
    """

    def is_available(self) -> bool:
        """Return False when the provider is disabled or missing credentials."""
        raise NotImplementedError

    def search(self, name: str, location: str | None, page: int) -> SearchPage:
        """Fetch one result page (1-based) for a query."""
        raise NotImplementedError

    def fetch_detail(self, detail_link: str) -> DetailFetch:
        """Resolve one candidate into a detail record."""
        raise NotImplementedError
