"""Lookup provider interface and implementations."""

from people_lookup.lookup.errors import ProviderError, ProviderUnavailableError
from people_lookup.lookup.provider.base import DetailFetch, LookupProvider, SearchPage
from people_lookup.lookup.provider.fixture import FixtureLookupProvider

__all__ = [
    "DetailFetch",
    "FixtureLookupProvider",
    "LookupProvider",
    "ProviderError",
    "ProviderUnavailableError",
    "SearchPage",
]
