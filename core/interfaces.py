"""
Protocol-based interfaces for Dependency Injection.
These interfaces let components accept test doubles in place of the real network layer.
"""
from typing import Any, Dict, List, Protocol, runtime_checkable


@runtime_checkable
class IJsonFetcher(Protocol):
    """Anything able to GET a JSON document with retries (see RetryingFetcher)."""

    async def fetch_json(self, url: str) -> Any:
        """Returns a FetchResult; never raises on network failure."""
        ...


@runtime_checkable
class IRecordProjection(Protocol):
    """Filters / reshapes a batch of records: project(records) -> records."""

    def __call__(self, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ...
