"""
Network layer: retried JSON / streaming GETs and cursor pagination.
"""
from services.network.fetcher import FetchResult, RetryingFetcher, StreamHandle
from services.network.paginator import Paginator

__all__ = [
    "FetchResult",
    "RetryingFetcher",
    "StreamHandle",
    "Paginator",
]
