"""Source acquisition: transports, the content-addressed cache, and the fetcher."""

from bundle_orchestrator.sources.cache import SourceCache
from bundle_orchestrator.sources.extract import UnsupportedArchiveError, extract_archive
from bundle_orchestrator.sources.fetcher import FetchStats, SourceFetcher
from bundle_orchestrator.sources.transports import (
    ArchiveTransport,
    GitCheckoutTransport,
    GitTransport,
    HttpArchiveTransport,
)

__all__ = [
    "ArchiveTransport",
    "FetchStats",
    "GitCheckoutTransport",
    "GitTransport",
    "HttpArchiveTransport",
    "SourceCache",
    "SourceFetcher",
    "UnsupportedArchiveError",
    "extract_archive",
]
