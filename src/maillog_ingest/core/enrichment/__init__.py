"""IP ownership/geolocation enrichment."""

from __future__ import annotations

from .client import IpApiClient, IpApiResponse, IpLookupClient
from .rate_limit import RateLimiter
from .service import BatchReport, IpEnrichmentService, LookupOutcome

__all__ = [
    "BatchReport",
    "IpApiClient",
    "IpApiResponse",
    "IpEnrichmentService",
    "IpLookupClient",
    "LookupOutcome",
    "RateLimiter",
]
