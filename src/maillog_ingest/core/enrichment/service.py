"""Scheduled, rate-limited enrichment of connection records."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from ..errors import IpLookupError
from ..models import ConnectionRecord, IpInfo
from ..store import Store
from .client import IpLookupClient
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class LookupOutcome(str, Enum):
    CACHE_HIT = "cache_hit"
    UPDATED = "updated"
    FAILED = "failed"


@dataclass(slots=True)
class BatchReport:
    selected: int = 0
    cache_hits: int = 0
    updated: int = 0
    failed: int = 0


class IpEnrichmentService:
    """Fill isp/org/country for observed IPs without exceeding the API budget.

    A failed lookup changes nothing, so the record stays stale and is retried
    on the next run.
    """

    def __init__(
        self,
        store: Store,
        client: IpLookupClient,
        limiter: RateLimiter,
        *,
        ttl: timedelta = timedelta(days=14),
        batch_size: int = 15,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._client = client
        self.limiter = limiter
        self.ttl = ttl
        self.batch_size = batch_size
        self._now = now
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def is_fresh(self, record: ConnectionRecord | None) -> bool:
        if record is None or record.ip_info_last_updated is None:
            return False
        return self._now() - record.ip_info_last_updated < self.ttl

    def reset_rate_limit(self) -> None:
        self.limiter.reset()

    async def get_ip_info(self, ip_address: str) -> tuple[LookupOutcome, IpInfo | None]:
        cached = await self._store.get_connection(ip_address)
        if self.is_fresh(cached):
            return LookupOutcome.CACHE_HIT, cached.ip_info

        await self.limiter.acquire()
        try:
            info = await self._client.lookup(ip_address)
        except IpLookupError as exc:
            logger.error("%s", exc)
            return LookupOutcome.FAILED, None

        await self._store.update_ip_info(ip_address, info, self._now())
        return LookupOutcome.UPDATED, info

    async def batch_update(self, limit: int | None = None) -> BatchReport:
        limit = self.batch_size if limit is None else limit
        cutoff = self._now() - self.ttl
        records = await self._store.stale_connections(cutoff, limit)
        report = BatchReport(selected=len(records))
        logger.info("Found %s IPs needing update", len(records))

        for record in records:
            try:
                outcome, _ = await self.get_ip_info(record.ip_address)
            except Exception:
                logger.exception("Error updating IP %s", record.ip_address)
                report.failed += 1
                continue

            if outcome == LookupOutcome.CACHE_HIT:
                report.cache_hits += 1
            elif outcome == LookupOutcome.UPDATED:
                logger.debug("Successfully updated IP: %s", record.ip_address)
                report.updated += 1
            else:
                report.failed += 1

        logger.info(
            "Completed batch IP info update (updated=%s cached=%s failed=%s)",
            report.updated,
            report.cache_hits,
            report.failed,
        )
        return report

    async def scheduled_update(self) -> BatchReport | None:
        """Entry point for the timer. Overlapping runs are skipped, not queued."""
        if self._running:
            logger.warning("IP update job is already running, skipping this run")
            return None

        self._running = True
        try:
            logger.info("IP update started")
            return await self.batch_update()
        finally:
            self._running = False
