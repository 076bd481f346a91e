"""Wiring of the ingestion and enrichment subsystems.

Three independent timers drive the process: the log poll, the rate-limit
window housekeeping and the enrichment batch.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from .aggregator import ConnectionAggregator
from .config import PipelineConfig
from .correlator import EventCorrelator
from .enrichment import BatchReport, IpApiClient, IpEnrichmentService, IpLookupClient, RateLimiter
from .formats import PostfixLogParser
from .pending import PendingTransactions
from .poller import LogPoller, PollResult
from .scheduler import PeriodicTask
from .store import Store, open_store
from .tracker import FileStateTracker

logger = logging.getLogger(__name__)


class MaillogPipeline:
    def __init__(
        self,
        cfg: PipelineConfig,
        store: Store,
        *,
        lookup_client: IpLookupClient | None = None,
    ) -> None:
        self.cfg = cfg
        self.store = store

        self.tracker = FileStateTracker(store)
        self.aggregator = ConnectionAggregator(store)
        self.correlator = EventCorrelator(
            store,
            self.aggregator,
            local_domain=cfg.local_domain,
            admin_mailboxes=cfg.effective_admin_mailboxes(),
            pending=PendingTransactions(
                max_age=cfg.pending_max_age,
                max_entries=cfg.pending_max_entries,
            ),
        )
        self.poller = LogPoller(
            log_dir=cfg.log_dir,
            prefix=cfg.file_prefix,
            parser=PostfixLogParser(tz=cfg.tz),
            tracker=self.tracker,
            correlator=self.correlator,
            batch_lines=cfg.batch_lines,
        )

        self.lookup_client = lookup_client or IpApiClient(
            cfg.ipinfo_url, timeout=cfg.ipinfo_timeout
        )
        self.enrichment = IpEnrichmentService(
            store,
            self.lookup_client,
            RateLimiter(cfg.ipinfo_rate_limit, cfg.rate_window),
            ttl=timedelta(days=cfg.ipinfo_ttl_days),
            batch_size=cfg.enrich_batch,
        )

        self._timers = [
            PeriodicTask("log poll", cfg.poll_interval, self.poll_once, run_immediately=True),
            PeriodicTask("rate limit reset", cfg.rate_window, self.enrichment.reset_rate_limit),
            PeriodicTask("ip enrichment", cfg.enrich_interval, self.enrichment.scheduled_update),
        ]

    @classmethod
    def from_config(cls, cfg: PipelineConfig) -> MaillogPipeline:
        return cls(cfg, open_store(cfg.db_url))

    async def poll_once(self) -> PollResult:
        result = await self.poller.poll()
        stats = self.correlator.stats
        logger.debug(
            "Poll done: %s/%s files, %s lines "
            "(persisted=%s duplicates=%s suppressed=%s pending=%s)",
            result.files_processed,
            result.files_seen,
            result.lines,
            stats.persisted,
            stats.duplicates,
            stats.suppressed,
            len(self.correlator.pending),
        )
        return result

    async def enrich_once(self) -> BatchReport | None:
        return await self.enrichment.scheduled_update()

    def start(self) -> None:
        for timer in self._timers:
            timer.start()
        logger.info("Log parser initialized with periodic polling of %s", self.cfg.log_dir)

    async def stop(self) -> None:
        for timer in self._timers:
            await timer.stop()
        close = getattr(self.lookup_client, "close", None)
        if close is not None:
            await close()
        await self.store.close()

    async def run_forever(self) -> None:
        self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()
