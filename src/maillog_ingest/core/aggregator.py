"""Per-source-IP connection counters."""

from __future__ import annotations

import logging

from .models import ConnectionRecord, EventType, ParsedLine
from .store import Store

logger = logging.getLogger(__name__)


class ConnectionAggregator:
    """Sole writer of ConnectionRecord.amount and last_timestamp."""

    def __init__(self, store: Store) -> None:
        self._store = store

    async def record(self, line: ParsedLine) -> ConnectionRecord:
        if line.kind != EventType.CONNECT:
            raise ValueError(f"expected a connect line, got {line.kind.value}")
        rec = await self._store.increment_connection(line.payload, line.timestamp)
        if rec.amount == 1:
            logger.debug("New connection record for %s", rec.ip_address)
        return rec
