"""Bounded buffer of partially seen mail transactions."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field

from .models import ParsedLine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingTransaction:
    """What is known so far about one queue id."""

    queue_id: str
    created_at: float
    sender: ParsedLine | None = None
    sender_local: bool = False
    sender_persisted: bool = False
    external_recipient: bool = False
    buffered: list[ParsedLine] = field(default_factory=list)


class PendingTransactions:
    """Queue-id keyed cache with max-age and max-size eviction (oldest first).

    Evicted entries are dropped: their buffered halves never found a
    counterpart that would make them worth keeping.
    """

    def __init__(
        self,
        *,
        max_age: float = 3600.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._max_age = max_age
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, PendingTransaction] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, queue_id: object) -> bool:
        return queue_id in self._entries

    def get(self, queue_id: str) -> PendingTransaction | None:
        self.evict_expired()
        return self._entries.get(queue_id)

    def get_or_create(self, queue_id: str) -> PendingTransaction:
        self.evict_expired()
        entry = self._entries.get(queue_id)
        if entry is None:
            entry = PendingTransaction(queue_id=queue_id, created_at=self._clock())
            self._entries[queue_id] = entry
            while len(self._entries) > self._max_entries:
                old_id, old = self._entries.popitem(last=False)
                self._log_drop(old_id, old, "capacity")
        return entry

    def discard(self, queue_id: str) -> None:
        self._entries.pop(queue_id, None)

    def evict_expired(self) -> int:
        """Drop entries older than max_age. Returns how many were dropped."""
        cutoff = self._clock() - self._max_age
        dropped = 0
        while self._entries:
            queue_id, entry = next(iter(self._entries.items()))
            if entry.created_at > cutoff:
                break
            self._entries.popitem(last=False)
            self._log_drop(queue_id, entry, "age")
            dropped += 1
        return dropped

    @staticmethod
    def _log_drop(queue_id: str, entry: PendingTransaction, reason: str) -> None:
        unmatched = len(entry.buffered)
        if entry.sender is not None and entry.sender_local and not entry.sender_persisted:
            unmatched += 1
        if unmatched:
            logger.debug(
                "Dropping %s unmatched line(s) for %s (evicted by %s)", unmatched, queue_id, reason
            )
