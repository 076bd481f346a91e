"""Transaction correlation, internal-traffic suppression and de-duplication.

A queue id groups the from/to lines of one delivery. A pair where both
addresses are in the local domain is internal traffic and none of its lines
are stored. Only local-address halves ever wait in the pending buffer: a
non-local address can never be part of an internal pair.

Once its sender is stored a transaction leaves the buffer. Recipients that
show up later, including after a restart, are matched against the stored
sender instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .aggregator import ConnectionAggregator
from .errors import DuplicateEventError
from .models import DeliveryEvent, EventType, ParsedLine
from .pending import PendingTransaction, PendingTransactions
from .store import Store

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CorrelatorStats:
    persisted: int = 0
    duplicates: int = 0
    suppressed: int = 0
    connections: int = 0


class EventCorrelator:
    """Consume classified lines in arrival order and persist the survivors."""

    def __init__(
        self,
        store: Store,
        aggregator: ConnectionAggregator,
        *,
        local_domain: str,
        admin_mailboxes: frozenset[str] | set[str] = frozenset(),
        pending: PendingTransactions | None = None,
    ) -> None:
        self._store = store
        self._aggregator = aggregator
        self._local_suffix = "@" + local_domain.lower().lstrip("@")
        self._admin = frozenset(m.lower() for m in admin_mailboxes)
        self.pending = pending or PendingTransactions()
        self.stats = CorrelatorStats()

    def is_local(self, address: str) -> bool:
        return address.lower().endswith(self._local_suffix)

    async def handle(self, line: ParsedLine) -> None:
        if line.kind == EventType.CONNECT:
            await self._aggregator.record(line)
            self.stats.connections += 1
            await self._persist(line)
            return

        address = line.payload.lower()
        if address in self._admin:
            logger.debug("Skipping admin mailbox %s: %s", line.queue_id, line.payload)
            self.stats.suppressed += 1
            return
        if line.queue_id is None:
            # from/to without a queue id cannot be correlated.
            return

        if line.kind == EventType.FROM:
            await self._handle_from(line)
        else:
            await self._handle_to(line)

    async def _handle_from(self, line: ParsedLine) -> None:
        entry = self.pending.get_or_create(line.queue_id)
        entry.sender = line
        entry.sender_local = self.is_local(line.payload)

        if not entry.sender_local:
            await self._persist_sender(entry)
            for buffered in entry.buffered:
                await self._persist(buffered)
            entry.buffered.clear()
            self._complete(entry)
            return

        if entry.buffered:
            # Every buffered recipient is local: internal pairs. The sender
            # stays held in case an external recipient follows.
            self._suppress_internal(entry, len(entry.buffered))
            entry.buffered.clear()

        if entry.external_recipient:
            await self._persist_sender(entry)
            self._complete(entry)

    async def _handle_to(self, line: ParsedLine) -> None:
        local = self.is_local(line.payload)
        entry = self.pending.get(line.queue_id)

        if entry is None:
            # The sender may have been handled before a restart or an eviction.
            sender = await self._stored_sender(line.queue_id)
            if sender is not None:
                if not local or not self.is_local(sender.data):
                    await self._persist(line)
                else:
                    self.stats.suppressed += 1
                return
            entry = self.pending.get_or_create(line.queue_id)

        if not local:
            entry.external_recipient = True
            await self._persist(line)
            if entry.sender is not None:
                await self._persist_sender(entry)
                self._complete(entry)
            return

        if entry.sender is None:
            entry.buffered.append(line)
        elif not entry.sender_local:
            await self._persist(line)
        else:
            self._suppress_internal(entry, 1)

    async def _stored_sender(self, queue_id: str) -> DeliveryEvent | None:
        senders = await self._store.events_for_queue(queue_id, EventType.FROM)
        return senders[0] if senders else None

    def _suppress_internal(self, entry: PendingTransaction, dropped: int) -> None:
        sender = entry.sender.payload if entry.sender is not None else "-"
        logger.debug("Skipping internal email %s: %s", entry.queue_id, sender)
        self.stats.suppressed += dropped

    def _complete(self, entry: PendingTransaction) -> None:
        """Forget a transaction whose sender is stored; later lines are resolved from the store."""
        self.pending.discard(entry.queue_id)

    async def _persist_sender(self, entry: PendingTransaction) -> None:
        if entry.sender is None or entry.sender_persisted:
            return
        await self._persist(entry.sender)
        entry.sender_persisted = True

    async def _persist(self, line: ParsedLine) -> bool:
        """Insert one event; an already stored event is expected, not an error."""
        event = DeliveryEvent.from_line(line)
        try:
            await self._store.insert_event(event)
        except DuplicateEventError:
            logger.debug(
                "Duplicate event ignored: %s - %s - %s - %s",
                event.queue_id,
                event.event_type.value,
                event.data,
                event.timestamp.isoformat(),
            )
            self.stats.duplicates += 1
            return False
        self.stats.persisted += 1
        return True
