"""Persistence interface consumed by the ingestion core."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Protocol

from ..models import ConnectionRecord, DeliveryEvent, EventType, FileReadState, IpInfo

# Two events describing the same fact within this tolerance are one event.
DUPLICATE_TOLERANCE = timedelta(seconds=1)


def same_event(a: DeliveryEvent, b: DeliveryEvent) -> bool:
    """True when two events share the de-duplication key."""
    return (
        (a.queue_id or "") == (b.queue_id or "")
        and a.event_type == b.event_type
        and a.data == b.data
        and abs(a.timestamp - b.timestamp) <= DUPLICATE_TOLERANCE
    )


class Store(Protocol):
    """Async persistence for file offsets, events and connection aggregates."""

    # File read state

    async def get_file_states(self, file_name: str) -> list[FileReadState]: ...

    async def list_file_states(self) -> list[FileReadState]: ...

    async def save_file_state(self, state: FileReadState) -> None:
        """Insert or update the row for (state.file_name, state.inode)."""
        ...

    async def delete_file_state(self, file_name: str, inode: int) -> None: ...

    # Delivery events

    async def insert_event(self, event: DeliveryEvent) -> None:
        """Store a new event. Raises DuplicateEventError for a known event."""
        ...

    async def events_between(
        self,
        start: datetime,
        end: datetime,
        event_type: EventType | None = None,
    ) -> list[DeliveryEvent]:
        """Events with start <= timestamp < end, oldest first."""
        ...

    async def events_for_queue(
        self,
        queue_id: str,
        event_type: EventType | None = None,
    ) -> list[DeliveryEvent]:
        """Stored events of one queue id, oldest first."""
        ...

    # Connection records

    async def increment_connection(self, ip_address: str, timestamp: datetime) -> ConnectionRecord:
        """Create with amount=1 or bump amount and last_timestamp."""
        ...

    async def get_connection(self, ip_address: str) -> ConnectionRecord | None: ...

    async def stale_connections(self, cutoff: datetime, limit: int) -> list[ConnectionRecord]:
        """Records never enriched or enriched before cutoff, most recently active first."""
        ...

    async def update_ip_info(self, ip_address: str, info: IpInfo, updated_at: datetime) -> None: ...

    async def set_blacklisted(self, ip_address: str, blacklisted: bool) -> ConnectionRecord:
        """Toggle the flag. Raises UnknownConnectionError when the IP has no record."""
        ...

    async def top_connections(self, limit: int) -> list[ConnectionRecord]:
        """Records ordered by amount, highest first."""
        ...

    async def close(self) -> None: ...
