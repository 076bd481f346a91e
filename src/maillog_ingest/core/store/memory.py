"""In-process store backed by plain dicts."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from ..errors import DuplicateEventError, UnknownConnectionError
from ..models import ConnectionRecord, DeliveryEvent, EventType, FileReadState, IpInfo
from .base import same_event


class MemoryStore:
    """Store implementation for tests and dry runs. Nothing survives the process."""

    def __init__(self) -> None:
        self._states: dict[tuple[str, int], FileReadState] = {}
        self._events: list[DeliveryEvent] = []
        self._connections: dict[str, ConnectionRecord] = {}

    async def get_file_states(self, file_name: str) -> list[FileReadState]:
        return [replace(s) for (name, _), s in self._states.items() if name == file_name]

    async def list_file_states(self) -> list[FileReadState]:
        return [replace(s) for s in self._states.values()]

    async def save_file_state(self, state: FileReadState) -> None:
        self._states[(state.file_name, state.inode)] = replace(state)

    async def delete_file_state(self, file_name: str, inode: int) -> None:
        self._states.pop((file_name, inode), None)

    async def insert_event(self, event: DeliveryEvent) -> None:
        if any(same_event(event, existing) for existing in self._events):
            raise DuplicateEventError(f"{event.queue_id} {event.event_type.value} {event.data}")
        self._events.append(event)

    async def events_between(
        self,
        start: datetime,
        end: datetime,
        event_type: EventType | None = None,
    ) -> list[DeliveryEvent]:
        out = [
            e
            for e in self._events
            if start <= e.timestamp < end and (event_type is None or e.event_type == event_type)
        ]
        out.sort(key=lambda e: e.timestamp)
        return out

    async def events_for_queue(
        self,
        queue_id: str,
        event_type: EventType | None = None,
    ) -> list[DeliveryEvent]:
        out = [
            e
            for e in self._events
            if e.queue_id == queue_id and (event_type is None or e.event_type == event_type)
        ]
        out.sort(key=lambda e: e.timestamp)
        return out

    async def increment_connection(self, ip_address: str, timestamp: datetime) -> ConnectionRecord:
        rec = self._connections.get(ip_address)
        if rec is None:
            rec = ConnectionRecord(ip_address=ip_address, amount=1, last_timestamp=timestamp)
            self._connections[ip_address] = rec
        else:
            rec.amount += 1
            rec.last_timestamp = timestamp
        return replace(rec)

    async def get_connection(self, ip_address: str) -> ConnectionRecord | None:
        rec = self._connections.get(ip_address)
        return replace(rec) if rec is not None else None

    async def stale_connections(self, cutoff: datetime, limit: int) -> list[ConnectionRecord]:
        stale = [
            r
            for r in self._connections.values()
            if r.ip_info_last_updated is None or r.ip_info_last_updated < cutoff
        ]
        stale.sort(key=lambda r: r.last_timestamp, reverse=True)
        return [replace(r) for r in stale[:limit]]

    async def update_ip_info(self, ip_address: str, info: IpInfo, updated_at: datetime) -> None:
        rec = self._connections.get(ip_address)
        if rec is None:
            return
        rec.isp = info.isp
        rec.org = info.org
        rec.country = info.country
        rec.ip_info_last_updated = updated_at

    async def set_blacklisted(self, ip_address: str, blacklisted: bool) -> ConnectionRecord:
        rec = self._connections.get(ip_address)
        if rec is None:
            raise UnknownConnectionError(ip_address)
        rec.blacklisted = blacklisted
        return replace(rec)

    async def top_connections(self, limit: int) -> list[ConnectionRecord]:
        ranked = sorted(
            self._connections.values(),
            key=lambda r: (r.amount, r.last_timestamp),
            reverse=True,
        )
        return [replace(r) for r in ranked[:limit]]

    async def close(self) -> None:
        return None
