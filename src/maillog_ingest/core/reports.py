"""Read-side queries over ingested data.

Mail traffic history mirrors the dashboard buckets: 7 days, 4 weeks, six
30-day months and three 365-day years, oldest bucket first.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

from .models import ConnectionRecord, DeliveryEvent, EventType
from .store import Store

UNKNOWN = "Unknown"


@dataclass(frozen=True, slots=True)
class TrafficBucket:
    start: date
    end: date
    incoming: int
    outgoing: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "in": self.incoming,
            "out": self.outgoing,
        }


def _is_local(address: str, local_domain: str) -> bool:
    return address.lower().endswith("@" + local_domain.lower())


def daily_traffic(
    events: list[DeliveryEvent],
    local_domain: str,
) -> dict[date, tuple[int, int]]:
    """Count (in, out) deliveries per UTC day.

    Out: a local sender whose queue id has a non-local recipient, counted on
    the sender's day. In: a local recipient whose queue id has a non-local
    sender, counted on the recipient's day.
    """
    senders: dict[str, list[DeliveryEvent]] = defaultdict(list)
    recipients: dict[str, list[DeliveryEvent]] = defaultdict(list)
    for e in events:
        if not e.queue_id:
            continue
        if e.event_type == EventType.FROM:
            senders[e.queue_id].append(e)
        elif e.event_type == EventType.TO:
            recipients[e.queue_id].append(e)

    counts: dict[date, list[int]] = defaultdict(lambda: [0, 0])
    for queue_id, froms in senders.items():
        for sender in froms:
            if not _is_local(sender.data, local_domain):
                continue
            if any(not _is_local(r.data, local_domain) for r in recipients.get(queue_id, ())):
                counts[sender.timestamp.astimezone(UTC).date()][1] += 1

    for queue_id, tos in recipients.items():
        external_sender = any(
            not _is_local(s.data, local_domain) for s in senders.get(queue_id, ())
        )
        if not external_sender:
            continue
        for recipient in tos:
            if _is_local(recipient.data, local_domain):
                counts[recipient.timestamp.astimezone(UTC).date()][0] += 1

    return {day: (c[0], c[1]) for day, c in counts.items()}


def _bucket(daily: dict[date, tuple[int, int]], start: date, end: date) -> TrafficBucket:
    incoming = outgoing = 0
    day = start
    while day <= end:
        i, o = daily.get(day, (0, 0))
        incoming += i
        outgoing += o
        day += timedelta(days=1)
    return TrafficBucket(start=start, end=end, incoming=incoming, outgoing=outgoing)


def _windows(
    daily: dict[date, tuple[int, int]],
    today: date,
    *,
    count: int,
    days: int,
) -> list[TrafficBucket]:
    buckets = []
    for i in range(count):
        end = today - timedelta(days=i * days)
        buckets.append(_bucket(daily, end - timedelta(days=days - 1), end))
    buckets.reverse()
    return buckets


async def mail_history(
    store: Store,
    local_domain: str,
    *,
    now: datetime | None = None,
) -> dict[str, list[TrafficBucket]]:
    now = now or datetime.now(UTC)
    today = now.astimezone(UTC).date()
    start = datetime(today.year, today.month, today.day, tzinfo=UTC) - timedelta(days=3 * 365)
    end = datetime(today.year, today.month, today.day, tzinfo=UTC) + timedelta(days=1)

    events = await store.events_between(start, end)
    daily = daily_traffic(events, local_domain)

    return {
        "daily": _windows(daily, today, count=7, days=1),
        "weekly": _windows(daily, today, count=4, days=7),
        "monthly": _windows(daily, today, count=6, days=30),
        "yearly": _windows(daily, today, count=3, days=365),
    }


def connection_to_dict(record: ConnectionRecord) -> dict[str, Any]:
    return {
        "address": record.ip_address,
        "count": record.amount,
        "last_seen": record.last_timestamp.isoformat(),
        "blacklisted": record.blacklisted,
        "info": {
            "isp": record.isp or UNKNOWN,
            "org": record.org or UNKNOWN,
            "country": record.country or UNKNOWN,
        },
        "info_updated": (
            record.ip_info_last_updated.isoformat() if record.ip_info_last_updated else None
        ),
    }


async def top_connections(store: Store, limit: int = 100) -> list[ConnectionRecord]:
    if limit <= 0:
        raise ValueError("limit must be > 0")
    return await store.top_connections(limit)


async def set_blacklisted(store: Store, ip_address: str, blacklisted: bool) -> ConnectionRecord:
    """Flip the persisted flag. Firewall rules are managed elsewhere."""
    return await store.set_blacklisted(ip_address.strip(), blacklisted)
