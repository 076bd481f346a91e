"""Core data models for mail log ingestion."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class EventType(str, Enum):
    """Kinds of mail log lines the pipeline keeps."""

    FROM = "from"
    TO = "to"
    CONNECT = "connect"


@dataclass(frozen=True, slots=True)
class ParsedLine:
    """Classified log line (output of the line parser)."""

    timestamp: datetime
    queue_id: str | None  # None on lines without an MTA transaction context
    kind: EventType
    payload: str  # email address or peer IP
    raw: str


@dataclass(frozen=True, slots=True)
class DeliveryEvent:
    """Persisted log event. Unique on (queue_id, event_type, data, timestamp +/- 1s)."""

    queue_id: str | None
    timestamp: datetime
    event_type: EventType
    data: str
    raw_line: str | None = None

    @classmethod
    def from_line(cls, line: ParsedLine) -> DeliveryEvent:
        return cls(
            queue_id=line.queue_id,
            timestamp=line.timestamp,
            event_type=line.kind,
            data=line.payload,
            raw_line=line.raw,
        )


@dataclass(slots=True)
class FileReadState:
    """Read progress for one incarnation (inode) of a log file."""

    file_name: str
    inode: int
    last_read_position: int = 0
    last_modified: datetime | None = None
    last_checked: datetime | None = None


@dataclass(frozen=True, slots=True)
class IpInfo:
    """Ownership/geolocation data returned by the lookup service."""

    isp: str | None
    org: str | None
    country: str | None


@dataclass(slots=True)
class ConnectionRecord:
    """Per-source-IP connection aggregate."""

    ip_address: str
    amount: int
    last_timestamp: datetime
    blacklisted: bool = False
    isp: str | None = None
    org: str | None = None
    country: str | None = None
    ip_info_last_updated: datetime | None = None

    @property
    def ip_info(self) -> IpInfo:
        return IpInfo(isp=self.isp, org=self.org, country=self.country)


@dataclass(frozen=True, slots=True)
class ResolvedOffset:
    """Where to start reading a file, and whether this is a fresh incarnation."""

    state: FileReadState
    start_offset: int
    is_new_incarnation: bool
