"""Postfix (syslog dialect) mail log parser."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo

from ..models import EventType, ParsedLine

_MONTHS = {
    name: idx
    for idx, name in enumerate(
        ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"),
        start=1,
    )
}


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class PostfixLogParser:
    """Parse RFC3164-style postfix lines into from/to/connect records.

    Syslog timestamps carry no year: the current year is assumed and, if that
    puts the line in the future, the previous year is used instead.
    """

    tz: tzinfo = UTC
    now: Callable[[], datetime] = field(default=_utc_now)

    _ts = re.compile(
        r"^(?P<mon>[A-Za-z]{3})\s+(?P<day>\d{1,2})\s+"
        r"(?P<h>\d{2}):(?P<m>\d{2}):(?P<s>\d{2})"
    )
    _queue_id = re.compile(r"postfix[\w-]*/\w+\[\d+\]:\s+(?P<qid>[0-9A-F]{10,20}):")
    _event = re.compile(
        r"(?:from=<(?P<from>[^>]+)>"
        r"|to=<(?P<to>[^>]+)>"
        r"|disconnect from .*?(?P<ip>\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}))"
    )

    def parse_timestamp(self, line: str) -> datetime | None:
        """Extract the leading "Mon D HH:MM:SS" timestamp, or None."""
        m = self._ts.match(line)
        if not m:
            return None
        month = _MONTHS.get(m.group("mon").title())
        if month is None:
            return None

        now = self.now()
        parts = (
            month,
            int(m.group("day")),
            int(m.group("h")),
            int(m.group("m")),
            int(m.group("s")),
        )
        try:
            ts = datetime(now.year, *parts, tzinfo=self.tz)
            if ts > now:
                ts = datetime(now.year - 1, *parts, tzinfo=self.tz)
        except ValueError:
            return None
        return ts.astimezone(UTC)

    def parse_queue_id(self, line: str) -> str | None:
        m = self._queue_id.search(line)
        return m.group("qid") if m else None

    def parse(self, line: str) -> ParsedLine | None:
        """Classify one line. Lines without a known event are ignored."""
        m = self._event.search(line)
        if not m:
            return None

        ts = self.parse_timestamp(line)
        if ts is None:
            return None

        if m.group("from") is not None:
            kind, payload = EventType.FROM, m.group("from")
        elif m.group("to") is not None:
            kind, payload = EventType.TO, m.group("to")
        else:
            kind, payload = EventType.CONNECT, m.group("ip")

        return ParsedLine(
            timestamp=ts,
            queue_id=self.parse_queue_id(line),
            kind=kind,
            payload=payload,
            raw=line,
        )
