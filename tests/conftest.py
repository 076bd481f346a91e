from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest

from maillog_ingest.core.aggregator import ConnectionAggregator
from maillog_ingest.core.config import PipelineConfig
from maillog_ingest.core.correlator import EventCorrelator
from maillog_ingest.core.errors import IpLookupError
from maillog_ingest.core.formats import PostfixLogParser
from maillog_ingest.core.models import IpInfo
from maillog_ingest.core.poller import LogPoller
from maillog_ingest.core.store import MemoryStore
from maillog_ingest.core.tracker import FileStateTracker

LOCAL_DOMAIN = "example.org"
NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=UTC)

FROM_EXTERNAL = (
    "Jan  5 10:00:00 mx postfix/qmgr[201]: 4F3A2B1C0D: "
    "from=<alice@remote.net>, size=1234, nrcpt=1 (queue active)"
)
TO_LOCAL = (
    "Jan  5 10:00:01 mx postfix/local[202]: 4F3A2B1C0D: "
    "to=<bob@example.org>, relay=local, delay=0.1, status=sent (delivered to mailbox)"
)
CONNECT = (
    "Jan  5 10:00:02 mx postfix/smtpd[123]: disconnect from "
    "unknown[203.0.113.7] ehlo=1 mail=1 rcpt=1 data=1 quit=1 commands=5"
)
NOISE = "Jan  5 10:00:03 mx postfix/anvil[99]: statistics: max connection rate 1/60s"


class FakeLookupClient:
    """Records lookups; IPs in ``failing`` raise IpLookupError."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.calls: list[str] = []
        self.failing = failing or set()

    async def lookup(self, ip_address: str) -> IpInfo:
        self.calls.append(ip_address)
        if ip_address in self.failing:
            raise IpLookupError(ip_address, "timeout")
        return IpInfo(isp=f"ISP {ip_address}", org="Example Org", country="Netherlands")


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def parser() -> PostfixLogParser:
    return PostfixLogParser(now=lambda: NOW)


@pytest.fixture
def correlator(store: MemoryStore) -> EventCorrelator:
    return EventCorrelator(
        store,
        ConnectionAggregator(store),
        local_domain=LOCAL_DOMAIN,
        admin_mailboxes={"root", "root@example.org"},
    )


@pytest.fixture
def make_poller(
    store: MemoryStore,
    parser: PostfixLogParser,
    correlator: EventCorrelator,
) -> Callable[..., LogPoller]:
    def _make(log_dir: Path, **kwargs) -> LogPoller:
        return LogPoller(
            log_dir=log_dir,
            prefix="mail.log",
            parser=kwargs.pop("parser", parser),
            tracker=FileStateTracker(store),
            correlator=correlator,
            **kwargs,
        )

    return _make


@pytest.fixture
def write_lines() -> Callable[[Path, list[str]], None]:
    def _write(path: Path, lines: list[str]) -> None:
        path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")

    return _write


@pytest.fixture
def cfg(tmp_path: Path) -> PipelineConfig:
    return PipelineConfig(
        local_domain=LOCAL_DOMAIN,
        log_dir=str(tmp_path),
        db_url="memory://",
    )
