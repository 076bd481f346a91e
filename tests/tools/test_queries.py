from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from conftest import CONNECT, FROM_EXTERNAL, NOW, TO_LOCAL, FakeLookupClient

from maillog_ingest.core.config import PipelineConfig
from maillog_ingest.core.errors import UnknownConnectionError
from maillog_ingest.core.pipeline import MaillogPipeline
from maillog_ingest.core.store import MemoryStore
from maillog_ingest.tools.queries import (
    HARD_LIMIT,
    enrich_now_impl,
    ingestion_status_impl,
    mail_history_impl,
    poll_now_impl,
    set_blacklist_impl,
    top_connections_impl,
)


@pytest_asyncio.fixture
async def pipeline(cfg: PipelineConfig):
    p = MaillogPipeline(cfg, MemoryStore(), lookup_client=FakeLookupClient())
    yield p
    await p.stop()


async def _seed_connections(store: MemoryStore) -> None:
    for _ in range(3):
        await store.increment_connection("198.51.100.1", NOW)
    await store.increment_connection("203.0.113.7", NOW - timedelta(hours=1))


@pytest.mark.asyncio
async def test_top_connections_ranked_and_capped() -> None:
    store = MemoryStore()
    await _seed_connections(store)

    out = await top_connections_impl(store, limit=HARD_LIMIT * 10)

    assert out["count"] == 2
    assert [c["address"] for c in out["connections"]] == ["198.51.100.1", "203.0.113.7"]
    assert out["connections"][0]["count"] == 3


@pytest.mark.asyncio
async def test_top_connections_rejects_non_positive_limit() -> None:
    with pytest.raises(ValueError):
        await top_connections_impl(MemoryStore(), limit=0)


@pytest.mark.asyncio
async def test_set_blacklist() -> None:
    store = MemoryStore()
    await _seed_connections(store)

    out = await set_blacklist_impl(store, ip=" 203.0.113.7 ", blacklisted=True)

    assert out["message"] == "IP 203.0.113.7 blacklisted"
    assert out["connection"]["blacklisted"] is True
    assert (await store.get_connection("203.0.113.7")).blacklisted is True

    out = await set_blacklist_impl(store, ip="203.0.113.7", blacklisted=False)
    assert out["message"] == "IP 203.0.113.7 unblacklisted"


@pytest.mark.asyncio
async def test_set_blacklist_validates_address() -> None:
    store = MemoryStore()

    with pytest.raises(ValueError):
        await set_blacklist_impl(store, ip="not-an-ip", blacklisted=True)
    with pytest.raises(UnknownConnectionError) as excinfo:
        await set_blacklist_impl(store, ip="192.0.2.1", blacklisted=True)
    assert str(excinfo.value) == "IP address not found: 192.0.2.1"


@pytest.mark.asyncio
async def test_mail_history_is_json_ready() -> None:
    out = await mail_history_impl(MemoryStore(), local_domain="example.org", now=NOW)

    assert set(out) == {"daily", "weekly", "monthly", "yearly"}
    assert out["daily"][-1] == {"start": "2025-03-01", "end": "2025-03-01", "in": 0, "out": 0}


@pytest.mark.asyncio
async def test_poll_now_and_status(pipeline: MaillogPipeline, tmp_path: Path, write_lines) -> None:
    write_lines(tmp_path / "mail.log", [FROM_EXTERNAL, TO_LOCAL, CONNECT])

    polled = await poll_now_impl(pipeline)
    status = await ingestion_status_impl(pipeline)

    assert polled == {"files_seen": 1, "files_processed": 1, "lines": 3}
    (entry,) = status["files"]
    assert entry["file_name"] == "mail.log"
    assert entry["position"] == (tmp_path / "mail.log").stat().st_size
    assert entry["locked"] is False
    assert status["events"]["connections"] == 1
    assert status["enrichment_running"] is False
    assert status["rate_limit_remaining"] == 45


@pytest.mark.asyncio
async def test_enrich_now(pipeline: MaillogPipeline) -> None:
    await pipeline.store.increment_connection("203.0.113.7", NOW)

    out = await enrich_now_impl(pipeline)

    assert out["skipped"] is False
    assert out["updated"] == 1
    assert pipeline.lookup_client.calls == ["203.0.113.7"]
