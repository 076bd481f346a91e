from __future__ import annotations

import asyncio
from datetime import timedelta

import aiohttp
import pytest
from conftest import NOW, FakeLookupClient

from maillog_ingest.core.enrichment import (
    IpApiClient,
    IpEnrichmentService,
    LookupOutcome,
    RateLimiter,
)
from maillog_ingest.core.errors import IpLookupError
from maillog_ingest.core.models import IpInfo
from maillog_ingest.core.store import MemoryStore

URL = "http://ipinfo.test/json/{ip}"


def _service(store: MemoryStore, client, *, budget: int = 45, clock=None) -> IpEnrichmentService:
    if clock is None:
        limiter = RateLimiter(budget, 60)
    else:
        limiter = RateLimiter(budget, 60, clock=clock, sleep=clock.sleep)
    return IpEnrichmentService(store, client, limiter, batch_size=15, now=lambda: NOW)


async def _seed(store: MemoryStore, *ips: str) -> None:
    for minutes, ip in enumerate(ips):
        await store.increment_connection(ip, NOW - timedelta(hours=1, minutes=-minutes))


@pytest.mark.asyncio
async def test_batch_fills_stale_records() -> None:
    store = MemoryStore()
    await _seed(store, "198.51.100.1", "198.51.100.2")
    client = FakeLookupClient()

    report = await _service(store, client).batch_update()

    assert (report.selected, report.updated, report.failed) == (2, 2, 0)
    rec = await store.get_connection("198.51.100.1")
    assert rec.isp == "ISP 198.51.100.1"
    assert rec.country == "Netherlands"
    assert rec.ip_info_last_updated == NOW


@pytest.mark.asyncio
async def test_most_recently_seen_ips_go_first() -> None:
    store = MemoryStore()
    await _seed(store, "198.51.100.1", "198.51.100.2", "198.51.100.3")
    client = FakeLookupClient()

    await _service(store, client).batch_update(limit=2)

    assert client.calls == ["198.51.100.3", "198.51.100.2"]


@pytest.mark.asyncio
async def test_fresh_cache_skips_the_api() -> None:
    store = MemoryStore()
    await _seed(store, "198.51.100.1")
    await store.update_ip_info(
        "198.51.100.1", IpInfo("Cached ISP", "Cached Org", "Italy"), NOW - timedelta(days=3)
    )
    client = FakeLookupClient()
    service = _service(store, client)

    outcome, info = await service.get_ip_info("198.51.100.1")

    assert outcome is LookupOutcome.CACHE_HIT
    assert info.isp == "Cached ISP"
    assert client.calls == []
    assert (await service.batch_update()).selected == 0


@pytest.mark.asyncio
async def test_expired_cache_is_refreshed() -> None:
    store = MemoryStore()
    await _seed(store, "198.51.100.1")
    await store.update_ip_info(
        "198.51.100.1", IpInfo("Old ISP", "Old Org", "Italy"), NOW - timedelta(days=15)
    )
    client = FakeLookupClient()

    outcome, _ = await _service(store, client).get_ip_info("198.51.100.1")

    assert outcome is LookupOutcome.UPDATED
    assert (await store.get_connection("198.51.100.1")).isp == "ISP 198.51.100.1"


@pytest.mark.asyncio
async def test_failure_leaves_record_stale_and_is_retried() -> None:
    store = MemoryStore()
    await _seed(store, "198.51.100.1", "198.51.100.2")
    client = FakeLookupClient(failing={"198.51.100.1"})
    service = _service(store, client)

    report = await service.batch_update()

    assert (report.updated, report.failed) == (1, 1)
    failed = await store.get_connection("198.51.100.1")
    assert failed.isp is None
    assert failed.ip_info_last_updated is None

    client.failing.clear()
    client.calls.clear()
    retry = await service.batch_update()

    assert client.calls == ["198.51.100.1"]
    assert retry.updated == 1


@pytest.mark.asyncio
async def test_unexpected_error_does_not_abort_batch() -> None:
    class BrokenClient(FakeLookupClient):
        async def lookup(self, ip_address: str) -> IpInfo:
            if ip_address == "198.51.100.2":
                raise RuntimeError("boom")
            return await super().lookup(ip_address)

    store = MemoryStore()
    await _seed(store, "198.51.100.1", "198.51.100.2", "198.51.100.3")

    report = await _service(store, BrokenClient()).batch_update()

    assert (report.selected, report.updated, report.failed) == (3, 2, 1)


@pytest.mark.asyncio
async def test_overlapping_scheduled_runs_are_skipped() -> None:
    release = asyncio.Event()
    started = asyncio.Event()

    class SlowClient(FakeLookupClient):
        async def lookup(self, ip_address: str) -> IpInfo:
            started.set()
            await release.wait()
            return await super().lookup(ip_address)

    store = MemoryStore()
    await _seed(store, "198.51.100.1")
    service = _service(store, SlowClient())

    first = asyncio.create_task(service.scheduled_update())
    await started.wait()
    assert service.is_running
    assert await service.scheduled_update() is None

    release.set()
    report = await first
    assert report.updated == 1
    assert not service.is_running


@pytest.mark.asyncio
async def test_batch_larger_than_budget_waits_instead_of_failing() -> None:
    class Clock:
        def __init__(self) -> None:
            self.now = 0.0
            self.sleeps: list[float] = []

        def __call__(self) -> float:
            return self.now

        async def sleep(self, seconds: float) -> None:
            self.sleeps.append(seconds)
            self.now += seconds

    clock = Clock()
    store = MemoryStore()
    await _seed(store, *(f"198.51.100.{i}" for i in range(1, 6)))
    client = FakeLookupClient()

    report = await _service(store, client, budget=2, clock=clock).batch_update()

    assert report.updated == 5
    assert len(client.calls) == 5
    assert len(clock.sleeps) == 2


class FakeResponse:
    def __init__(self, status: int, payload=None, exc: Exception | None = None) -> None:
        self.status = status
        self._payload = payload
        self._exc = exc

    async def __aenter__(self) -> FakeResponse:
        if self._exc is not None:
            raise self._exc
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def json(self, content_type=None):
        return self._payload


class FakeSession:
    def __init__(self, response: FakeResponse) -> None:
        self.response = response
        self.urls: list[str] = []
        self.closed = False

    def get(self, url: str) -> FakeResponse:
        self.urls.append(url)
        return self.response

    async def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_ip_api_client_success() -> None:
    session = FakeSession(
        FakeResponse(
            200,
            {"status": "success", "isp": "Hetzner", "org": "Hetzner Online", "country": "Germany"},
        )
    )
    client = IpApiClient(URL, session=session)

    info = await client.lookup("198.51.100.9")

    assert info == IpInfo("Hetzner", "Hetzner Online", "Germany")
    assert session.urls == ["http://ipinfo.test/json/198.51.100.9"]


@pytest.mark.asyncio
async def test_ip_api_client_fills_missing_fields() -> None:
    client = IpApiClient(URL, session=FakeSession(FakeResponse(200, {"status": "success"})))

    info = await client.lookup("198.51.100.9")

    assert info == IpInfo("Unknown ISP", "Unknown ORG", "Unknown COUNTRY")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, fragment",
    [
        (FakeResponse(200, {"status": "fail", "message": "reserved range"}), "reserved range"),
        (FakeResponse(429), "HTTP 429"),
        (FakeResponse(200, exc=aiohttp.ClientConnectionError("refused")), "refused"),
        (FakeResponse(200, exc=asyncio.TimeoutError()), "TimeoutError"),
    ],
)
async def test_ip_api_client_errors(response: FakeResponse, fragment: str) -> None:
    client = IpApiClient(URL, session=FakeSession(response))

    with pytest.raises(IpLookupError) as excinfo:
        await client.lookup("198.51.100.9")

    assert excinfo.value.ip_address == "198.51.100.9"
    assert fragment in str(excinfo.value)


@pytest.mark.asyncio
async def test_ip_api_client_leaves_borrowed_session_open() -> None:
    session = FakeSession(FakeResponse(200, {"status": "success"}))
    client = IpApiClient(URL, session=session)

    await client.close()

    assert not session.closed
