"""HTTP client for the ip-api.com style lookup endpoint."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import aiohttp
from pydantic import BaseModel, ValidationError

from ..errors import IpLookupError
from ..models import IpInfo

logger = logging.getLogger(__name__)


class IpLookupClient(Protocol):
    async def lookup(self, ip_address: str) -> IpInfo:
        """Return ownership data. Raises IpLookupError on any failure."""
        ...


class IpApiResponse(BaseModel):
    status: str | None = None
    message: str | None = None
    isp: str | None = None
    org: str | None = None
    country: str | None = None


class IpApiClient:
    """aiohttp client. The session is created lazily and reused."""

    def __init__(
        self,
        url_template: str,
        *,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url_template = url_template
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def lookup(self, ip_address: str) -> IpInfo:
        url = self._url_template.format(ip=ip_address)
        session = self._get_session()
        try:
            async with session.get(url) as resp:
                if resp.status != 200:
                    raise IpLookupError(ip_address, f"HTTP {resp.status}")
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise IpLookupError(ip_address, str(exc) or type(exc).__name__) from exc

        try:
            data = IpApiResponse.model_validate(payload)
        except ValidationError as exc:
            raise IpLookupError(ip_address, "unexpected response body") from exc

        if data.status is not None and data.status != "success":
            raise IpLookupError(ip_address, data.message or data.status)

        return IpInfo(
            isp=data.isp or "Unknown ISP",
            org=data.org or "Unknown ORG",
            country=data.country or "Unknown COUNTRY",
        )

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
