"""MCP server entrypoint (stdio transport).

The ingestion timers run inside the server's lifespan, so an operator can
query the pipeline while it works.

Run locally (stdio):
    python -m maillog_ingest serve
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from maillog_ingest.core.pipeline import MaillogPipeline
from maillog_ingest.tools.queries import (
    enrich_now_impl,
    ingestion_status_impl,
    mail_history_impl,
    poll_now_impl,
    set_blacklist_impl,
    top_connections_impl,
)

LOGGER = logging.getLogger(__name__)


def register_tools(mcp: FastMCP, pipeline: MaillogPipeline) -> None:
    """Register the query and trigger tools on the MCP server."""

    @mcp.tool()
    async def top_connections(limit: int | None = None) -> dict[str, Any]:
        """Return the source IPs with the most connections.

        Parameters
        ----------
        limit:
            Maximum number of records (default 100, hard-capped at 1000).

        Returns
        -------
        dict:
            {"count": int, "connections": list[dict]} where each connection has
            address, count, last_seen, blacklisted and info {isp, org, country}.
        """
        return await top_connections_impl(pipeline.store, limit=limit)

    @mcp.tool()
    async def mail_history() -> dict[str, Any]:
        """Return inbound/outbound delivery counts (daily, weekly, monthly, yearly)."""
        return await mail_history_impl(pipeline.store, local_domain=pipeline.cfg.local_domain)

    @mcp.tool()
    async def ingestion_status() -> dict[str, Any]:
        """Return per-file read offsets and pipeline counters."""
        return await ingestion_status_impl(pipeline)

    @mcp.tool()
    async def set_blacklist(ip: str, blacklisted: bool = True) -> dict[str, Any]:
        """Mark (or unmark) a connecting IP as blacklisted.

        Only the stored flag changes; firewall rules are managed elsewhere.
        """
        return await set_blacklist_impl(pipeline.store, ip=ip, blacklisted=blacklisted)

    @mcp.tool()
    async def poll_now() -> dict[str, Any]:
        """Run one log poll cycle immediately. Files already being read are skipped."""
        return await poll_now_impl(pipeline)

    @mcp.tool()
    async def enrich_now() -> dict[str, Any]:
        """Run one IP enrichment batch unless one is already in flight."""
        return await enrich_now_impl(pipeline)


def create_server(pipeline: MaillogPipeline, *, run_pipeline: bool = True) -> FastMCP:
    """Build the MCP server; with run_pipeline the timers live as long as the server."""

    @asynccontextmanager
    async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
        if run_pipeline:
            pipeline.start()
        try:
            yield {"pipeline": pipeline}
        finally:
            if run_pipeline:
                await pipeline.stop()

    mcp = FastMCP("maillog-ingest", json_response=True, lifespan=lifespan)
    register_tools(mcp, pipeline)
    return mcp


def serve(pipeline: MaillogPipeline, *, run_pipeline: bool = True) -> None:
    """Start the MCP server over stdio."""
    LOGGER.debug("Starting MCP server (transport=stdio)")
    create_server(pipeline, run_pipeline=run_pipeline).run(transport="stdio")
