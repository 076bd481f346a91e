"""Implementations behind the exposed MCP tools.

Keep this layer thin: validate inputs, call into the core and return
JSON-serializable data structures.
"""

from __future__ import annotations

import ipaddress
from datetime import datetime
from typing import Any

from maillog_ingest.core.pipeline import MaillogPipeline
from maillog_ingest.core.reports import (
    connection_to_dict,
    mail_history,
    set_blacklisted,
    top_connections,
)
from maillog_ingest.core.store import Store

DEFAULT_LIMIT = 100
HARD_LIMIT = 1000


def _validate_ip(ip: str) -> str:
    value = (ip or "").strip()
    try:
        ipaddress.ip_address(value)
    except ValueError as e:
        raise ValueError(f"Invalid IP address '{ip}'.") from e
    return value


async def top_connections_impl(store: Store, *, limit: int | None = None) -> dict[str, Any]:
    if limit is None:
        limit = DEFAULT_LIMIT
    if limit <= 0:
        raise ValueError("limit must be > 0")
    limit = min(limit, HARD_LIMIT)

    records = await top_connections(store, limit)
    return {"count": len(records), "connections": [connection_to_dict(r) for r in records]}


async def mail_history_impl(
    store: Store,
    *,
    local_domain: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    history = await mail_history(store, local_domain, now=now)
    return {period: [b.to_dict() for b in buckets] for period, buckets in history.items()}


async def ingestion_status_impl(pipeline: MaillogPipeline) -> dict[str, Any]:
    states = await pipeline.store.list_file_states()
    stats = pipeline.correlator.stats
    return {
        "log_dir": pipeline.cfg.log_dir,
        "files": [
            {
                "file_name": s.file_name,
                "inode": s.inode,
                "position": s.last_read_position,
                "last_modified": s.last_modified.isoformat() if s.last_modified else None,
                "last_checked": s.last_checked.isoformat() if s.last_checked else None,
                "locked": pipeline.poller.is_locked(s.file_name),
            }
            for s in states
        ],
        "pending_transactions": len(pipeline.correlator.pending),
        "events": {
            "persisted": stats.persisted,
            "duplicates": stats.duplicates,
            "suppressed": stats.suppressed,
            "connections": stats.connections,
        },
        "enrichment_running": pipeline.enrichment.is_running,
        "rate_limit_remaining": pipeline.enrichment.limiter.remaining,
    }


async def set_blacklist_impl(store: Store, *, ip: str, blacklisted: bool) -> dict[str, Any]:
    record = await set_blacklisted(store, _validate_ip(ip), blacklisted)
    state = "blacklisted" if blacklisted else "unblacklisted"
    return {"message": f"IP {record.ip_address} {state}", "connection": connection_to_dict(record)}


async def poll_now_impl(pipeline: MaillogPipeline) -> dict[str, Any]:
    result = await pipeline.poll_once()
    return {
        "files_seen": result.files_seen,
        "files_processed": result.files_processed,
        "lines": result.lines,
    }


async def enrich_now_impl(pipeline: MaillogPipeline) -> dict[str, Any]:
    report = await pipeline.enrich_once()
    if report is None:
        return {"skipped": True}
    return {
        "skipped": False,
        "selected": report.selected,
        "updated": report.updated,
        "cache_hits": report.cache_hits,
        "failed": report.failed,
    }
