"""Command line entry point.

    maillog-ingest run            # poll + enrichment timers until interrupted
    maillog-ingest serve          # same, behind an MCP stdio server
    maillog-ingest poll-once      # one poll cycle, then exit
    maillog-ingest enrich-once    # one enrichment batch, then exit
    maillog-ingest top-ips --max 20
    maillog-ingest history
    maillog-ingest status
    maillog-ingest blacklist 203.0.113.7 [--remove]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from maillog_ingest.core.config import PipelineConfig, configure_logging, resolve_config
from maillog_ingest.core.errors import ConfigurationError, UnknownConnectionError
from maillog_ingest.core.pipeline import MaillogPipeline
from maillog_ingest.tools.queries import (
    enrich_now_impl,
    ingestion_status_impl,
    mail_history_impl,
    poll_now_impl,
    set_blacklist_impl,
    top_connections_impl,
)


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="maillog-ingest",
        description="Resumable postfix log ingestion with IP enrichment.",
    )
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the poll and enrichment timers until interrupted")
    serve = sub.add_parser("serve", help="Run the MCP server (stdio) with the timers")
    serve.add_argument("--no-pipeline", action="store_true", help="Serve queries only, no timers")
    sub.add_parser("poll-once", help="Run a single poll cycle")
    sub.add_parser("enrich-once", help="Run a single enrichment batch")
    top = sub.add_parser("top-ips", help="Show the most active source IPs")
    top.add_argument(
        "--max", dest="limit", type=int, default=None, help="Max results (default: 100)"
    )
    sub.add_parser("history", help="Show inbound/outbound delivery counts")
    sub.add_parser("status", help="Show per-file read offsets")
    bl = sub.add_parser("blacklist", help="Set the blacklisted flag of an IP")
    bl.add_argument("ip")
    bl.add_argument("--remove", action="store_true", help="Clear the flag instead of setting it")
    return p


async def _with_pipeline(
    cfg: PipelineConfig,
    fn: Callable[[MaillogPipeline], Awaitable[Any]],
) -> Any:
    pipeline = MaillogPipeline.from_config(cfg)
    try:
        return await fn(pipeline)
    finally:
        await pipeline.stop()


def _dispatch(args: argparse.Namespace, cfg: PipelineConfig) -> Any:
    cmd = args.command
    if cmd == "poll-once":
        return asyncio.run(_with_pipeline(cfg, poll_now_impl))
    if cmd == "enrich-once":
        return asyncio.run(_with_pipeline(cfg, enrich_now_impl))
    if cmd == "status":
        return asyncio.run(_with_pipeline(cfg, ingestion_status_impl))
    if cmd == "top-ips":
        return asyncio.run(
            _with_pipeline(cfg, lambda p: top_connections_impl(p.store, limit=args.limit))
        )
    if cmd == "history":
        return asyncio.run(
            _with_pipeline(
                cfg, lambda p: mail_history_impl(p.store, local_domain=cfg.local_domain)
            )
        )
    if cmd == "blacklist":
        return asyncio.run(
            _with_pipeline(
                cfg,
                lambda p: set_blacklist_impl(p.store, ip=args.ip, blacklisted=not args.remove),
            )
        )
    raise ValueError(f"Unknown command: {cmd}")


def main(argv: Sequence[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)

    try:
        cfg = resolve_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        raise SystemExit(2)

    configure_logging(cfg.log_level)

    if args.command == "run":
        try:
            asyncio.run(MaillogPipeline.from_config(cfg).run_forever())
        except KeyboardInterrupt:
            pass
        return

    if args.command == "serve":
        from maillog_ingest.server.mcp_server import serve

        serve(MaillogPipeline.from_config(cfg), run_pipeline=not args.no_pipeline)
        return

    try:
        out = _dispatch(args, cfg)
    except UnknownConnectionError as e:
        print(str(e), file=sys.stderr)
        raise SystemExit(1)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(2)

    print(json.dumps(out, indent=2))


if __name__ == "__main__":
    main()
