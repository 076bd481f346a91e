from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import CONNECT

from maillog_ingest.cli import main
from maillog_ingest.core.config import PipelineConfig
from maillog_ingest.core.pipeline import MaillogPipeline
from maillog_ingest.core.store import MemoryStore
from maillog_ingest.server.mcp_server import create_server


@pytest.mark.asyncio
async def test_server_registers_tools(cfg: PipelineConfig) -> None:
    server = create_server(MaillogPipeline(cfg, MemoryStore()), run_pipeline=False)

    names = {tool.name for tool in await server.list_tools()}

    assert names == {
        "top_connections",
        "mail_history",
        "ingestion_status",
        "set_blacklist",
        "poll_now",
        "enrich_now",
    }


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("MAILLOG_LOCAL_DOMAIN", "example.org")
    monkeypatch.setenv("MAILLOG_LOG_DIR", str(tmp_path))
    monkeypatch.setenv("MAILLOG_DB_URL", f"sqlite:///{tmp_path / 'maillog.db'}")
    return tmp_path


def test_cli_poll_then_query(env: Path, write_lines, capsys: pytest.CaptureFixture[str]) -> None:
    write_lines(env / "mail.log", [CONNECT, CONNECT.replace("10:00:02", "10:00:09")])

    main(["poll-once"])
    polled = json.loads(capsys.readouterr().out)
    main(["top-ips", "--max", "5"])
    top = json.loads(capsys.readouterr().out)

    assert polled["lines"] == 2
    assert top["connections"][0]["address"] == "203.0.113.7"
    assert top["connections"][0]["count"] == 2


def test_cli_blacklist_unknown_ip_exits_1(env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["blacklist", "192.0.2.1"])

    assert excinfo.value.code == 1
    assert "IP address not found" in capsys.readouterr().err


def test_cli_missing_domain_exits_2(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.delenv("MAILLOG_LOCAL_DOMAIN", raising=False)

    with pytest.raises(SystemExit) as excinfo:
        main(["status"])

    assert excinfo.value.code == 2
    assert "MAILLOG_LOCAL_DOMAIN" in capsys.readouterr().err
