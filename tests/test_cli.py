import asyncio
import json
import sys
from pathlib import Path

import pytest

from agentkoppler import app as app_module
from agentkoppler.app import check_tool_providers
from agentkoppler.config import GatewayConfig

MOCK_SERVER = Path(__file__).resolve().parents[1] / "examples" / "mock_mcp_server.py"


def test_check_tool_providers_prints_one_status_per_enabled_provider(capsys: pytest.CaptureFixture[str]) -> None:
    cfg = GatewayConfig.model_validate(
        {
            "tool_providers": [
                {"id": "mock", "command": sys.executable, "args": [str(MOCK_SERVER)]},
                {"id": "missing", "command": "agentkoppler-no-such-binary"},
                {"id": "off", "command": "unused", "enabled": False},
            ]
        }
    )

    code = asyncio.run(check_tool_providers(cfg))

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert code == 1
    assert [(line["provider_id"], line["state"]) for line in lines] == [("mock", "reachable"), ("missing", "error")]
    assert lines[0]["tool_count"] == 5


def test_main_reports_missing_fields(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("agents:\n  - model: demo\n", encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["agentkoppler", "--config", str(path)])

    with pytest.raises(SystemExit) as exc_info:
        app_module.main()

    assert exc_info.value.code == 2
    assert "Missing required fields: agents.0.name" in capsys.readouterr().err


def test_main_rejects_unknown_keys(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("listen: 1\n", encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["agentkoppler", "--config", str(path)])

    with pytest.raises(SystemExit):
        app_module.main()

    assert "Invalid configuration" in capsys.readouterr().err
