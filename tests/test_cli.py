from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

import httpx
import pytest
import typer
from typer.testing import CliRunner

from cli.app import app
from cli.client import ApiClient
from cli.config import CLIConfig, load_config


class StubClient:
    def __init__(self, config, response: Dict[str, Any] | None = None) -> None:
        self.config = config
        self.response = response or {"ok": True, "sensorID": "A1", "file": "2023-11_A1.csv"}
        self.pushed: List[tuple[str, Path]] = []
        self.closed = False

    def push_file(self, sensor_id: str, path: Path) -> Dict[str, Any]:
        self.pushed.append((sensor_id, path))
        return self.response

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


def _install_stub(monkeypatch, stub: StubClient) -> None:
    def factory(config):
        stub.config = config
        return stub

    monkeypatch.setattr("cli.app.ApiClient", factory)


def test_push_command(monkeypatch, runner: CliRunner, tmp_path) -> None:
    stub = StubClient(config=None)
    _install_stub(monkeypatch, stub)
    reading = tmp_path / "reading.json"
    reading.write_text(json.dumps({"ts": 1700000000}))

    result = runner.invoke(app, ["--api-key", "k", "push", str(reading), "--sensor-id", "A1"])

    assert result.exit_code == 0
    assert "Reading stored." in result.stdout
    assert "file: 2023-11_A1.csv" in result.stdout
    assert stub.pushed == [("A1", reading)]
    assert stub.config.api_key == "k"
    assert stub.closed is True


def test_push_command_requires_sensor_id(monkeypatch, runner: CliRunner, tmp_path) -> None:
    _install_stub(monkeypatch, StubClient(config=None))
    reading = tmp_path / "reading.json"
    reading.write_text("{}")

    result = runner.invoke(app, ["push", str(reading)])

    assert result.exit_code != 0


def test_load_config_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("API_BASE_URL", "http://logger.local:9000/")
    monkeypatch.setenv("SENSOR_LOGGER_API_KEY", " env-key ")
    monkeypatch.setenv("CLI_TIMEOUT", "not-a-number")

    config = load_config()

    assert config.base_url == "http://logger.local:9000"
    assert config.api_key == "env-key"
    assert config.timeout == 30.0


def test_api_client_sends_key_and_sensor(monkeypatch) -> None:
    seen: Dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("X-API-Key")
        seen["body"] = request.content
        return httpx.Response(200, json={"ok": True, "sensorID": "A1", "file": "2023-11_A1.csv"})

    client = ApiClient(CLIConfig(base_url="http://test", api_key="k"))
    client._client = httpx.Client(base_url="http://test", transport=httpx.MockTransport(handler))

    payload = client.push("A1", b'{"ts": 1}')

    assert payload["file"] == "2023-11_A1.csv"
    assert seen["url"] == "http://test/push?sensorID=A1"
    assert seen["key"] == "k"
    assert seen["body"] == b'{"ts": 1}'
    client.close()


def test_api_client_reports_rate_limit(capsys) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"ok": False, "error": "rate_limited", "retry_after": 30})

    client = ApiClient(CLIConfig(base_url="http://test", api_key="k"))
    client._client = httpx.Client(base_url="http://test", transport=httpx.MockTransport(handler))

    with pytest.raises(typer.Exit):
        client.push("A1", b"{}")

    assert "rate_limited (retry after 30s)" in capsys.readouterr().err
    client.close()


def test_api_client_requires_key() -> None:
    client = ApiClient(CLIConfig(base_url="http://test"))

    with pytest.raises(typer.BadParameter):
        client.push("A1", b"{}")
    client.close()
