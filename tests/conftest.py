from __future__ import annotations

import base64
import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from aimeter.http import Deadline, QuotaHTTP


def make_jwt(claims: dict[str, Any], padded: bool = False) -> str:
    def segment(obj: dict[str, Any]) -> str:
        raw = base64.urlsafe_b64encode(json.dumps(obj).encode("utf-8")).decode("ascii")
        return raw if padded else raw.rstrip("=")

    return f"{segment({'alg': 'none'})}.{segment(claims)}.sig"


def write_json(path: Path, payload: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(payload, str):
        path.write_text(payload)
    else:
        path.write_text(json.dumps(payload))
    return path


class FakeServer:
    """Path-routed responses for ``httpx.MockTransport`` that records every call."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def route(self, method: str, path: str, *responses) -> None:
        # each response is (status, body) or an exception; the last one repeats
        self.routes[(method, path)] = list(responses)

    def count(self, path: str) -> int:
        return sum(1 for req in self.requests if req.url.path == path)

    def calls(self, path: str) -> list[httpx.Request]:
        return [req for req in self.requests if req.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, text="no route")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        status, body = item
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def http(self, deadline: Deadline | None = None) -> QuotaHTTP:
        return QuotaHTTP(httpx.Client(transport=self.transport()), deadline)


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def proxy(home: Path) -> Path:
    path = home / ".cli-proxy-api"
    path.mkdir()
    return path


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "config" / "config.toml"
    monkeypatch.setenv("AIMETER_CONFIG", str(path))
    monkeypatch.setattr("aimeter.config.CONFIG_PATH", path)
    monkeypatch.setattr("aimeter.cli.CONFIG_PATH", path)
    return path
