"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

WORKFLOW = {
    "3": {"class_type": "KSampler", "inputs": {"seed": 1, "steps": 20}},
    "6": {"class_type": "CLIPTextEncode", "inputs": {"text": "{{PROMPT}}"}},
    "9": {"class_type": "SaveImage", "inputs": {"filename_prefix": "bridge"}},
}


class FakeConnection:
    """Scripted push channel: tests feed frames, ``None`` ends the stream."""

    def __init__(self, *, answer_pings: bool = True) -> None:
        self.frames: asyncio.Queue[str | bytes | None] = asyncio.Queue()
        self.answer_pings = answer_pings
        self.pings = 0
        self.close_calls: list[int | None] = []

    def push(self, frame: dict[str, Any] | str | bytes) -> None:
        self.frames.put_nowait(json.dumps(frame) if isinstance(frame, dict) else frame)

    def push_executing(self, job_id: str, node: str | None) -> None:
        self.push({"type": "executing", "data": {"prompt_id": job_id, "node": node}})

    def end(self) -> None:
        self.frames.put_nowait(None)

    def __aiter__(self) -> FakeConnection:
        return self

    async def __anext__(self) -> str | bytes:
        frame = await self.frames.get()
        if frame is None:
            raise StopAsyncIteration
        return frame

    async def ping(self) -> asyncio.Future[float]:
        self.pings += 1
        pong: asyncio.Future[float] = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            pong.set_result(0.0)
        return pong

    async def close(self, code: int | None = None) -> None:
        self.close_calls.append(code)


class FakeConnector:
    """Stand-in for ``websockets`` connect; hands out one prepared connection."""

    def __init__(self, connection: FakeConnection | None = None, error: Exception | None = None):
        self.connection = connection or FakeConnection()
        self.error = error
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.on_connect: Callable[[str], None] | None = None

    async def __call__(self, url: str, **kwargs: Any) -> FakeConnection:
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        if self.on_connect is not None:
            self.on_connect(url)
        return self.connection


@pytest.fixture()
def workflow_path(tmp_path: Path) -> Path:
    path = tmp_path / "workflow.json"
    path.write_text(json.dumps(WORKFLOW), encoding="utf-8")
    return path


@pytest.fixture()
def fake_connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture()
def fake_connector(fake_connection: FakeConnection) -> FakeConnector:
    return FakeConnector(fake_connection)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url="http://comfy.test",
        transport=httpx.MockTransport(handler),
    )


IMAGE = b"\x89PNG\r\n\x1a\nfake"


class FakeBackend:
    """HTTP side of a scripted ComfyUI that drives the push channel on submit."""

    def __init__(self, connection: FakeConnection, *, complete: bool = True) -> None:
        self.connection = connection
        self.complete = complete
        self.submitted: list[dict] = []
        self.paths: list[str] = []
        self.submit_response: httpx.Response | None = None
        self.after_submit: Callable[[FakeConnection], None] | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        if request.url.path == "/prompt":
            self.submitted.append(json.loads(request.content))
            if self.submit_response is not None:
                return self.submit_response
            if self.after_submit is not None:
                self.after_submit(self.connection)
            elif self.complete:
                self.connection.push_executing("42", "9")
                self.connection.push_executing("42", None)
            return httpx.Response(200, json={"prompt_id": "42", "number": 1, "node_errors": {}})
        if request.url.path == "/history/42":
            return httpx.Response(
                200,
                json={
                    "42": {
                        "outputs": {
                            "9": {
                                "images": [
                                    {"filename": "out.png", "subfolder": "", "type": "output"},
                                ],
                            },
                        },
                        "status": {"status_str": "success", "completed": True},
                    },
                },
            )
        if request.url.path == "/view":
            assert request.url.params["filename"] == "out.png"
            return httpx.Response(200, content=IMAGE)
        if request.url.path == "/system_stats":
            return httpx.Response(
                200,
                json={
                    "system": {"os": "posix", "python_version": "3.12.1"},
                    "devices": [
                        {
                            "name": "cuda:0 NVIDIA RTX",
                            "type": "cuda",
                            "index": 0,
                            "vram_total": 8 * 1024**3,
                            "vram_free": 6 * 1024**3,
                        },
                    ],
                },
            )
        return httpx.Response(404)
