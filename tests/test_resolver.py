from __future__ import annotations

import allure
import httpx
import pytest
from conftest import mock_client

from comfy_bridge.generation import ArtifactRef, ErrorKind, GenerationError, OutputResolver
from comfy_bridge.generation.resolver import parse_ledger_entry

pytestmark = [
    allure.epic("Generation"),
    allure.feature("Output Resolution"),
]


def _history(handle: str, outputs: dict) -> dict:
    return {
        handle: {
            "outputs": outputs,
            "status": {"status_str": "success", "completed": True},
        },
    }


async def test_resolve_returns_first_image_in_backend_order() -> None:
    outputs = {
        "7": {"text": ["not an image"]},
        "9": {"images": [{"filename": "out.png", "subfolder": "", "type": "output"}]},
        "12": {"images": [{"filename": "second.png", "subfolder": "x", "type": "output"}]},
    }

    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/history/42"
        return httpx.Response(200, json=_history("42", outputs))

    async with mock_client(_handler) as client:
        artifact = await OutputResolver(client).resolve("42")

    assert artifact == ArtifactRef(filename="out.png", subfolder="", category="output")


async def test_missing_ledger_entry_is_no_output() -> None:
    async with mock_client(lambda _: httpx.Response(200, json={})) as client:
        with pytest.raises(GenerationError, match="not found") as exc_info:
            await OutputResolver(client).resolve("42")

    assert exc_info.value.kind is ErrorKind.NO_OUTPUT


async def test_entry_without_images_is_no_output() -> None:
    async with mock_client(lambda _: httpx.Response(200, json=_history("42", {}))) as client:
        with pytest.raises(GenerationError, match="produced no output") as exc_info:
            await OutputResolver(client).resolve("42")

    assert exc_info.value.kind is ErrorKind.NO_OUTPUT
    assert exc_info.value.details["status"] == "success"


async def test_ledger_server_error_is_backend_unavailable() -> None:
    async with mock_client(lambda _: httpx.Response(500)) as client:
        with pytest.raises(GenerationError) as exc_info:
            await OutputResolver(client).fetch_ledger("42")

    assert exc_info.value.kind is ErrorKind.BACKEND_UNAVAILABLE
    assert exc_info.value.details["stage"] == "ledger"


async def test_download_sends_view_parameters() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/view"
        assert dict(request.url.params) == {
            "filename": "out.png",
            "subfolder": "batch",
            "type": "output",
        }
        return httpx.Response(200, content=b"\x89PNG")

    async with mock_client(_handler) as client:
        content = await OutputResolver(client).download(
            ArtifactRef(filename="out.png", subfolder="batch", category="output"),
        )

    assert content == b"\x89PNG"


async def test_download_omits_empty_subfolder() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert "subfolder" not in request.url.params
        return httpx.Response(200, content=b"img")

    async with mock_client(_handler) as client:
        assert await OutputResolver(client).download(ArtifactRef(filename="out.png")) == b"img"


async def test_download_missing_file_is_no_output() -> None:
    async with mock_client(lambda _: httpx.Response(404)) as client:
        with pytest.raises(GenerationError) as exc_info:
            await OutputResolver(client).download(ArtifactRef(filename="gone.png"))

    assert exc_info.value.kind is ErrorKind.NO_OUTPUT


async def test_download_empty_body_is_no_output() -> None:
    async with mock_client(lambda _: httpx.Response(200, content=b"")) as client:
        with pytest.raises(GenerationError, match="empty") as exc_info:
            await OutputResolver(client).download(ArtifactRef(filename="out.png"))

    assert exc_info.value.kind is ErrorKind.NO_OUTPUT


def test_parse_ledger_entry_skips_images_without_filename() -> None:
    entry = parse_ledger_entry(
        "42",
        {"outputs": {"9": {"images": [{"subfolder": "x"}, {"filename": "ok.png"}]}}},
    )

    assert entry.outputs == {"9": [ArtifactRef(filename="ok.png", subfolder="", category="")]}
    assert entry.status_str is None
    assert entry.completed is False


async def test_malformed_images_field_is_no_output() -> None:
    body = {"42": {"outputs": {"9": {"images": 5}, "10": {"images": "out.png"}}}}

    async with mock_client(lambda _: httpx.Response(200, json=body)) as client:
        with pytest.raises(GenerationError, match="produced no output") as exc_info:
            await OutputResolver(client).resolve("42")

    assert exc_info.value.kind is ErrorKind.NO_OUTPUT
