"""Job submission to the backend ``/prompt`` endpoint."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from comfy_bridge.generation.errors import GenerationError, classify_failure
from comfy_bridge.generation.models import ErrorKind, JobDocument, NodeError

logger = logging.getLogger(__name__)


class JobSubmitter:
    """Queues job documents on the backend. Never retries internally."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def submit(self, document: JobDocument, watcher_id: str) -> str:
        """Submit ``document`` routed to ``watcher_id`` and return the job handle."""

        try:
            response = await self._client.post(
                "/prompt",
                json={"prompt": document, "client_id": watcher_id},
            )
        except httpx.HTTPError as exc:
            logger.warning("Job submission transport failure: %s", exc)
            raise classify_failure(exc, stage="submit") from exc

        body = _json_body(response)
        node_errors = parse_node_errors(body.get("node_errors"))
        error_message = _error_message(body.get("error"))

        if response.is_server_error:
            logger.warning("Job submission failed with HTTP %d", response.status_code)
            raise GenerationError(
                ErrorKind.BACKEND_UNAVAILABLE,
                f"backend returned HTTP {response.status_code}",
                details={"status_code": response.status_code},
            )
        if not response.is_success or error_message or node_errors:
            logger.warning(
                "Job rejected by backend: status=%d error=%s node_errors=%d",
                response.status_code,
                error_message or "-",
                len(node_errors),
            )
            raise GenerationError(
                ErrorKind.REJECTED,
                f"job rejected: {error_message or f'HTTP {response.status_code}'}",
                details={
                    "status_code": response.status_code,
                    "error": error_message,
                    "node_errors": node_errors,
                },
            )

        job_handle = body.get("prompt_id")
        if not isinstance(job_handle, str) or not job_handle:
            logger.warning("Job submission response missing prompt_id: %s", body)
            raise GenerationError(
                ErrorKind.BACKEND_UNAVAILABLE,
                "backend response missing prompt_id",
                details={"status_code": response.status_code},
            )
        logger.debug("Job queued: handle=%s number=%s", job_handle, body.get("number"))
        return job_handle


def parse_node_errors(raw: Any) -> list[NodeError]:
    """Flatten ``{node_id: [error, ...]}`` (or ``{node_id: {"errors": [...]}}``)."""

    if not isinstance(raw, dict):
        return []
    parsed: list[NodeError] = []
    for node_id, entries in raw.items():
        if isinstance(entries, dict):
            entries = entries.get("errors", [])
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            parsed.append(
                NodeError(
                    node_id=str(node_id),
                    type=str(entry.get("type", "")),
                    message=str(entry.get("message", "")),
                    details=str(entry.get("details", "")),
                    extra_info=entry.get("extra_info"),
                ),
            )
    return parsed


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_message(raw: Any) -> str | None:
    if not raw:
        return None
    if isinstance(raw, dict):
        return str(raw.get("message") or raw.get("type") or raw)
    return str(raw)
