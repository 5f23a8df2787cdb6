"""Output lookup in the execution ledger and artifact download."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from comfy_bridge.generation.errors import GenerationError, classify_failure
from comfy_bridge.generation.models import ArtifactRef, ErrorKind, LedgerEntry

logger = logging.getLogger(__name__)


class OutputResolver:
    """Finds and downloads the artifact a completed job produced.

    Selection takes the first image of the first node that has any, in the
    order the backend returned them; further outputs are ignored.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def fetch_ledger(self, job_handle: str) -> LedgerEntry:
        try:
            response = await self._client.get(f"/history/{job_handle}")
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Ledger lookup failed for job %s: %s", job_handle, exc)
            raise classify_failure(exc, stage="ledger") from exc

        if not isinstance(payload, dict) or not isinstance(payload.get(job_handle), dict):
            logger.warning("Job %s completed but has no ledger entry", job_handle)
            raise GenerationError(
                ErrorKind.NO_OUTPUT,
                f"job {job_handle} not found in execution ledger",
                details={"job_handle": job_handle},
            )
        return parse_ledger_entry(job_handle, payload[job_handle])

    async def resolve(self, job_handle: str) -> ArtifactRef:
        entry = await self.fetch_ledger(job_handle)
        artifact = entry.first_artifact()
        if artifact is None:
            logger.warning(
                "Job %s produced no output (status=%s, nodes=%d)",
                job_handle,
                entry.status_str,
                len(entry.outputs),
            )
            raise GenerationError(
                ErrorKind.NO_OUTPUT,
                f"job {job_handle} produced no output",
                details={"job_handle": job_handle, "status": entry.status_str},
            )
        return artifact

    async def download(self, artifact: ArtifactRef) -> bytes:
        params = {"filename": artifact.filename}
        if artifact.subfolder:
            params["subfolder"] = artifact.subfolder
        if artifact.category:
            params["type"] = artifact.category
        try:
            response = await self._client.get("/view", params=params)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Artifact download failed for %s: %s", artifact.filename, exc)
            raise classify_failure(exc, stage="download") from exc

        content = response.content
        if not content:
            logger.warning("Artifact %s downloaded with empty body", artifact.filename)
            raise GenerationError(
                ErrorKind.NO_OUTPUT,
                f"artifact {artifact.filename} is empty",
                details={"filename": artifact.filename},
            )
        return content


def parse_ledger_entry(job_handle: str, raw: dict[str, Any]) -> LedgerEntry:
    outputs: dict[str, list[ArtifactRef]] = {}
    raw_outputs = raw.get("outputs")
    if isinstance(raw_outputs, dict):
        for node_id, node_output in raw_outputs.items():
            images = node_output.get("images") if isinstance(node_output, dict) else None
            if not isinstance(images, list):
                images = []
            outputs[str(node_id)] = [
                ArtifactRef(
                    filename=str(image["filename"]),
                    subfolder=str(image.get("subfolder") or ""),
                    category=str(image.get("type") or ""),
                )
                for image in images
                if isinstance(image, dict) and image.get("filename")
            ]
    status = raw.get("status") if isinstance(raw.get("status"), dict) else {}
    return LedgerEntry(
        job_handle=job_handle,
        outputs=outputs,
        status_str=status.get("status_str"),
        completed=bool(status.get("completed", False)),
    )
