"""Generation orchestration: gate, template, submit, monitor, resolve."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Coroutine
from typing import Any

import httpx

from comfy_bridge.config import BackendSettings
from comfy_bridge.generation.errors import GenerationError, classify_failure
from comfy_bridge.generation.gate import ConcurrencyGate
from comfy_bridge.generation.models import DeviceInfo, ErrorKind, ProgressCallback, SystemStats
from comfy_bridge.generation.monitor import ExecutionMonitor
from comfy_bridge.generation.resolver import OutputResolver
from comfy_bridge.generation.submitter import JobSubmitter
from comfy_bridge.generation.template import JobTemplate

logger = logging.getLogger(__name__)


class GenerationService:
    """Single entry point used by chat front-ends to turn a prompt into image bytes.

    The gate is passed in so that one instance can be shared by every service
    of the process while tests build independent gates.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        client: httpx.AsyncClient,
        template: JobTemplate | None,
        monitor: ExecutionMonitor,
        gate: ConcurrencyGate,
        request_timeout_seconds: float | None = 300.0,
        health_timeout_seconds: float = 5.0,
    ) -> None:
        self.template = template
        self.monitor = monitor
        self.gate = gate
        self.submitter = JobSubmitter(client)
        self.resolver = OutputResolver(client)
        self.request_timeout_seconds = request_timeout_seconds
        self.health_timeout_seconds = health_timeout_seconds
        self._client = client

    @classmethod
    def from_settings(
        cls,
        settings: BackendSettings,
        *,
        gate: ConcurrencyGate,
        require_template: bool = True,
    ) -> GenerationService:
        """Build a service with its own HTTP client; the template must load or this fails.

        With ``require_template=False`` and no workflow path configured the
        service only answers health checks.
        """

        template: JobTemplate | None = None
        if settings.workflow_path is not None:
            template = JobTemplate.from_path(settings.workflow_path)
        elif require_template:
            raise ValueError("workflow_path is required")
        client = httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/"),
            timeout=httpx.Timeout(settings.http_timeout_seconds, connect=10.0),
        )
        monitor = ExecutionMonitor(
            settings.ws_url,
            idle_timeout_seconds=settings.idle_timeout_seconds,
            heartbeat_interval_seconds=settings.heartbeat_interval_seconds,
            handshake_timeout_seconds=settings.handshake_timeout_seconds,
            max_frame_bytes=settings.max_frame_bytes,
        )
        return cls(
            client=client,
            template=template,
            monitor=monitor,
            gate=gate,
            request_timeout_seconds=settings.request_timeout_seconds,
            health_timeout_seconds=settings.health_timeout_seconds,
        )

    async def generate_image(
        self,
        actor_id: str,
        prompt_text: str,
        *,
        cancel_event: asyncio.Event | None = None,
        timeout_seconds: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> bytes:
        """Run one generation for ``actor_id`` and return the produced image bytes.

        Raises ``GenerationError`` whose ``kind`` is always one of the
        taxonomy entries. The actor's gate slot is released on every path.
        """

        deadline = timeout_seconds if timeout_seconds is not None else self.request_timeout_seconds
        started = time.monotonic()
        logger.info("Generation started: actor=%s prompt_length=%d", actor_id, len(prompt_text))
        try:
            with self.gate.hold(actor_id):
                try:
                    async with asyncio.timeout(deadline):
                        image = await self._run_cancellable(
                            self._generate(prompt_text, cancel_event, on_progress),
                            cancel_event,
                        )
                except TimeoutError as exc:
                    logger.warning("Generation for actor %s exceeded %ss deadline", actor_id, deadline)
                    raise GenerationError(
                        ErrorKind.TIMEOUT,
                        f"generation exceeded {deadline}s deadline",
                        details={"stage": "deadline"},
                    ) from exc
                except GenerationError:
                    raise
                except Exception as exc:
                    logger.exception("Generation for actor %s failed unexpectedly", actor_id)
                    raise classify_failure(exc, stage="generate") from exc
        except GenerationError as error:
            logger.info(
                "Generation finished: actor=%s outcome=%s elapsed=%.1fs",
                actor_id,
                error.kind.value,
                time.monotonic() - started,
            )
            raise
        logger.info(
            "Generation finished: actor=%s outcome=ok bytes=%d elapsed=%.1fs",
            actor_id,
            len(image),
            time.monotonic() - started,
        )
        return image

    async def _run_cancellable(
        self,
        work: Coroutine[Any, Any, bytes],
        cancel_event: asyncio.Event | None,
    ) -> bytes:
        """Await ``work`` unless ``cancel_event`` fires first; then unwind it promptly."""

        if cancel_event is None:
            return await work
        work_task = asyncio.ensure_future(work)
        cancel_wait = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({work_task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            if not work_task.done():
                work_task.cancel()
                await asyncio.wait({work_task})
        if work_task.cancelled():
            raise GenerationError(ErrorKind.CANCELLED, "generation cancelled by caller")
        return work_task.result()

    async def _generate(
        self,
        prompt_text: str,
        cancel_event: asyncio.Event | None,
        on_progress: ProgressCallback | None,
    ) -> bytes:
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationError(ErrorKind.CANCELLED, "cancelled before submission")
        if self.template is None:
            raise GenerationError(ErrorKind.INVALID_JOB, "no workflow template configured")
        document = self.template.prepare(prompt_text)
        watcher_id = str(uuid.uuid4())
        async with self.monitor.open(watcher_id) as watch:
            job_handle = await self.submitter.submit(document, watcher_id)
            logger.debug("Job %s submitted on watcher %s", job_handle, watcher_id)
            await watch.wait_for(job_handle, cancel_event=cancel_event, on_progress=on_progress)
        artifact = await self.resolver.resolve(job_handle)
        return await self.resolver.download(artifact)

    async def check_health(self) -> SystemStats:
        """Probe ``/system_stats``; any 200 response means the backend is up."""

        try:
            response = await self._client.get(
                "/system_stats",
                timeout=self.health_timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Health check failed: %s", exc)
            raise GenerationError(
                ErrorKind.BACKEND_UNAVAILABLE,
                f"health check failed: {exc}",
                details={"stage": "health"},
            ) from exc
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        return parse_system_stats(payload)

    def reload_template(self) -> None:
        if self.template is None:
            raise GenerationError(ErrorKind.INVALID_JOB, "no workflow template configured")
        self.template.reload()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GenerationService:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()


def parse_system_stats(payload: Any) -> SystemStats:
    if not isinstance(payload, dict):
        return SystemStats()
    system = payload.get("system") if isinstance(payload.get("system"), dict) else {}
    devices = tuple(
        DeviceInfo(
            name=str(device.get("name", "")),
            type=str(device.get("type", "")),
            index=int(device.get("index") or 0),
            vram_total=int(device.get("vram_total") or 0),
            vram_free=int(device.get("vram_free") or 0),
        )
        for device in payload.get("devices") or ()
        if isinstance(device, dict)
    )
    return SystemStats(
        os=str(system.get("os", "")),
        python_version=str(system.get("python_version", "")),
        devices=devices,
    )
