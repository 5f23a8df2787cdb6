"""Push-channel execution monitoring for submitted jobs.

One reader task drains the websocket into a queue; the awaiting task
coordinates over three sources: queued frames, the heartbeat/idle timers,
and the caller's cancel event. Lifecycle::

    CONNECTING -> STREAMING -> COMPLETED | FAILED | TIMED_OUT | CANCELLED

The channel is opened before the job is submitted so that no event can be
missed; frames received in between are buffered and only matched once the
job handle is known.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import WebSocketException

from comfy_bridge.generation.errors import GenerationError, classify_exception, classify_failure
from comfy_bridge.generation.models import (
    ErrorKind,
    ExecutingEvent,
    ExecutionErrorEvent,
    MonitorState,
    ProgressCallback,
    ProgressEvent,
    parse_execution_event,
)

logger = logging.getLogger(__name__)

_CHANNEL_ERRORS = (WebSocketException, OSError)


@dataclass(slots=True, frozen=True)
class _ChannelClosed:
    """Sentinel queued by the reader when the socket stops delivering frames."""

    cause: BaseException | None


class ExecutionWatch:
    """One open push channel bound to a single watcher id."""

    def __init__(
        self,
        connection: Any,
        watcher_id: str,
        *,
        idle_timeout_seconds: float,
        heartbeat_interval_seconds: float,
    ) -> None:
        self.watcher_id = watcher_id
        self.state = MonitorState.CONNECTING
        self._connection = connection
        self._idle_timeout_seconds = idle_timeout_seconds
        self._heartbeat_interval_seconds = heartbeat_interval_seconds
        self._frames: asyncio.Queue[str | bytes | _ChannelClosed] = asyncio.Queue()
        self._reader: asyncio.Task[None] | None = None
        self._deadline = 0.0
        self._closed = False

    def start(self) -> None:
        self._touch()
        self._reader = asyncio.create_task(
            self._read_frames(),
            name=f"push-channel-reader-{self.watcher_id}",
        )
        self.state = MonitorState.STREAMING

    async def wait_for(
        self,
        job_handle: str,
        *,
        cancel_event: asyncio.Event | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> MonitorState:
        """Suspend until ``job_handle`` reaches a terminal state.

        Returns ``MonitorState.COMPLETED``; every other terminal state raises
        ``GenerationError`` with the matching kind.
        """

        if self.state is not MonitorState.STREAMING:
            raise RuntimeError(f"watch {self.watcher_id} is not streaming (state={self.state})")

        loop = asyncio.get_running_loop()
        self._touch()
        next_heartbeat = loop.time() + self._heartbeat_interval_seconds
        next_frame = asyncio.ensure_future(self._frames.get())
        cancel_wait = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None
        try:
            while True:
                now = loop.time()
                if now >= self._deadline:
                    raise self._finish(
                        MonitorState.TIMED_OUT,
                        ErrorKind.TIMEOUT,
                        f"no frames from backend for {self._idle_timeout_seconds:g}s "
                        f"while waiting for job {job_handle}",
                    )
                if now >= next_heartbeat:
                    await self._send_heartbeat()
                    next_heartbeat = now + self._heartbeat_interval_seconds

                waiters: set[asyncio.Future[Any]] = {next_frame}
                if cancel_wait is not None:
                    waiters.add(cancel_wait)
                done, _ = await asyncio.wait(
                    waiters,
                    timeout=max(0.0, min(self._deadline, next_heartbeat) - now),
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if cancel_wait is not None and cancel_wait in done:
                    await self._close_gracefully()
                    raise self._finish(
                        MonitorState.CANCELLED,
                        ErrorKind.CANCELLED,
                        f"wait for job {job_handle} cancelled by caller",
                    )
                if next_frame in done:
                    frame = next_frame.result()
                    next_frame = asyncio.ensure_future(self._frames.get())
                    if self._handle_frame(frame, job_handle, on_progress):
                        self.state = MonitorState.COMPLETED
                        logger.debug("Job %s completed", job_handle)
                        return self.state
        finally:
            next_frame.cancel()
            if cancel_wait is not None:
                cancel_wait.cancel()

    async def close(self) -> None:
        """Stop the reader task and close the socket; safe to call repeatedly."""

        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            # asyncio.wait does not re-raise the reader's cancellation, only ours.
            await asyncio.wait({self._reader})
        if self._closed:
            return
        self._closed = True
        try:
            await self._connection.close()
        except _CHANNEL_ERRORS as exc:
            logger.debug("Push channel close failed for watcher %s: %s", self.watcher_id, exc)

    def _handle_frame(
        self,
        frame: str | bytes | _ChannelClosed,
        job_handle: str,
        on_progress: ProgressCallback | None,
    ) -> bool:
        if isinstance(frame, _ChannelClosed):
            details = None
            if frame.cause is not None:
                details = classify_exception(frame.cause, stage="channel_read").to_details()
            raise self._finish(
                MonitorState.FAILED,
                ErrorKind.BACKEND_UNAVAILABLE,
                f"push channel closed unexpectedly while waiting for job {job_handle}",
                details=details,
                cause=frame.cause,
            )

        self._touch()
        if isinstance(frame, bytes):
            # Binary preview images.
            return False
        try:
            decoded = json.loads(frame)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable frame on watcher %s", self.watcher_id)
            return False
        if not isinstance(decoded, dict):
            return False

        event = parse_execution_event(decoded)
        if isinstance(event, ExecutingEvent):
            return event.job_id == job_handle and event.node_id is None
        if isinstance(event, ProgressEvent):
            if event.job_id == job_handle and on_progress is not None:
                on_progress(event.value, event.max)
            return False
        if isinstance(event, ExecutionErrorEvent):
            if event.job_id and event.job_id != job_handle:
                logger.debug("Execution error for job %s seen while awaiting %s", event.job_id, job_handle)
            raise self._finish(
                MonitorState.FAILED,
                ErrorKind.REJECTED,
                f"backend execution error for job {job_handle}",
                details={"payload": event.payload},
            )
        return False

    async def _read_frames(self) -> None:
        try:
            async for frame in self._connection:
                self._frames.put_nowait(frame)
        except _CHANNEL_ERRORS as exc:
            self._frames.put_nowait(_ChannelClosed(exc))
            return
        self._frames.put_nowait(_ChannelClosed(None))

    async def _send_heartbeat(self) -> None:
        try:
            pong_waiter = await self._connection.ping()
        except _CHANNEL_ERRORS as exc:
            classification = classify_exception(exc, stage="heartbeat")
            raise self._finish(
                MonitorState.FAILED,
                classification.kind,
                f"heartbeat failed on watcher {self.watcher_id}",
                details=classification.to_details(),
                cause=exc,
            ) from exc
        pong_waiter.add_done_callback(self._on_pong)

    def _on_pong(self, pong_waiter: asyncio.Future[Any]) -> None:
        if pong_waiter.cancelled() or pong_waiter.exception() is not None:
            return
        self._touch()

    async def _close_gracefully(self) -> None:
        self._closed = True
        try:
            await self._connection.close(code=1000)
        except _CHANNEL_ERRORS as exc:
            logger.debug("Graceful close failed for watcher %s: %s", self.watcher_id, exc)

    def _touch(self) -> None:
        self._deadline = asyncio.get_running_loop().time() + self._idle_timeout_seconds

    def _finish(
        self,
        state: MonitorState,
        kind: ErrorKind,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> GenerationError:
        if self.state.is_terminal:
            raise RuntimeError(f"watch {self.watcher_id} already finished as {self.state}")
        self.state = state
        if state is MonitorState.CANCELLED:
            logger.info("Watcher %s cancelled", self.watcher_id)
        elif cause is not None:
            logger.warning("Watcher %s %s: %s (%s)", self.watcher_id, state.value, message, cause)
        else:
            logger.warning("Watcher %s %s: %s", self.watcher_id, state.value, message)
        error = GenerationError(kind, message, details={"state": state.value, **(details or {})})
        error.__cause__ = cause
        return error


class ExecutionMonitor:
    """Opens watcher-scoped push channels and awaits job completion on them."""

    def __init__(
        self,
        ws_url: str,
        *,
        idle_timeout_seconds: float = 30.0,
        heartbeat_interval_seconds: float = 10.0,
        handshake_timeout_seconds: float = 10.0,
        max_frame_bytes: int | None = 16 * 1024 * 1024,
        connect: Callable[..., Any] = websocket_connect,
    ) -> None:
        if heartbeat_interval_seconds >= idle_timeout_seconds:
            raise ValueError("heartbeat_interval_seconds must be lower than idle_timeout_seconds")
        self.ws_url = ws_url
        self._idle_timeout_seconds = idle_timeout_seconds
        self._heartbeat_interval_seconds = heartbeat_interval_seconds
        self._handshake_timeout_seconds = handshake_timeout_seconds
        self._max_frame_bytes = max_frame_bytes
        self._connect = connect

    def channel_url(self, watcher_id: str) -> str:
        separator = "&" if "?" in self.ws_url else "?"
        return f"{self.ws_url}{separator}{urlencode({'clientId': watcher_id})}"

    @asynccontextmanager
    async def open(self, watcher_id: str) -> AsyncIterator[ExecutionWatch]:
        """Open the push channel for ``watcher_id``; it is closed on every exit path."""

        url = self.channel_url(watcher_id)
        try:
            connection = await self._connect(
                url,
                open_timeout=self._handshake_timeout_seconds,
                ping_interval=None,
                ping_timeout=None,
                max_size=self._max_frame_bytes,
            )
        except _CHANNEL_ERRORS as exc:  # TimeoutError is an OSError
            logger.warning("Cannot open push channel %s: %s", url, exc)
            error = classify_failure(exc, stage="channel_open")
            error.details["state"] = MonitorState.FAILED.value
            raise error from exc

        watch = ExecutionWatch(
            connection,
            watcher_id,
            idle_timeout_seconds=self._idle_timeout_seconds,
            heartbeat_interval_seconds=self._heartbeat_interval_seconds,
        )
        watch.start()
        try:
            yield watch
        finally:
            await watch.close()

    async def await_completion(
        self,
        job_handle: str,
        watcher_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> MonitorState:
        async with self.open(watcher_id) as watch:
            return await watch.wait_for(
                job_handle,
                cancel_event=cancel_event,
                on_progress=on_progress,
            )
