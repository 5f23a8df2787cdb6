"""Controllers for the command-line boundary layer."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from comfy_bridge.config import Settings
from comfy_bridge.generation import (
    ConcurrencyGate,
    ErrorKind,
    GenerationError,
    GenerationService,
    JobTemplate,
)

logger = logging.getLogger(__name__)

MIN_PROMPT_LENGTH = 3

ServiceFactory = Callable[..., GenerationService]


@dataclass(slots=True)
class GenerateCommand:
    """CLI input for one image generation."""

    prompt: str
    actor_id: str
    output_path: Path
    workflow_path: Path | None = None
    timeout_seconds: float | None = None


@dataclass(slots=True)
class StatusCommand:
    """CLI input for backend status."""

    workflow_path: Path | None = None


@dataclass(slots=True)
class TemplateCheckCommand:
    """CLI input for workflow template validation."""

    workflow_path: Path | None = None


@dataclass(slots=True)
class CommandResult:
    """Lines to print plus overall outcome."""

    lines: list[str]
    success: bool


class GenerationCliController:
    """CLI controller wiring settings, the gate and the generation service."""

    def __init__(
        self,
        gate: ConcurrencyGate | None = None,
        service_factory: ServiceFactory = GenerationService.from_settings,
    ) -> None:
        self._gate = gate
        self._service_factory = service_factory

    def generate(self, command: GenerateCommand) -> CommandResult:
        prompt = command.prompt.strip()
        if len(prompt) < MIN_PROMPT_LENGTH:
            return CommandResult(
                lines=[
                    "Please provide a more detailed prompt "
                    f"(at least {MIN_PROMPT_LENGTH} characters).",
                ],
                success=False,
            )
        try:
            settings = _load_settings(command.workflow_path)
        except ValueError as error:
            return CommandResult(lines=[f"Configuration error: {error}"], success=False)
        return asyncio.run(self._generate(settings, command, prompt))

    def status(self, command: StatusCommand) -> CommandResult:
        try:
            settings = _load_settings(command.workflow_path, require_workflow=False)
        except ValueError as error:
            return CommandResult(lines=[f"Configuration error: {error}"], success=False)
        return asyncio.run(self._status(settings))

    def check_template(self, command: TemplateCheckCommand) -> CommandResult:
        try:
            settings = _load_settings(command.workflow_path)
        except ValueError as error:
            return CommandResult(lines=[f"Configuration error: {error}"], success=False)
        template = JobTemplate(settings.backend.workflow_path)
        try:
            template.load()
            template.prepare("template check")
        except GenerationError as error:
            return CommandResult(lines=[f"Template invalid: {error.message}"], success=False)
        return CommandResult(
            lines=[f"Template OK: {template.path} ({template.placeholder} present)"],
            success=True,
        )

    async def _generate(
        self,
        settings: Settings,
        command: GenerateCommand,
        prompt: str,
    ) -> CommandResult:
        gate = self._gate or ConcurrencyGate(settings.gate.max_concurrent)
        cancel_event = asyncio.Event()
        lines: list[str] = []

        def _on_progress(value: int, maximum: int) -> None:
            logger.info("Progress %d/%d", value, maximum)

        try:
            service = self._service_factory(settings.backend, gate=gate)
        except GenerationError as error:
            return CommandResult(lines=[error.user_message, f"Details: {error.message}"], success=False)

        with _cancel_on_signals(cancel_event):
            async with service:
                try:
                    image = await service.generate_image(
                        command.actor_id,
                        prompt,
                        cancel_event=cancel_event,
                        timeout_seconds=command.timeout_seconds,
                        on_progress=_on_progress,
                    )
                except GenerationError as error:
                    if error.kind is ErrorKind.CANCELLED:
                        return CommandResult(lines=["Generation cancelled."], success=True)
                    lines.append(error.user_message)
                    if error.retryable:
                        lines.append("This error is temporary, retrying later may help.")
                    return CommandResult(lines=lines, success=False)

        command.output_path.parent.mkdir(parents=True, exist_ok=True)
        command.output_path.write_bytes(image)
        lines.append(f"Saved image to {command.output_path} ({len(image)} bytes)")
        return CommandResult(lines=lines, success=True)

    async def _status(self, settings: Settings) -> CommandResult:
        gate = self._gate or ConcurrencyGate(settings.gate.max_concurrent)
        try:
            service = self._service_factory(settings.backend, gate=gate, require_template=False)
        except GenerationError as error:
            return CommandResult(lines=[error.user_message, f"Details: {error.message}"], success=False)

        async with service:
            try:
                stats = await service.check_health()
            except GenerationError as error:
                return CommandResult(
                    lines=["ComfyUI Status: Offline", f"Error: {error.message}"],
                    success=False,
                )
        lines = [
            "ComfyUI Status: Online",
            f"Active generations: {gate.active_count()}",
        ]
        if stats.os or stats.python_version:
            lines.append(f"System: {stats.os or '?'} / Python {stats.python_version or '?'}")
        for device in stats.devices:
            lines.append(
                f"Device {device.index}: {device.name} ({device.type}) "
                f"VRAM free {_format_mib(device.vram_free)} / {_format_mib(device.vram_total)}",
            )
        return CommandResult(lines=lines, success=True)


def _load_settings(workflow_path: Path | None, *, require_workflow: bool = True) -> Settings:
    settings = Settings.from_env(workflow_path=workflow_path)
    settings.validate(require_workflow=require_workflow)
    return settings


def _format_mib(value: int) -> str:
    return f"{value / (1024 * 1024):.0f} MiB"


@contextmanager
def _cancel_on_signals(cancel_event: asyncio.Event) -> Iterator[None]:
    """Set ``cancel_event`` on SIGINT/SIGTERM for the duration of the block."""

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(signum)
    try:
        yield
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)
