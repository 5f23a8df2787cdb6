"""CLI entrypoint for comfy-bridge."""

import logging
import os
from pathlib import Path

import rich_click as click

from comfy_bridge import __version__
from comfy_bridge.controllers import (
    GenerateCommand,
    GenerationCliController,
    StatusCommand,
    TemplateCheckCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = GenerationCliController()


@click.group()
@click.version_option(version=__version__, prog_name="comfy-bridge")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Overrides COMFY_BRIDGE_LOG_LEVEL.",
)
def comfy_bridge(log_level: str | None) -> None:
    """ComfyUI generation bridge CLI."""

    _setup_logging(log_level or os.getenv("COMFY_BRIDGE_LOG_LEVEL", "info"))


@comfy_bridge.command("generate")
@click.argument("prompt")
@click.option("--actor", "actor_id", default="cli", show_default=True, help="Requesting identity.")
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=Path("image.png"),
    show_default=True,
    help="Where to write the generated image.",
)
@click.option(
    "--workflow",
    "workflow_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Workflow template. Overrides COMFY_BRIDGE_WORKFLOW_PATH.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Overall deadline in seconds. Overrides COMFY_BRIDGE_REQUEST_TIMEOUT_SECONDS.",
)
def generate(
    prompt: str,
    actor_id: str,
    output_path: Path,
    workflow_path: Path | None,
    timeout_seconds: float | None,
) -> None:
    """Generate one image from PROMPT and save it."""

    result = CONTROLLER.generate(
        GenerateCommand(
            prompt=prompt,
            actor_id=actor_id,
            output_path=output_path,
            workflow_path=workflow_path,
            timeout_seconds=timeout_seconds,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Image generation failed.")


@comfy_bridge.command("status")
@click.option(
    "--workflow",
    "workflow_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Workflow template. Overrides COMFY_BRIDGE_WORKFLOW_PATH.",
)
def status(workflow_path: Path | None) -> None:
    """Check backend liveness and active generations."""

    result = CONTROLLER.status(StatusCommand(workflow_path=workflow_path))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Backend is offline.")


@comfy_bridge.group()
def template() -> None:
    """Workflow template commands."""


@template.command("check")
@click.option(
    "--path",
    "workflow_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Workflow template. Overrides COMFY_BRIDGE_WORKFLOW_PATH.",
)
def template_check(workflow_path: Path | None) -> None:
    """Validate a workflow template and its prompt placeholder."""

    result = CONTROLLER.check_template(TemplateCheckCommand(workflow_path=workflow_path))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Workflow template is invalid.")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    comfy_bridge()
