"""Runtime configuration for the generation bridge."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

_LOG_LEVELS = ("debug", "info", "warning", "error")


@dataclass(slots=True)
class BackendSettings:
    """ComfyUI endpoint and protocol timing settings."""

    base_url: str = "http://localhost:8188"
    ws_url: str = "ws://localhost:8188/ws"
    workflow_path: Path | None = None
    http_timeout_seconds: float = 30.0
    health_timeout_seconds: float = 5.0
    request_timeout_seconds: float = 300.0
    handshake_timeout_seconds: float = 10.0
    idle_timeout_seconds: float = 30.0
    heartbeat_interval_seconds: float = 10.0
    max_frame_bytes: int = 16 * 1024 * 1024


@dataclass(slots=True)
class GateSettings:
    """Admission control settings."""

    max_concurrent: int = 0


@dataclass(slots=True)
class LoggingSettings:
    """Logging settings for the command-line runtime."""

    level: str = "info"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    backend: BackendSettings = field(default_factory=BackendSettings)
    gate: GateSettings = field(default_factory=GateSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls, workflow_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for a local ComfyUI."""

        env_workflow = os.getenv("COMFY_BRIDGE_WORKFLOW_PATH", "").strip()
        return cls(
            backend=BackendSettings(
                base_url=os.getenv("COMFY_BRIDGE_BASE_URL", "http://localhost:8188").strip(),
                ws_url=os.getenv("COMFY_BRIDGE_WS_URL", "ws://localhost:8188/ws").strip(),
                workflow_path=workflow_path or (Path(env_workflow) if env_workflow else None),
                http_timeout_seconds=float(
                    os.getenv("COMFY_BRIDGE_HTTP_TIMEOUT_SECONDS", "30"),
                ),
                health_timeout_seconds=float(
                    os.getenv("COMFY_BRIDGE_HEALTH_TIMEOUT_SECONDS", "5"),
                ),
                request_timeout_seconds=float(
                    os.getenv("COMFY_BRIDGE_REQUEST_TIMEOUT_SECONDS", "300"),
                ),
                handshake_timeout_seconds=float(
                    os.getenv("COMFY_BRIDGE_WS_HANDSHAKE_TIMEOUT_SECONDS", "10"),
                ),
                idle_timeout_seconds=float(
                    os.getenv("COMFY_BRIDGE_WS_IDLE_TIMEOUT_SECONDS", "30"),
                ),
                heartbeat_interval_seconds=float(
                    os.getenv("COMFY_BRIDGE_WS_HEARTBEAT_SECONDS", "10"),
                ),
                max_frame_bytes=int(
                    os.getenv("COMFY_BRIDGE_WS_MAX_FRAME_BYTES", str(16 * 1024 * 1024)),
                ),
            ),
            gate=GateSettings(
                max_concurrent=int(os.getenv("COMFY_BRIDGE_MAX_CONCURRENT", "0")),
            ),
            logging=LoggingSettings(
                level=os.getenv("COMFY_BRIDGE_LOG_LEVEL", "info").strip().lower(),
            ),
        )

    def validate(self, *, require_workflow: bool = True) -> None:
        """Raise configuration error if backend or gate settings are unusable."""

        backend = self.backend
        _validate_url(backend.base_url, schemes={"http", "https"}, name="COMFY_BRIDGE_BASE_URL")
        _validate_url(backend.ws_url, schemes={"ws", "wss"}, name="COMFY_BRIDGE_WS_URL")
        if require_workflow and backend.workflow_path is None:
            raise ValueError(
                "A workflow template is required. "
                "Set COMFY_BRIDGE_WORKFLOW_PATH or pass --workflow.",
            )
        for name, value in (
            ("COMFY_BRIDGE_HTTP_TIMEOUT_SECONDS", backend.http_timeout_seconds),
            ("COMFY_BRIDGE_HEALTH_TIMEOUT_SECONDS", backend.health_timeout_seconds),
            ("COMFY_BRIDGE_REQUEST_TIMEOUT_SECONDS", backend.request_timeout_seconds),
            ("COMFY_BRIDGE_WS_HANDSHAKE_TIMEOUT_SECONDS", backend.handshake_timeout_seconds),
            ("COMFY_BRIDGE_WS_IDLE_TIMEOUT_SECONDS", backend.idle_timeout_seconds),
            ("COMFY_BRIDGE_WS_HEARTBEAT_SECONDS", backend.heartbeat_interval_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if backend.heartbeat_interval_seconds >= backend.idle_timeout_seconds:
            raise ValueError(
                "COMFY_BRIDGE_WS_HEARTBEAT_SECONDS must be lower than "
                "COMFY_BRIDGE_WS_IDLE_TIMEOUT_SECONDS.",
            )
        if backend.max_frame_bytes <= 0:
            raise ValueError("COMFY_BRIDGE_WS_MAX_FRAME_BYTES must be > 0.")
        if self.gate.max_concurrent < 0:
            raise ValueError("COMFY_BRIDGE_MAX_CONCURRENT must be >= 0 (0 means unbounded).")
        if self.logging.level not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid COMFY_BRIDGE_LOG_LEVEL: {self.logging.level!r}. "
                f"Expected one of: {', '.join(_LOG_LEVELS)}.",
            )


def _validate_url(value: str, *, schemes: set[str], name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in schemes or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. "
            f"Expected an absolute URL with scheme {' or '.join(sorted(schemes))}.",
        )
