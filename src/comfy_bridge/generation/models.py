"""Shared types for job submission, execution events and produced artifacts."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

JobDocument = dict[str, Any]
ProgressCallback = Callable[[int, int], None]


class ErrorKind(str, Enum):
    """Closed failure taxonomy surfaced to the boundary layer."""

    BACKEND_UNAVAILABLE = "backend_unavailable"
    TIMEOUT = "timeout"
    INVALID_JOB = "invalid_job"
    REJECTED = "rejected"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    NO_OUTPUT = "no_output"
    CANCELLED = "cancelled"


class MonitorState(str, Enum):
    """Execution monitor lifecycle states."""

    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in {MonitorState.CONNECTING, MonitorState.STREAMING}


@dataclass(slots=True, frozen=True)
class NodeError:
    """Per-node validation error reported by the backend on submission."""

    node_id: str
    type: str
    message: str
    details: str = ""
    extra_info: Any = None


@dataclass(slots=True, frozen=True)
class ExecutingEvent:
    """A node started executing; ``node_id=None`` marks the end of the job."""

    job_id: str
    node_id: str | None = None


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    """Sampler progress for the currently executing node."""

    job_id: str
    value: int
    max: int


@dataclass(slots=True, frozen=True)
class ExecutionErrorEvent:
    """Backend-side execution failure with its raw diagnostic payload."""

    job_id: str | None
    payload: Any


ExecutionEvent = ExecutingEvent | ProgressEvent | ExecutionErrorEvent


@dataclass(slots=True, frozen=True)
class ArtifactRef:
    """Reference to one produced output file."""

    filename: str
    subfolder: str = ""
    category: str = "output"


@dataclass(slots=True)
class LedgerEntry:
    """Execution-ledger record for one job, outputs kept in backend order."""

    job_handle: str
    outputs: dict[str, list[ArtifactRef]] = field(default_factory=dict)
    status_str: str | None = None
    completed: bool = False

    def first_artifact(self) -> ArtifactRef | None:
        """Return the first artifact of the first node that produced any."""

        for artifacts in self.outputs.values():
            if artifacts:
                return artifacts[0]
        return None


@dataclass(slots=True, frozen=True)
class DeviceInfo:
    """Compute device reported by the backend liveness probe."""

    name: str
    type: str
    index: int = 0
    vram_total: int = 0
    vram_free: int = 0


@dataclass(slots=True, frozen=True)
class SystemStats:
    """Parsed ``/system_stats`` payload."""

    os: str = ""
    python_version: str = ""
    devices: tuple[DeviceInfo, ...] = ()


def parse_execution_event(frame: dict[str, Any]) -> ExecutionEvent | None:
    """Map one decoded push-channel frame to an event, or ``None`` if irrelevant."""

    frame_type = frame.get("type")
    data = frame.get("data")
    if frame_type == "execution_error":
        job_id = data.get("prompt_id") if isinstance(data, dict) else None
        return ExecutionErrorEvent(job_id=_optional_str(job_id), payload=data)
    if not isinstance(data, dict):
        return None
    if frame_type == "executing":
        return ExecutingEvent(
            job_id=str(data.get("prompt_id") or ""),
            node_id=_optional_str(data.get("node")),
        )
    if frame_type == "progress":
        try:
            value = int(data.get("value", 0))
            maximum = int(data.get("max", 0))
        except (TypeError, ValueError):
            return None
        return ProgressEvent(job_id=str(data.get("prompt_id") or ""), value=value, max=maximum)
    return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None
