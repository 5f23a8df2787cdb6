"""Generation orchestration core for the ComfyUI backend.

A request flows through admission control, template substitution, job
submission over HTTP, completion monitoring over the push channel, and
output lookup in the execution ledger. Every failure surfaces as a
``GenerationError`` carrying one ``ErrorKind`` so front-ends can pick user
text purely from the kind.
"""

from comfy_bridge.generation.errors import (
    ConcurrencyConflict,
    GenerationError,
    classify_failure,
    is_retryable,
    user_message_for,
)
from comfy_bridge.generation.gate import ConcurrencyGate
from comfy_bridge.generation.models import (
    ArtifactRef,
    ErrorKind,
    LedgerEntry,
    MonitorState,
    NodeError,
    SystemStats,
)
from comfy_bridge.generation.monitor import ExecutionMonitor, ExecutionWatch
from comfy_bridge.generation.resolver import OutputResolver
from comfy_bridge.generation.service import GenerationService
from comfy_bridge.generation.submitter import JobSubmitter
from comfy_bridge.generation.template import PROMPT_PLACEHOLDER, JobTemplate

__all__ = [
    "PROMPT_PLACEHOLDER",
    "ArtifactRef",
    "ConcurrencyConflict",
    "ConcurrencyGate",
    "ErrorKind",
    "ExecutionMonitor",
    "ExecutionWatch",
    "GenerationError",
    "GenerationService",
    "JobSubmitter",
    "JobTemplate",
    "LedgerEntry",
    "MonitorState",
    "NodeError",
    "OutputResolver",
    "SystemStats",
    "classify_failure",
    "is_retryable",
    "user_message_for",
]
