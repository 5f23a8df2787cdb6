"""Failure taxonomy and deterministic classification of technical errors."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import httpx
from websockets.exceptions import WebSocketException

from comfy_bridge.generation.models import ErrorKind

FAILURE_CLASSIFIER_VERSION = 1

_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.BACKEND_UNAVAILABLE: (
        "The image generation service is currently unavailable. Please try again later."
    ),
    ErrorKind.TIMEOUT: (
        "Image generation took too long and was cancelled. Try a simpler prompt."
    ),
    ErrorKind.INVALID_JOB: (
        "There's a problem with the image generation configuration. "
        "Please contact the administrator."
    ),
    ErrorKind.REJECTED: "The prompt could not be processed. Please try rewording your request.",
    ErrorKind.CONCURRENCY_CONFLICT: (
        "You already have a generation in progress. Please wait for it to complete."
    ),
    ErrorKind.NO_OUTPUT: "The generation finished but produced no image. Please try again later.",
    ErrorKind.CANCELLED: "The generation was cancelled.",
}

_RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.BACKEND_UNAVAILABLE, ErrorKind.TIMEOUT, ErrorKind.REJECTED},
)


class GenerationError(Exception):
    """Classified failure of one generation request.

    Attributes:
        kind: Taxonomy entry the boundary layer picks user text from.
        details: Structured diagnostics (node errors, payloads, stage name).
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}

    @property
    def user_message(self) -> str:
        return user_message_for(self.kind)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)

    @property
    def is_failure(self) -> bool:
        """Cancellation is caller-driven and never reported as an error."""

        return self.kind is not ErrorKind.CANCELLED


class ConcurrencyConflict(GenerationError):
    """The actor already owns an admission slot."""

    def __init__(self, actor_id: str) -> None:
        super().__init__(
            ErrorKind.CONCURRENCY_CONFLICT,
            f"actor {actor_id!r} already has a generation in progress",
            details={"actor_id": actor_id},
        )


@dataclass(slots=True)
class FailureClassification:
    """Normalized classification result for a technical failure."""

    kind: ErrorKind
    matched_rule: str
    stage: str

    def to_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "matched_rule": self.matched_rule,
            "stage": self.stage,
        }


def user_message_for(kind: ErrorKind) -> str:
    return _USER_MESSAGES[kind]


def is_retryable(kind: ErrorKind) -> bool:
    return kind in _RETRYABLE_KINDS


def classify_exception(exc: BaseException, *, stage: str) -> FailureClassification:
    """Classify a raw exception into the taxonomy without wrapping it."""

    if isinstance(exc, GenerationError):
        return FailureClassification(kind=exc.kind, matched_rule="already_classified", stage=stage)
    if isinstance(exc, httpx.TimeoutException):
        return FailureClassification(
            kind=ErrorKind.BACKEND_UNAVAILABLE,
            matched_rule="http_timeout",
            stage=stage,
        )
    if isinstance(exc, httpx.HTTPStatusError):
        return FailureClassification(
            kind=_kind_for_status(exc.response.status_code),
            matched_rule="http_status",
            stage=stage,
        )
    if isinstance(exc, httpx.TransportError):
        return FailureClassification(
            kind=ErrorKind.BACKEND_UNAVAILABLE,
            matched_rule="http_transport",
            stage=stage,
        )
    if isinstance(exc, WebSocketException):
        return FailureClassification(
            kind=ErrorKind.BACKEND_UNAVAILABLE,
            matched_rule="channel_protocol",
            stage=stage,
        )
    if isinstance(exc, TimeoutError):
        return FailureClassification(
            kind=ErrorKind.BACKEND_UNAVAILABLE,
            matched_rule="io_timeout",
            stage=stage,
        )
    if isinstance(exc, OSError):
        return FailureClassification(
            kind=ErrorKind.BACKEND_UNAVAILABLE,
            matched_rule="os_error",
            stage=stage,
        )
    if isinstance(exc, json.JSONDecodeError | UnicodeDecodeError):
        return FailureClassification(
            kind=ErrorKind.BACKEND_UNAVAILABLE,
            matched_rule="malformed_response",
            stage=stage,
        )
    return FailureClassification(
        kind=ErrorKind.BACKEND_UNAVAILABLE,
        matched_rule="fallback_unavailable",
        stage=stage,
    )


def classify_failure(exc: BaseException, *, stage: str) -> GenerationError:
    """Return a ``GenerationError`` for any failure; classified errors pass through.

    The caller is expected to ``raise classify_failure(exc, ...) from exc`` so
    the technical cause stays attached.
    """

    if isinstance(exc, GenerationError):
        return exc
    classification = classify_exception(exc, stage=stage)
    return GenerationError(
        classification.kind,
        f"{stage} failed: {exc}",
        details=classification.to_details(),
    )


def _kind_for_status(status_code: int) -> ErrorKind:
    if status_code == httpx.codes.NOT_FOUND:
        return ErrorKind.NO_OUTPUT
    if httpx.codes.is_client_error(status_code):
        return ErrorKind.REJECTED
    return ErrorKind.BACKEND_UNAVAILABLE
