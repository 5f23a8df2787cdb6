"""Job template loading and prompt substitution."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from comfy_bridge.generation.errors import GenerationError
from comfy_bridge.generation.models import ErrorKind, JobDocument

logger = logging.getLogger(__name__)

PROMPT_PLACEHOLDER = "{{PROMPT}}"


class JobTemplate:
    """Workflow template with a single placeholder for the user's prompt.

    The template text is replaced as a unit on reload, so concurrent
    ``prepare`` calls always see either the old or the new template.
    """

    def __init__(self, path: Path, *, placeholder: str = PROMPT_PLACEHOLDER) -> None:
        self.path = path
        self.placeholder = placeholder
        self._text: str | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_path(cls, path: Path, *, placeholder: str = PROMPT_PLACEHOLDER) -> JobTemplate:
        """Create and load a template; a failure here is a fatal configuration error."""

        template = cls(path, placeholder=placeholder)
        template.load()
        return template

    @property
    def is_loaded(self) -> bool:
        with self._lock:
            return self._text is not None

    def load(self) -> None:
        """Read and validate the template, swapping it in only when valid."""

        try:
            raw = self.path.read_bytes()
        except OSError as exc:
            raise GenerationError(
                ErrorKind.INVALID_JOB,
                f"cannot read workflow template {self.path}: {exc}",
                details={"path": str(self.path)},
            ) from exc

        try:
            text = raw.decode("utf-8")
            parsed = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise GenerationError(
                ErrorKind.INVALID_JOB,
                f"workflow template {self.path} is not valid JSON: {exc}",
                details={"path": str(self.path)},
            ) from exc
        if not isinstance(parsed, dict):
            raise GenerationError(
                ErrorKind.INVALID_JOB,
                f"workflow template {self.path} must be a JSON object",
                details={"path": str(self.path)},
            )
        if self.placeholder not in text:
            raise GenerationError(
                ErrorKind.INVALID_JOB,
                f"workflow template {self.path} must contain {self.placeholder} placeholder",
                details={"path": str(self.path)},
            )

        with self._lock:
            self._text = text
        logger.info("Loaded workflow template %s (%d bytes)", self.path, len(raw))

    def reload(self) -> None:
        """Re-read the template; on failure the previous template stays in use."""

        try:
            self.load()
        except GenerationError:
            logger.warning("Workflow template reload failed, keeping previous template", exc_info=True)
            raise

    def render(self, user_text: str) -> str:
        """Return the raw template text with every placeholder replaced."""

        with self._lock:
            text = self._text
        if text is None:
            raise GenerationError(ErrorKind.INVALID_JOB, "workflow template is not loaded")
        try:
            user_text.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise GenerationError(
                ErrorKind.INVALID_JOB,
                f"prompt is not valid UTF-8 text: {exc.reason}",
            ) from exc
        return text.replace(self.placeholder, escape_json_string(user_text))

    def prepare(self, user_text: str) -> JobDocument:
        """Return a job document with every placeholder replaced by ``user_text``."""

        substituted = self.render(user_text)
        try:
            document = json.loads(substituted)
        except json.JSONDecodeError as exc:
            raise GenerationError(
                ErrorKind.INVALID_JOB,
                f"invalid job after substitution: {exc}",
                details={"path": str(self.path)},
            ) from exc
        if not isinstance(document, dict):
            raise GenerationError(
                ErrorKind.INVALID_JOB,
                "invalid job after substitution: expected a JSON object",
                details={"path": str(self.path)},
            )
        return document


def escape_json_string(text: str) -> str:
    """Escape ``text`` for splicing between the quotes of a JSON string literal."""

    return json.dumps(text, ensure_ascii=False)[1:-1]
