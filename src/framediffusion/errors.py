"""Error handling module for FrameDiffusion.

Provides the error taxonomy used by the scheduler, detailed error context
and classification of HTTP transport failures.

Transient errors are local to a single render attempt: they are recorded
on the job and fed to the retry coordinator. Fatal errors abort a run
before any job is dispatched.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Type

import requests


class FrameDiffusionError(Exception):
    """Base exception for all FrameDiffusion errors."""

    def __init__(self, message: str, context: Optional["ErrorContext"] = None):
        super().__init__(message)
        self.context = context


class TransientError(FrameDiffusionError):
    """Attempt-local failure that is eligible for retry.

    Raised while rendering a single frame. Never fatal to the run.
    """
    pass


class TransportError(TransientError):
    """Connection or submit failure talking to a worker."""
    pass


class RenderTimeoutError(TransientError):
    """No terminal poll state within the worker class timeout."""
    pass


class RemoteFailureError(TransientError):
    """The render service explicitly reported a failure."""
    pass


class IntegrityError(TransientError):
    """Output missing, below the size threshold, or not a decodable image."""
    pass


class FatalError(FrameDiffusionError):
    """Non-recoverable error that aborts the run before dispatch."""
    pass


class ConfigurationError(FatalError):
    """Invalid configuration (worker class, port list, limits, settings)."""
    pass


class NoWorkersAvailableError(FatalError):
    """None of the configured workers answered the health probe."""
    pass


# Labels for the optional ErrorContext fields, in display order
_CONTEXT_LABELS = (
    ("frame_number", "Frame"),
    ("worker_id", "Worker"),
    ("attempt", "Attempt"),
    ("status_code", "Status code"),
    ("response_excerpt", "Response"),
    ("additional_info", "Info"),
)
_EXCERPT_LIMIT = 500


@dataclass
class ErrorContext:
    """Where a render attempt failed: which stage, frame and worker."""
    stage: str
    operation: str
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    frame_number: Optional[int] = None
    worker_id: Optional[str] = None
    attempt: Optional[int] = None
    status_code: Optional[int] = None
    response_excerpt: Optional[str] = None
    additional_info: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def __str__(self) -> str:
        lines = [f"Stage: {self.stage}", f"Operation: {self.operation}", f"Timestamp: {self.timestamp}"]
        for name, label in _CONTEXT_LABELS:
            value = getattr(self, name)
            if value is None or value == {} or value == "":
                continue
            if name == "response_excerpt":
                value = value[:_EXCERPT_LIMIT]
            lines.append(f"{label}: {value}")
        return "\n".join(lines)


def classify_request_error(error: Exception) -> Type[TransientError]:
    """Map a ``requests`` exception onto the render error taxonomy.

    Args:
        error: Exception raised by the HTTP layer

    Returns:
        The error class to raise for this attempt
    """
    if isinstance(error, requests.exceptions.Timeout):
        return RenderTimeoutError
    return TransportError


def describe_error(error: BaseException) -> str:
    """Short ``Type: message`` description stored on a failed job."""
    message = str(error) or error.__class__.__name__
    return f"{type(error).__name__}: {message}"
