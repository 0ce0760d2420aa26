"""Render client for Easy Diffusion compatible servers.

Performs one submit/poll/save cycle against a single worker. The client
knows nothing about pools, admission or retries; every failure is raised
as a :class:`~framediffusion.errors.TransientError` subclass for the
dispatcher to record.
"""

import base64
import binascii
import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

import requests

from .config import RenderSettings
from .errors import (
    ErrorContext,
    IntegrityError,
    RemoteFailureError,
    RenderTimeoutError,
    TransportError,
    classify_request_error,
)

logger = logging.getLogger(__name__)

DATA_URI_PATTERN = re.compile(r"data:image/[A-Za-z0-9.+-]+;base64,[A-Za-z0-9+/=\s]+")
DATA_URI_PREFIX = re.compile(r"^data:image/[^;]*;base64,")

INIT_IMAGE_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}

# Upper bound for one HTTP exchange inside the render timeout
MAX_HTTP_TIMEOUT = 30.0


class PollState(Enum):
    """Decoded state of one stream poll."""
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PollResult:
    """One stream poll, decoded once.

    Attributes:
        state: In progress, succeeded or failed
        payload: Image data URI when succeeded
        reason: Error message when failed
        step: Current sampling step, if reported
        total_steps: Total sampling steps, if reported
    """
    state: PollState
    payload: Optional[str] = None
    reason: Optional[str] = None
    step: Optional[int] = None
    total_steps: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.state != PollState.IN_PROGRESS

    @classmethod
    def in_progress(cls, step: Optional[int] = None, total_steps: Optional[int] = None) -> "PollResult":
        return cls(PollState.IN_PROGRESS, step=step, total_steps=total_steps)

    @classmethod
    def decode(cls, body: str) -> "PollResult":
        """Decode a stream response body.

        The stream may hold several concatenated JSON objects (progress
        updates followed by the final result); the last one decides. Bodies
        that are empty or cannot be parsed count as in progress, unless an
        image data URI is present.
        """
        if not body or not body.strip():
            return cls.in_progress()

        last: Optional[Dict[str, Any]] = None
        for obj in _iter_json_objects(body):
            if isinstance(obj, dict):
                last = obj

        if last is None:
            match = DATA_URI_PATTERN.search(body)
            if match:
                return cls(PollState.SUCCEEDED, payload=match.group(0))
            return cls.in_progress()

        status = last.get("status")
        if status == "failed":
            reason = last.get("detail") or last.get("error") or "render failed"
            return cls(PollState.FAILED, reason=str(reason))

        output = last.get("output")
        if status == "succeeded" or output:
            return cls(PollState.SUCCEEDED, payload=_first_image(output))

        step = last.get("step")
        total_steps = last.get("total_steps")
        return cls.in_progress(
            step=step if isinstance(step, int) else None,
            total_steps=total_steps if isinstance(total_steps, int) else None,
        )


def _iter_json_objects(text: str) -> Iterator[Any]:
    """Yield the JSON values of a concatenated JSON stream, stopping at garbage."""
    decoder = json.JSONDecoder()
    index = 0
    length = len(text)
    while index < length:
        while index < length and text[index].isspace():
            index += 1
        if index >= length:
            break
        try:
            obj, index = decoder.raw_decode(text, index)
        except ValueError:
            return
        yield obj


def _first_image(output: Any) -> Optional[str]:
    if isinstance(output, list) and output:
        first = output[0]
        if isinstance(first, dict):
            data = first.get("data")
            return data if isinstance(data, str) else None
        if isinstance(first, str):
            return first
    return None


def encode_init_image(path: Path) -> str:
    """Read an image file into a ``data:`` URI."""
    mime_type = INIT_IMAGE_MIME_TYPES.get(path.suffix.lower(), "image/png")
    try:
        data = path.read_bytes()
    except OSError as e:
        raise IntegrityError(f"Cannot read init image {path}: {e}")
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def build_payload(
    settings: RenderSettings,
    seed: int,
    prompt_strength: float,
    session_id: str,
    init_image: Optional[Path] = None,
) -> Dict[str, Any]:
    """Build the ``/render`` request body for one frame."""
    payload: Dict[str, Any] = {
        "prompt": settings.prompt,
        "seed": seed,
        "negative_prompt": settings.negative_prompt,
        "num_outputs": 1,
        "num_inference_steps": settings.num_inference_steps,
        "guidance_scale": settings.guidance_scale,
        "prompt_strength": prompt_strength,
        "width": settings.width,
        "height": settings.height,
        "vram_usage_level": "balanced",
        "sampler_name": settings.sampler_name,
        "use_stable_diffusion_model": settings.model,
        "clip_skip": False,
        "use_vae_model": "vae-ft-mse-840000-ema-pruned",
        "stream_progress_updates": True,
        "stream_image_progress": False,
        "show_only_filtered_image": True,
        "block_nsfw": False,
        "output_format": settings.output_format,
        "output_quality": settings.output_quality,
        "output_lossless": False,
        "metadata_output_format": "none",
        "save_to_disk_path": str(settings.output_dir),
        "original_prompt": settings.prompt,
        "active_tags": [],
        "inactive_tags": [],
        "session_id": session_id,
    }
    if init_image is not None:
        payload["init_image"] = encode_init_image(init_image)
    return payload


def decode_image_payload(payload: str) -> bytes:
    """Strip the ``data:image/...;base64,`` prefix and decode."""
    encoded = DATA_URI_PREFIX.sub("", payload.strip())
    try:
        return base64.b64decode("".join(encoded.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise IntegrityError(f"Image payload is not valid base64: {e}")


class RenderClient:
    """Synchronous client for one render request/poll/response cycle.

    Each thread gets its own ``requests.Session``; pass ``session`` to share
    one (tests inject a mock this way).

    Example:
        >>> client = RenderClient(poll_interval=2.0)
        >>> client.ping("http://localhost:9000", timeout=2.0)
        0.012
        >>> client.render("http://localhost:9000", payload, Path("out.jpeg"), timeout=120)
    """

    def __init__(
        self,
        poll_interval: float = 2.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.poll_interval = poll_interval
        self._session = session
        self._local = threading.local()
        self._sleep = sleep
        self._clock = clock

    def _get_session(self) -> requests.Session:
        """Get or create the requests session for the calling thread."""
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update({"Content-Type": "application/json"})
            self._local.session = session
        return session

    def ping(self, base_url: str, timeout: float) -> Optional[float]:
        """Probe ``GET /ping``.

        Returns:
            Round-trip latency in seconds, or None if unreachable
        """
        start = self._clock()
        try:
            response = self._get_session().get(f"{base_url}/ping", timeout=timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.debug(f"Health probe of {base_url} failed: {e}")
            return None
        return max(0.0, self._clock() - start)

    def submit(self, base_url: str, payload: Dict[str, Any], timeout: float) -> str:
        """Submit a render and return the stream path."""
        try:
            response = self._get_session().post(
                f"{base_url}/render", json=payload, timeout=min(timeout, MAX_HTTP_TIMEOUT)
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            error_class = classify_request_error(e)
            if error_class is RenderTimeoutError:
                raise RenderTimeoutError(f"Submit to {base_url} timed out: {e}")
            raise TransportError(
                f"Submit to {base_url} failed: {e}",
                ErrorContext(stage="render", operation="submit", worker_id=base_url),
            )
        except ValueError as e:
            raise TransportError(f"Submit to {base_url} returned invalid JSON: {e}")

        stream = data.get("stream") if isinstance(data, dict) else None
        task = data.get("task") if isinstance(data, dict) else None
        if not stream or task is None:
            raise TransportError(
                f"Submit to {base_url} returned no stream/task",
                ErrorContext(
                    stage="render",
                    operation="submit",
                    worker_id=base_url,
                    response_excerpt=str(data)[:500],
                ),
            )

        logger.debug(f"Submitted task {task} to {base_url}, stream {stream}")
        return str(stream)

    def poll(self, base_url: str, stream: str, timeout: float) -> PollResult:
        """Read the stream once. Transport errors raise TransportError."""
        url = stream if stream.startswith("http") else f"{base_url}{stream}"
        try:
            response = self._get_session().get(url, timeout=min(timeout, MAX_HTTP_TIMEOUT))
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Poll of {url} failed: {e}")
        return PollResult.decode(response.text)

    def wait_for_result(self, base_url: str, stream: str, deadline: float) -> PollResult:
        """Poll until a terminal state or the deadline passes.

        Raises:
            RenderTimeoutError: If no terminal state arrives in time
        """
        polls = 0
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise RenderTimeoutError(
                    f"No result from {base_url} after {polls} polls",
                    ErrorContext(stage="render", operation="poll", worker_id=base_url),
                )

            polls += 1
            try:
                result = self.poll(base_url, stream, remaining)
            except TransportError as e:
                logger.warning(f"{e}; still polling")
            else:
                if result.is_terminal:
                    return result
                if result.step is not None:
                    logger.debug(
                        f"{base_url}: step {result.step}/{result.total_steps or '?'}"
                    )

            self._sleep(min(self.poll_interval, max(0.0, deadline - self._clock())))

    def render(
        self,
        base_url: str,
        payload: Dict[str, Any],
        output_path: Path,
        timeout: float,
    ) -> Path:
        """Render one image and write it to ``output_path``.

        Args:
            base_url: Worker base URL (``http://host:port``)
            payload: ``/render`` request body
            output_path: Where to write the decoded image
            timeout: Seconds allowed for submit plus polling

        Returns:
            ``output_path``

        Raises:
            TransportError: Submit failed or returned no stream
            RenderTimeoutError: No terminal poll state within ``timeout``
            RemoteFailureError: The service reported a failure
            IntegrityError: Success without a decodable image payload
        """
        deadline = self._clock() + timeout
        stream = self.submit(base_url, payload, timeout)
        result = self.wait_for_result(base_url, stream, deadline)

        if result.state == PollState.FAILED:
            raise RemoteFailureError(
                f"Render failed on {base_url}: {result.reason}",
                ErrorContext(stage="render", operation="poll", worker_id=base_url),
            )

        if not result.payload:
            raise IntegrityError(f"Render on {base_url} succeeded without an image payload")

        return self.save_image(result.payload, output_path)

    @staticmethod
    def save_image(payload: str, output_path: Path) -> Path:
        """Decode a data URI payload and write it to disk."""
        image_bytes = decode_image_payload(payload)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(image_bytes)
        return output_path
