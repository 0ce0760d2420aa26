"""Shared pytest fixtures for FrameDiffusion tests."""
import base64
import io
import logging
import os
import re
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest
from PIL import Image

from framediffusion.config import ClassLimits, RenderSettings, SchedulerConfig
from framediffusion.errors import RemoteFailureError
from framediffusion.scheduling import ConcurrencyLimiter, Dispatcher, WorkerRegistry


# ============================================================================
# Images
# ============================================================================

def generate_image_bytes(size: Tuple[int, int] = (64, 64), fmt: str = "PNG") -> bytes:
    """Random-noise image; compresses poorly so it clears the size threshold."""
    image = Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3))
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def make_data_uri(image_bytes: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"


@pytest.fixture
def image_bytes() -> bytes:
    return generate_image_bytes()


@pytest.fixture
def image_data_uri(image_bytes) -> str:
    return make_data_uri(image_bytes)


@pytest.fixture
def frames_dir(tmp_path) -> Path:
    """Directory with ten extracted frames, frame_0001.png .. frame_0010.png."""
    directory = tmp_path / "frames"
    directory.mkdir()
    for i in range(1, 11):
        (directory / f"frame_{i:04d}.png").write_bytes(generate_image_bytes((32, 32)))
    return directory


# ============================================================================
# Fakes
# ============================================================================

FRAME_SESSION = re.compile(r"_frame_(\d+)$")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProbe:
    """Health probe returning a fixed latency per worker URL."""

    def __init__(self, default_latency: Optional[float] = 0.01):
        self.default_latency = default_latency
        self.latencies: Dict[str, Optional[float]] = {}
        self.calls: List[str] = []

    def set(self, port: int, latency: Optional[float]) -> None:
        self.latencies[f"http://localhost:{port}"] = latency

    def __call__(self, url: str, timeout: float) -> Optional[float]:
        self.calls.append(url)
        return self.latencies.get(url, self.default_latency)


class RenderCall:
    def __init__(self, frame: int, url: str, payload: dict, start: float):
        self.frame = frame
        self.url = url
        self.payload = payload
        self.start = start
        self.end: Optional[float] = None


class FakeRenderClient:
    """Stand-in for RenderClient that writes a real image per render.

    ``failures`` maps a frame index to the exceptions raised on its first
    attempts; ``always_fail`` frames fail every attempt.
    """

    poll_interval = 0.01

    def __init__(
        self,
        delay: float = 0.0,
        failures: Optional[Dict[int, List[Exception]]] = None,
        always_fail: Optional[Set[int]] = None,
        output_bytes: Optional[bytes] = None,
    ):
        self.delay = delay
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.always_fail = set(always_fail or ())
        self.output_bytes = output_bytes
        self.calls: List[RenderCall] = []
        self.in_flight: Dict[str, int] = {}
        self.max_in_flight: Dict[str, int] = {}
        self.max_total_in_flight = 0
        self._total = 0
        self._lock = threading.Lock()

    def ping(self, url: str, timeout: float) -> Optional[float]:
        return 0.01

    def calls_for(self, frame: int) -> List[RenderCall]:
        return [c for c in self.calls if c.frame == frame]

    def render(self, base_url: str, payload: dict, output_path: Path, timeout: float) -> Path:
        frame = int(FRAME_SESSION.search(payload["session_id"]).group(1))
        call = RenderCall(frame, base_url, payload, time.monotonic())
        with self._lock:
            self.calls.append(call)
            self.in_flight[base_url] = self.in_flight.get(base_url, 0) + 1
            self.max_in_flight[base_url] = max(
                self.max_in_flight.get(base_url, 0), self.in_flight[base_url]
            )
            self._total += 1
            self.max_total_in_flight = max(self.max_total_in_flight, self._total)
            pending_failures = self.failures.get(frame)
            error = pending_failures.pop(0) if pending_failures else None

        try:
            if self.delay:
                time.sleep(self.delay)
            if frame in self.always_fail:
                raise RemoteFailureError(f"frame {frame} cannot be rendered")
            if error is not None:
                raise error
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_bytes(self.output_bytes or generate_image_bytes())
            return output_path
        finally:
            with self._lock:
                self.in_flight[base_url] -= 1
                self._total -= 1
            call.end = time.monotonic()


# ============================================================================
# Scheduler fixtures
# ============================================================================

@pytest.fixture
def fast_limits() -> Dict[str, ClassLimits]:
    """Default admission rules with the recency windows shrunk for tests."""
    return {
        "gpu": ClassLimits(max_queue_depth=15, recency_window=0.0, busy_threshold=8, request_timeout=5.0),
        "cpu": ClassLimits(max_queue_depth=1, recency_window=0.0, busy_threshold=0, request_timeout=5.0),
    }


@pytest.fixture
def make_config(fast_limits) -> Callable[..., SchedulerConfig]:
    """Build a SchedulerConfig with no backoff or dispatch delay."""

    def factory(**overrides) -> SchedulerConfig:
        values = dict(
            gpu_ports=[9000],
            cpu_ports=[9010],
            max_concurrent=4,
            gpu_retry_backoff=0,
            cpu_retry_backoff=0,
            dispatch_delay=0,
            admission_poll_interval=0.01,
            health_cache_ttl=60,
            gpu_limits=fast_limits["gpu"],
            cpu_limits=fast_limits["cpu"],
        )
        values.update(overrides)
        return SchedulerConfig(**values)

    return factory


@pytest.fixture
def render_settings(tmp_path) -> RenderSettings:
    return RenderSettings(
        prompt="a watercolor landscape",
        seed=1234,
        session_id="2025-01-01_1200",
        output_dir=tmp_path / "output",
    )


@pytest.fixture
def make_dispatcher(render_settings):
    """Wire a Dispatcher to a fake client and an always-healthy probe."""

    def factory(config: SchedulerConfig, client: FakeRenderClient, policy, settings=None, probe=None):
        registry = WorkerRegistry.from_config(config, policy, probe=probe or FakeProbe())
        limiter = ConcurrencyLimiter(config.max_concurrent or 1)
        return Dispatcher(config, registry, client, settings or render_settings, limiter)

    return factory


@pytest.fixture(autouse=True)
def reset_framediffusion_logging():
    """Undo handler setup done by CLI tests so caplog keeps working."""
    yield
    logger = logging.getLogger("framediffusion")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
