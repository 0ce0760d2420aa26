"""Configuration module for the FrameDiffusion scheduler."""
import random
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .errors import ConfigurationError

MAX_SEED = 2 ** 32 - 1

DEFAULT_MODEL = "sd-v1-5.safetensors"
VALID_OUTPUT_FORMATS = ("jpeg", "png", "webp")


class WorkerClass(Enum):
    """Hardware class of a render backend."""
    GPU = "gpu"
    CPU = "cpu"


@dataclass
class ClassLimits:
    """Admission and timeout constants for one worker class.

    Attributes:
        max_queue_depth: Maximum in-flight requests per worker
        recency_window: Seconds after a dispatch during which the
            busy rule applies
        busy_threshold: In-flight count above which a dispatch inside the
            recency window is rejected (0 = any recent dispatch rejects)
        request_timeout: Seconds allowed for submit + poll of one render
    """
    max_queue_depth: int
    recency_window: float
    busy_threshold: int
    request_timeout: float

    def __post_init__(self) -> None:
        if self.max_queue_depth < 1:
            raise ConfigurationError("max_queue_depth must be at least 1")
        if self.recency_window < 0:
            raise ConfigurationError("recency_window must be non-negative")
        if self.busy_threshold < 0:
            raise ConfigurationError("busy_threshold must be non-negative")
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be positive")

    @classmethod
    def gpu_defaults(cls) -> "ClassLimits":
        return cls(max_queue_depth=15, recency_window=5.0, busy_threshold=8, request_timeout=120.0)

    @classmethod
    def cpu_defaults(cls) -> "ClassLimits":
        return cls(max_queue_depth=1, recency_window=60.0, busy_threshold=0, request_timeout=600.0)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: "ClassLimits") -> "ClassLimits":
        """Create limits from a partial dictionary, filling gaps from ``base``."""
        return cls(
            max_queue_depth=int(data.get("max_queue_depth", base.max_queue_depth)),
            recency_window=float(data.get("recency_window", base.recency_window)),
            busy_threshold=int(data.get("busy_threshold", base.busy_threshold)),
            request_timeout=float(data.get("request_timeout", base.request_timeout)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_queue_depth": self.max_queue_depth,
            "recency_window": self.recency_window,
            "busy_threshold": self.busy_threshold,
            "request_timeout": self.request_timeout,
        }


def parse_port_list(value: Union[str, Sequence[int], None]) -> List[int]:
    """Parse a comma separated port list such as ``"9000,9001"``.

    Raises:
        ConfigurationError: If any entry is not a valid TCP port
    """
    if value is None:
        return []

    if isinstance(value, str):
        tokens = [token.strip() for token in value.split(",") if token.strip()]
    else:
        tokens = list(value)

    ports: List[int] = []
    for token in tokens:
        try:
            port = int(token)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid port '{token}' in port list")
        if not 1 <= port <= 65535:
            raise ConfigurationError(f"Port {port} out of range (1-65535)")
        if port in ports:
            raise ConfigurationError(f"Duplicate port {port} in port list")
        ports.append(port)
    return ports


@dataclass
class SchedulerConfig:
    """Configuration for the render scheduler.

    Attributes:
        gpu_ports: Ports of GPU-class render servers
        cpu_ports: Ports of CPU-class render servers
        host: Host the render servers listen on
        max_concurrent: System-wide cap on in-flight renders (None = auto)
        max_retries: Total dispatch attempts allowed per frame
        gpu_retry_backoff: Pause before the next round when only GPU
            workers failed
        cpu_retry_backoff: Pause before the next round when any failure
            came from a CPU worker
        min_output_bytes: Smallest output file accepted as valid
        verify_images: Also require the output to decode as an image
        poll_interval: Seconds between stream polls
        probe_timeout: Timeout of the /ping health probe
        health_cache_ttl: Seconds a probe result is reused
        admission_poll_interval: Max wait before re-selecting when all
            workers are busy
        dispatch_delay: Pause after each render before freeing its slot
        hybrid_soft_threshold: GPU queue depth above which hybrid mode
            offloads to CPU workers
        gpu_limits: Admission constants for GPU workers
        cpu_limits: Admission constants for CPU workers
    """

    gpu_ports: List[int] = field(default_factory=lambda: [9000])
    cpu_ports: List[int] = field(default_factory=lambda: [9010])
    host: str = "localhost"
    max_concurrent: Optional[int] = None
    max_retries: int = 3
    gpu_retry_backoff: float = 10.0
    cpu_retry_backoff: float = 120.0
    min_output_bytes: int = 1024
    verify_images: bool = True
    poll_interval: float = 2.0
    probe_timeout: float = 2.0
    health_cache_ttl: float = 1.0
    admission_poll_interval: float = 0.25
    dispatch_delay: float = 0.05
    hybrid_soft_threshold: int = 2
    gpu_limits: ClassLimits = field(default_factory=ClassLimits.gpu_defaults)
    cpu_limits: ClassLimits = field(default_factory=ClassLimits.cpu_defaults)

    def __post_init__(self) -> None:
        """Normalize port lists and validate configuration."""
        self.gpu_ports = parse_port_list(self.gpu_ports)
        self.cpu_ports = parse_port_list(self.cpu_ports)

        overlap = set(self.gpu_ports) & set(self.cpu_ports)
        if overlap:
            raise ConfigurationError(
                f"Ports cannot be both GPU and CPU class: {sorted(overlap)}"
            )

        if not self.host:
            raise ConfigurationError("host must not be empty")

        if self.max_concurrent is not None and self.max_concurrent < 1:
            raise ConfigurationError("max_concurrent must be at least 1")

        if self.max_retries < 1:
            raise ConfigurationError("max_retries must be at least 1")

        if self.gpu_retry_backoff < 0 or self.cpu_retry_backoff < 0:
            raise ConfigurationError("retry backoff must be non-negative")

        if self.min_output_bytes < 0:
            raise ConfigurationError("min_output_bytes must be non-negative")

        if self.poll_interval <= 0:
            raise ConfigurationError("poll_interval must be positive")

        if self.probe_timeout <= 0:
            raise ConfigurationError("probe_timeout must be positive")

        if self.health_cache_ttl < 0 or self.admission_poll_interval <= 0:
            raise ConfigurationError("health_cache_ttl and admission_poll_interval are invalid")

        if self.dispatch_delay < 0:
            raise ConfigurationError("dispatch_delay must be non-negative")

        if self.hybrid_soft_threshold < 0:
            raise ConfigurationError("hybrid_soft_threshold must be non-negative")

    def limits_for(self, worker_class: WorkerClass) -> ClassLimits:
        """Get the admission constants for a worker class."""
        if worker_class is WorkerClass.CPU:
            return self.cpu_limits
        return self.gpu_limits

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, ClassLimits):
                data[f.name] = value.to_dict()
            else:
                data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchedulerConfig":
        """Create configuration from dictionary, ignoring unknown keys."""
        valid_keys = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in valid_keys and v is not None}

        if isinstance(filtered.get("gpu_limits"), dict):
            filtered["gpu_limits"] = ClassLimits.from_dict(
                filtered["gpu_limits"], ClassLimits.gpu_defaults()
            )
        if isinstance(filtered.get("cpu_limits"), dict):
            filtered["cpu_limits"] = ClassLimits.from_dict(
                filtered["cpu_limits"], ClassLimits.cpu_defaults()
            )

        return cls(**filtered)


def default_session_id() -> str:
    """Session identifier in the ``YYYY-MM-DD_HHMM`` form."""
    return datetime.now().strftime("%Y-%m-%d_%H%M")


@dataclass
class RenderSettings:
    """Per-run parameters sent to the render service with every frame.

    ``seed`` of None means a fresh random seed per frame.
    """
    prompt: str
    model: str = DEFAULT_MODEL
    negative_prompt: str = ""
    num_inference_steps: int = 46
    guidance_scale: float = 7.5
    prompt_strength: float = 0.5
    width: int = 512
    height: int = 512
    seed: Optional[int] = None
    session_id: str = field(default_factory=default_session_id)
    output_dir: Path = field(default_factory=lambda: Path("./output"))
    smoothing_strength: float = 0.3
    sampler_name: str = "euler_a"
    output_format: str = "jpeg"
    output_quality: int = 95

    def __post_init__(self) -> None:
        """Validate render settings."""
        if not isinstance(self.output_dir, Path):
            self.output_dir = Path(self.output_dir)

        if not self.prompt or not self.prompt.strip():
            raise ConfigurationError("prompt is required")

        if self.num_inference_steps < 1:
            raise ConfigurationError("num_inference_steps must be at least 1")

        if self.guidance_scale <= 0:
            raise ConfigurationError("guidance_scale must be positive")

        if not 0.0 <= self.prompt_strength <= 1.0:
            raise ConfigurationError("prompt_strength must be between 0.0 and 1.0")

        if not 0.0 <= self.smoothing_strength <= 1.0:
            raise ConfigurationError(
                f"Smoothing strength must be between 0.0 and 1.0, got: {self.smoothing_strength}"
            )

        if self.width < 8 or self.height < 8:
            raise ConfigurationError("width and height must be at least 8")

        if self.seed is not None and not 0 <= self.seed <= MAX_SEED:
            raise ConfigurationError(f"seed must be between 0 and {MAX_SEED}")

        if self.output_format not in VALID_OUTPUT_FORMATS:
            raise ConfigurationError(
                f"Invalid output format '{self.output_format}'. "
                f"Valid formats: {list(VALID_OUTPUT_FORMATS)}"
            )

        if not 1 <= self.output_quality <= 100:
            raise ConfigurationError("output_quality must be between 1 and 100")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RenderSettings":
        """Create settings from dictionary, ignoring unknown keys."""
        valid_keys = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in valid_keys and v is not None})

    def seed_for_frame(self, rng: Optional[random.Random] = None) -> int:
        """Fixed seed if configured, otherwise a random 32-bit seed."""
        if self.seed is not None:
            return self.seed
        return (rng or random).randint(0, MAX_SEED)

    def frame_session_id(self, frame_index: int) -> str:
        return f"{self.session_id}_frame_{frame_index:04d}"

    def chained_prompt_strength(self) -> float:
        """Prompt strength used when the init image is the previous output."""
        return self.prompt_strength * (1.0 - self.smoothing_strength)


@dataclass(frozen=True)
class RunPolicy:
    """Execution mode of a run.

    Attributes:
        sequential: Chain frames so each one renders from the previous
            frame's output
        hybrid: Offload to CPU workers when GPU queues are deep
        cpu_fallback: Use CPU workers when no GPU worker is usable
    """
    sequential: bool = False
    hybrid: bool = False
    cpu_fallback: bool = False

    @property
    def uses_cpu(self) -> bool:
        return self.hybrid or self.cpu_fallback

    def describe(self) -> str:
        if self.hybrid:
            mode = "Hybrid GPU+CPU"
        elif self.cpu_fallback:
            mode = "GPU with CPU fallback"
        else:
            mode = "GPU only"
        if self.sequential:
            mode += " (sequential)"
        return mode
