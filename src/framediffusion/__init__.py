"""FrameDiffusion - render video frames through a pool of Easy Diffusion servers."""
__version__ = "0.4.0"

from .config import (
    ClassLimits,
    RenderSettings,
    RunPolicy,
    SchedulerConfig,
    WorkerClass,
    parse_port_list,
)

from .errors import (
    FrameDiffusionError,
    TransientError,
    TransportError,
    RenderTimeoutError,
    RemoteFailureError,
    IntegrityError,
    FatalError,
    ConfigurationError,
    NoWorkersAvailableError,
    ErrorContext,
)

from .client import PollResult, PollState, RenderClient

from .scheduling import (
    ConcurrencyLimiter,
    DependencyChain,
    Dispatcher,
    FrameJob,
    JobState,
    LoadScore,
    RetryCoordinator,
    RetryRound,
    RunResult,
    WorkerEndpoint,
    WorkerRegistry,
)

from .frames import build_jobs, collect_frames

__all__ = [
    "__version__",
    # Configuration
    "ClassLimits",
    "RenderSettings",
    "RunPolicy",
    "SchedulerConfig",
    "WorkerClass",
    "parse_port_list",
    # Errors
    "FrameDiffusionError",
    "TransientError",
    "TransportError",
    "RenderTimeoutError",
    "RemoteFailureError",
    "IntegrityError",
    "FatalError",
    "ConfigurationError",
    "NoWorkersAvailableError",
    "ErrorContext",
    # Render client
    "PollResult",
    "PollState",
    "RenderClient",
    # Scheduling
    "ConcurrencyLimiter",
    "DependencyChain",
    "Dispatcher",
    "FrameJob",
    "JobState",
    "LoadScore",
    "RetryCoordinator",
    "RetryRound",
    "RunResult",
    "WorkerEndpoint",
    "WorkerRegistry",
    # Frames
    "build_jobs",
    "collect_frames",
]
