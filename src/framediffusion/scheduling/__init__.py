"""Job scheduling and worker-pool coordination for FrameDiffusion.

Provides worker admission and load tracking, bounded-concurrency dispatch,
retry rounds and the sequential dependency chain.
"""

from .job import FrameJob, JobState, RetryRound, RunResult
from .workers import LoadScore, Selection, SelectionOutcome, WorkerEndpoint, WorkerRegistry
from .limiter import ConcurrencyLimiter, Permit
from .retry import RetryCoordinator
from .chain import DependencyChain
from .dispatcher import Dispatcher, validate_output

__all__ = [
    "FrameJob",
    "JobState",
    "RetryRound",
    "RunResult",
    "LoadScore",
    "Selection",
    "SelectionOutcome",
    "WorkerEndpoint",
    "WorkerRegistry",
    "ConcurrencyLimiter",
    "Permit",
    "RetryCoordinator",
    "DependencyChain",
    "Dispatcher",
    "validate_output",
]
