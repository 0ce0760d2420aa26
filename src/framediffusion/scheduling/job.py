"""Job definitions for frame rendering."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from ..config import WorkerClass


class JobState(Enum):
    """Frame job lifecycle state."""
    PENDING = "pending"
    DISPATCHED = "dispatched"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PERMANENTLY_FAILED = "permanently_failed"


TERMINAL_STATES = (JobState.SUCCEEDED, JobState.PERMANENTLY_FAILED)


@dataclass
class FrameJob:
    """Render of a single video frame.

    ``input_path`` is the frame itself, or in sequential mode the previous
    frame's validated output. ``output_path`` is only set once the job has
    succeeded.
    """
    frame_index: int
    source_path: Path
    seed: int
    prompt_strength: float
    session_id: str = ""
    input_path: Optional[Path] = None
    state: JobState = JobState.PENDING
    attempt: int = 0
    assigned_worker: Optional[str] = None
    last_worker_class: Optional[WorkerClass] = None
    output_path: Optional[Path] = None
    last_error: Optional[str] = None
    chain_broken: bool = False
    dispatched_at: Optional[float] = None
    completed_at: Optional[float] = None

    def __post_init__(self):
        if self.frame_index < 1:
            raise ValueError(f"frame_index must be positive, got {self.frame_index}")
        if self.input_path is None:
            self.input_path = self.source_path

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def begin_attempt(self) -> None:
        """Count a dispatch attempt, including one that finds no worker."""
        self.attempt += 1
        self.assigned_worker = None
        self.last_worker_class = None

    def mark_dispatched(self, worker_id: str, worker_class: WorkerClass, now: float) -> None:
        """Record the worker chosen for the current attempt."""
        self.state = JobState.DISPATCHED
        self.assigned_worker = worker_id
        self.last_worker_class = worker_class
        self.dispatched_at = now
        self.completed_at = None

    def mark_succeeded(self, output_path: Path, now: float) -> None:
        self.state = JobState.SUCCEEDED
        self.output_path = output_path
        self.last_error = None
        self.completed_at = now

    def mark_failed(self, error: str, now: float) -> None:
        """Record a failed attempt. ``output_path`` stays unset."""
        self.state = JobState.FAILED
        self.output_path = None
        self.last_error = error
        self.completed_at = now

    def requeue(self) -> None:
        """Return a failed job to the pending pool for another round."""
        if self.state != JobState.FAILED:
            raise ValueError(f"Cannot requeue frame {self.frame_index} in state {self.state.value}")
        self.state = JobState.PENDING

    def mark_permanently_failed(self) -> None:
        self.state = JobState.PERMANENTLY_FAILED
        self.output_path = None

    def use_previous_output(self, previous_output: Path, prompt_strength: float) -> None:
        """Render from the predecessor's output instead of the frame itself."""
        self.input_path = previous_output
        self.prompt_strength = prompt_strength
        self.chain_broken = False

    def break_chain(self) -> None:
        """Fall back to the job's own frame after a predecessor failure."""
        self.input_path = self.source_path
        self.chain_broken = True

    def output_filename(self, extension: str) -> str:
        return f"{self.session_id}_{self.seed}.{extension}"


@dataclass
class RetryRound:
    """One dispatch pass of the retry coordinator.

    Attributes:
        number: 0-based round number
        attempted: Frame indices dispatched in this round
        failed: Frame indices whose attempt failed
        cpu_failure: Whether any failure came from a CPU worker
        started_at: Clock time the round started
        finished_at: Clock time the last job of the round resolved
    """
    number: int
    attempted: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    cpu_failure: bool = False
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def succeeded_count(self) -> int:
        return len(self.attempted) - len(self.failed)

    def record_failure(self, job: FrameJob) -> None:
        self.failed.append(job.frame_index)
        if job.last_worker_class is WorkerClass.CPU:
            self.cpu_failure = True


@dataclass
class RunResult:
    """Aggregate outcome of a run.

    Attributes:
        total: Number of jobs submitted
        succeeded: Number of jobs that ended SUCCEEDED
        permanently_failed: Sorted frame indices that ended PERMANENTLY_FAILED
        rounds_used: Highest number of retry rounds any job needed
        outputs: Frame index -> validated output path
        chain_breaks: Frame indices rendered from their own frame after a
            predecessor failed (sequential mode)
        rounds: Per-round bookkeeping
    """
    total: int
    succeeded: int
    permanently_failed: List[int] = field(default_factory=list)
    rounds_used: int = 0
    outputs: Dict[int, Path] = field(default_factory=dict)
    chain_breaks: List[int] = field(default_factory=list)
    rounds: List[RetryRound] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return not self.permanently_failed and self.succeeded == self.total

    @classmethod
    def from_jobs(
        cls,
        jobs: List[FrameJob],
        rounds: List[RetryRound],
        rounds_used: Optional[int] = None,
    ) -> "RunResult":
        outputs = {
            job.frame_index: job.output_path
            for job in jobs
            if job.state == JobState.SUCCEEDED and job.output_path is not None
        }
        return cls(
            total=len(jobs),
            succeeded=len(outputs),
            permanently_failed=sorted(
                job.frame_index for job in jobs if job.state == JobState.PERMANENTLY_FAILED
            ),
            rounds_used=rounds_used if rounds_used is not None else len(rounds),
            outputs=dict(sorted(outputs.items())),
            chain_breaks=sorted(job.frame_index for job in jobs if job.chain_broken),
            rounds=rounds,
        )

    def summary(self) -> str:
        lines = [
            f"Frames: {self.total}",
            f"Succeeded: {self.succeeded}",
            f"Permanently failed: {len(self.permanently_failed)}",
            f"Retry rounds: {self.rounds_used}",
        ]
        if self.permanently_failed:
            lines.append(
                "Failed frames: " + ", ".join(str(i) for i in self.permanently_failed)
            )
        if self.chain_breaks:
            lines.append(
                "Chain broken at: " + ", ".join(str(i) for i in self.chain_breaks)
            )
        return "\n".join(lines)
