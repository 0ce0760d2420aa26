"""Bounded retry rounds with class-aware backoff."""

import time
from typing import Callable, List, Sequence

from ..config import SchedulerConfig
from ..utils.logging import get_logger
from .job import FrameJob, JobState, RetryRound

logger = get_logger(__name__)

RoundRunner = Callable[[List[FrameJob]], None]


class RetryCoordinator:
    """Runs a job set through at most ``max_retries`` dispatch rounds.

    Round 0 dispatches every pending job; each later round dispatches only
    the previous round's failures. A round must resolve every one of its
    jobs before the next one starts. Jobs still failing after the last
    round become PERMANENTLY_FAILED.
    """

    def __init__(
        self,
        max_retries: int = 3,
        gpu_backoff: float = 10.0,
        cpu_backoff: float = 120.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = max_retries
        self.gpu_backoff = gpu_backoff
        self.cpu_backoff = cpu_backoff
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: SchedulerConfig,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> "RetryCoordinator":
        return cls(
            max_retries=config.max_retries,
            gpu_backoff=config.gpu_retry_backoff,
            cpu_backoff=config.cpu_retry_backoff,
            sleep=sleep,
            clock=clock,
        )

    def backoff_for(self, retry_round: RetryRound) -> float:
        """CPU backends need a long recovery; GPU failures retry sooner."""
        return self.cpu_backoff if retry_round.cpu_failure else self.gpu_backoff

    def run(self, jobs: Sequence[FrameJob], run_round: RoundRunner) -> List[RetryRound]:
        """Dispatch ``jobs`` in rounds until all succeed or rounds run out.

        Args:
            jobs: Jobs to render; only PENDING ones are dispatched
            run_round: Dispatches a batch and returns once every job in it
                is SUCCEEDED or FAILED

        Returns:
            Bookkeeping for each round that ran
        """
        pending = [job for job in jobs if job.state == JobState.PENDING]
        rounds: List[RetryRound] = []

        for number in range(self.max_retries):
            if not pending:
                break

            if number > 0:
                backoff = self.backoff_for(rounds[-1])
                logger.info(
                    f"Retry round {number}: waiting {backoff:g}s for backends to recover",
                    round=number, frames=len(pending),
                )
                self._sleep(backoff)
                for job in pending:
                    job.requeue()

            retry_round = RetryRound(
                number=number,
                attempted=[job.frame_index for job in pending],
                started_at=self._clock(),
            )
            run_round(pending)
            retry_round.finished_at = self._clock()

            failed = [job for job in pending if job.state != JobState.SUCCEEDED]
            for job in failed:
                if job.state != JobState.FAILED:
                    # A runner that leaves a job unresolved counts it as failed
                    job.mark_failed(f"left in state {job.state.value}", retry_round.finished_at)
                retry_round.record_failure(job)
            rounds.append(retry_round)

            logger.debug(
                f"Round {number} finished",
                round=number, succeeded=retry_round.succeeded_count, attempted=len(retry_round.attempted),
            )
            pending = failed

        for job in pending:
            job.mark_permanently_failed()
            logger.error(
                f"Frame {job.frame_index} failed after {job.attempt} attempt(s): {job.last_error}",
                frame=job.frame_index, attempts=job.attempt,
            )

        return rounds
