"""Dispatcher: places frame jobs on workers through a bounded thread pool.

Every attempt follows the same path: take a limiter permit, select and
admit a worker, render within the worker class timeout, validate the
output, then release the worker slot and the permit whatever happened.
"""

import functools
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from PIL import Image

from ..client import RenderClient, build_payload
from ..config import RenderSettings, RunPolicy, SchedulerConfig
from ..errors import (
    ConfigurationError,
    ErrorContext,
    FatalError,
    IntegrityError,
    TransientError,
    TransportError,
    describe_error,
)
from ..utils.logging import get_logger
from .chain import DependencyChain
from .job import FrameJob, JobState, RunResult
from .limiter import ConcurrencyLimiter, Permit
from .retry import RetryCoordinator
from .workers import SelectionOutcome, WorkerEndpoint, WorkerRegistry

logger = get_logger(__name__)

JobCallback = Callable[[FrameJob, str], None]


def validate_output(path: Path, min_bytes: int, verify_image: bool = True) -> None:
    """Check a rendered file before the job may succeed.

    Raises:
        IntegrityError: If the file is missing, too small or not an image
    """
    if not path.is_file():
        raise IntegrityError(f"Output {path} was not written")

    size = path.stat().st_size
    if size < min_bytes:
        raise IntegrityError(f"Output {path} is {size} bytes, expected at least {min_bytes}")

    if verify_image:
        try:
            with Image.open(path) as image:
                image.verify()
        except (OSError, SyntaxError, ValueError) as e:
            raise IntegrityError(f"Output {path} is not a valid image: {e}")


class Dispatcher:
    """Runs frame jobs against the worker pool.

    Example:
        >>> dispatcher = Dispatcher(config, registry, RenderClient(), settings, limiter)
        >>> result = dispatcher.submit(jobs, RunPolicy(hybrid=True))
        >>> print(result.summary())
    """

    def __init__(
        self,
        config: SchedulerConfig,
        registry: WorkerRegistry,
        client: RenderClient,
        settings: RenderSettings,
        limiter: ConcurrencyLimiter,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.registry = registry
        self.client = client
        self.settings = settings
        self.limiter = limiter
        self._sleep = sleep
        self._clock = clock
        self._job_callbacks: List[JobCallback] = []

    def add_job_callback(self, callback: JobCallback) -> None:
        """Add callback for job events (job, event_type).

        Events: ``dispatched``, ``succeeded``, ``failed``,
        ``permanently_failed``.
        """
        self._job_callbacks.append(callback)

    def _notify_job(self, job: FrameJob, event: str) -> None:
        for callback in self._job_callbacks:
            try:
                callback(job, event)
            except Exception as e:
                logger.error(f"Job callback error: {e}", frame=job.frame_index, event=event)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def submit(self, jobs: Sequence[FrameJob], policy: RunPolicy) -> RunResult:
        """Render every job and return the aggregate outcome.

        Transient failures are retried in rounds; frames that never succeed
        are listed in ``RunResult.permanently_failed``.

        Raises:
            ConfigurationError: If frame indices repeat
        """
        jobs = list(jobs)
        indices = [job.frame_index for job in jobs]
        if len(set(indices)) != len(indices):
            raise ConfigurationError("Frame indices must be unique within a run")

        coordinator = RetryCoordinator.from_config(self.config, sleep=self._sleep, clock=self._clock)
        run_round = functools.partial(self.run_round, policy=policy)

        logger.info(
            f"Rendering {len(jobs)} frame(s)",
            mode=policy.describe(), max_concurrent=self.limiter.capacity,
        )

        if policy.sequential:
            chain = DependencyChain(jobs, self.settings.chained_prompt_strength())
            rounds_per_link = chain.run(coordinator, run_round)
            rounds = [r for link in rounds_per_link for r in link]
            rounds_used = max((len(link) for link in rounds_per_link), default=0)
        else:
            rounds = coordinator.run(jobs, run_round)
            rounds_used = len(rounds)

        for job in jobs:
            if job.state == JobState.PERMANENTLY_FAILED:
                self._notify_job(job, "permanently_failed")

        result = RunResult.from_jobs(jobs, rounds, rounds_used)
        logger.info(
            f"Run finished: {result.succeeded}/{result.total} succeeded",
            permanently_failed=len(result.permanently_failed), rounds=rounds_used,
        )
        return result

    def run_round(self, jobs: Sequence[FrameJob], policy: RunPolicy) -> None:
        """Dispatch a batch and return once every job has resolved."""
        if not jobs:
            return

        workers = min(self.limiter.capacity, len(jobs))
        futures: List[Future] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="render") as executor:
            for job in jobs:
                permit = self.limiter.acquire()
                try:
                    futures.append(executor.submit(self._attempt, job, policy, permit))
                except RuntimeError:
                    permit.release()
                    raise

        for future in futures:
            # Attempts record their own failures; only fatal errors surface here
            future.result()

    # -------------------------------------------------------------------------
    # Single attempt
    # -------------------------------------------------------------------------

    def _acquire_worker(self, job: FrameJob, policy: RunPolicy) -> WorkerEndpoint:
        """Select and admit a worker, waiting while all of them are busy."""
        while True:
            selection = self.registry.select(policy)
            if selection.outcome == SelectionOutcome.ADMITTED:
                return selection.endpoint
            if selection.outcome == SelectionOutcome.UNAVAILABLE:
                raise TransportError(
                    f"No healthy worker for frame {job.frame_index}",
                    ErrorContext(stage="dispatch", operation="select", frame_number=job.frame_index),
                )
            self.registry.wait_for_capacity(self.config.admission_poll_interval)

    def _attempt(self, job: FrameJob, policy: RunPolicy, permit: Permit) -> None:
        endpoint: Optional[WorkerEndpoint] = None
        job.begin_attempt()
        log = logger.bind(frame=job.frame_index, attempt=job.attempt)
        try:
            endpoint = self._acquire_worker(job, policy)
            job.mark_dispatched(endpoint.id, endpoint.worker_class, self._clock())
            self._notify_job(job, "dispatched")
            log.debug("Dispatched", worker=endpoint.id)

            output_path = self.render(job, endpoint)
            job.mark_succeeded(output_path, self._clock())
            self._notify_job(job, "succeeded")
            log.info(f"Frame rendered to {output_path.name}", worker=endpoint.id)

        except FatalError:
            raise
        except TransientError as e:
            self._record_failure(job, describe_error(e))
        except Exception as e:
            log.exception(f"Unexpected error rendering frame {job.frame_index}")
            self._record_failure(job, describe_error(e))
        finally:
            if endpoint is not None:
                if self.config.dispatch_delay > 0:
                    self._sleep(self.config.dispatch_delay)
                self.registry.release(endpoint)
            permit.release()

    def render(self, job: FrameJob, endpoint: WorkerEndpoint) -> Path:
        """Render one frame on an admitted worker and validate the output."""
        payload = build_payload(
            self.settings,
            seed=job.seed,
            prompt_strength=job.prompt_strength,
            session_id=job.session_id,
            init_image=job.input_path,
        )
        output_path = self.settings.output_dir / job.output_filename(self.settings.output_format)

        self.client.render(endpoint.url, payload, output_path, endpoint.limits.request_timeout)

        try:
            validate_output(output_path, self.config.min_output_bytes, self.config.verify_images)
        except IntegrityError:
            output_path.unlink(missing_ok=True)
            raise
        return output_path

    def _record_failure(self, job: FrameJob, error: str) -> None:
        job.mark_failed(error, self._clock())
        logger.warning(
            f"Attempt failed: {error}",
            frame=job.frame_index, attempt=job.attempt, worker=job.assigned_worker,
        )
        self._notify_job(job, "failed")
