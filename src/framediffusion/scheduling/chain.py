"""Sequential (init) mode: each frame renders from the previous output."""

from typing import Dict, List, Optional, Sequence

from ..errors import ConfigurationError
from ..utils.logging import get_logger
from .job import FrameJob, JobState, RetryRound
from .retry import RetryCoordinator, RoundRunner

logger = get_logger(__name__)


class DependencyChain:
    """Explicit predecessor links between frame jobs.

    A job becomes ready once its predecessor has resolved. A succeeded
    predecessor hands over its validated output as the next init image; a
    permanently failed one makes the job fall back to its own frame.
    """

    def __init__(self, jobs: Sequence[FrameJob], chained_prompt_strength: float):
        ordered = sorted(jobs, key=lambda job: job.frame_index)
        indices = [job.frame_index for job in ordered]
        if len(set(indices)) != len(indices):
            raise ConfigurationError("Frame indices must be unique within a run")

        self.jobs: List[FrameJob] = ordered
        self.chained_prompt_strength = chained_prompt_strength
        self._predecessors: Dict[int, Optional[FrameJob]] = {}
        previous: Optional[FrameJob] = None
        for job in ordered:
            self._predecessors[job.frame_index] = previous
            previous = job

    def predecessor(self, job: FrameJob) -> Optional[FrameJob]:
        return self._predecessors[job.frame_index]

    def is_ready(self, job: FrameJob) -> bool:
        previous = self.predecessor(job)
        return previous is None or previous.is_terminal

    def link_input(self, job: FrameJob) -> None:
        """Point the job's input at its predecessor's outcome.

        Raises:
            RuntimeError: If the predecessor has not resolved yet
        """
        previous = self.predecessor(job)
        if previous is None:
            return
        if previous.state == JobState.SUCCEEDED and previous.output_path is not None:
            job.use_previous_output(previous.output_path, self.chained_prompt_strength)
        elif previous.state == JobState.PERMANENTLY_FAILED:
            job.break_chain()
            logger.warning(
                f"Frame {previous.frame_index} failed permanently; "
                f"frame {job.frame_index} renders from its own frame",
                frame=job.frame_index, predecessor=previous.frame_index,
            )
        else:
            raise RuntimeError(
                f"Frame {job.frame_index} is not ready: frame {previous.frame_index} "
                f"is {previous.state.value}"
            )

    def run(self, coordinator: RetryCoordinator, run_round: RoundRunner) -> List[List[RetryRound]]:
        """Render the chain link by link, each with its own retry rounds.

        Returns:
            Retry rounds used per link, in frame order
        """
        rounds_per_link: List[List[RetryRound]] = []
        for job in self.jobs:
            self.link_input(job)
            rounds_per_link.append(coordinator.run([job], run_round))
        return rounds_per_link
