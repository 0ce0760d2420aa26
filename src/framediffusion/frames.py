"""Frame source boundary.

Frames are extracted ahead of time (``frame_0001.jpg``, ``frame_0002.jpg``,
...). This module turns such a directory into the ordered frame map and the
render jobs the scheduler consumes.
"""

import logging
import random
import re
from pathlib import Path
from typing import Dict, List, Optional

from .config import RenderSettings
from .errors import ConfigurationError
from .scheduling.job import FrameJob

logger = logging.getLogger(__name__)

FRAME_PATTERN = re.compile(r"^frame_(\d+)\.(jpe?g|png)$", re.IGNORECASE)


def find_frames(frames_dir: Path) -> Dict[int, Path]:
    """Map frame number to file for every ``frame_NNNN`` image in a directory."""
    frames_dir = Path(frames_dir)
    if not frames_dir.is_dir():
        raise ConfigurationError(f"Frames directory not found: {frames_dir}")

    frames: Dict[int, Path] = {}
    for path in frames_dir.iterdir():
        match = FRAME_PATTERN.match(path.name)
        if not match or not path.is_file():
            continue
        index = int(match.group(1))
        if index in frames:
            raise ConfigurationError(
                f"Frame {index} appears twice: {frames[index].name} and {path.name}"
            )
        frames[index] = path

    return dict(sorted(frames.items()))


def collect_frames(
    frames_dir: Path,
    start_frame: int = 1,
    end_frame: Optional[int] = None,
) -> Dict[int, Path]:
    """Select the frames to render.

    Args:
        frames_dir: Directory of pre-extracted frames
        start_frame: First frame number (1-based)
        end_frame: Last frame number, inclusive (None = highest numbered frame)

    Returns:
        Ordered mapping of frame number to image path

    Raises:
        ConfigurationError: If no frames exist or the range is invalid
    """
    frames = find_frames(frames_dir)
    if not frames:
        raise ConfigurationError(f"No frame_NNNN images found in {frames_dir}")

    last = max(frames)
    if start_frame < 1:
        raise ConfigurationError(f"Start frame must be at least 1, got {start_frame}")
    if start_frame > last:
        raise ConfigurationError(
            f"Start frame ({start_frame}) exceeds last frame ({last})"
        )

    if end_frame is None:
        end_frame = last
    elif end_frame > last:
        logger.warning(
            f"End frame ({end_frame}) exceeds last frame ({last}). Using {last} as end frame."
        )
        end_frame = last

    if end_frame < start_frame:
        raise ConfigurationError(
            f"End frame ({end_frame}) is before start frame ({start_frame})"
        )

    selected = {i: p for i, p in frames.items() if start_frame <= i <= end_frame}
    if not selected:
        raise ConfigurationError(f"No frames between {start_frame} and {end_frame} in {frames_dir}")
    logger.info(f"Selected frames {start_frame}-{end_frame} ({len(selected)} of {len(frames)})")
    return selected


def build_jobs(
    frames: Dict[int, Path],
    settings: RenderSettings,
    rng: Optional[random.Random] = None,
) -> List[FrameJob]:
    """Create one pending job per frame, with its seed and session id."""
    return [
        FrameJob(
            frame_index=index,
            source_path=path,
            seed=settings.seed_for_frame(rng),
            prompt_strength=settings.prompt_strength,
            session_id=settings.frame_session_id(index),
        )
        for index, path in sorted(frames.items())
    ]
