"""Tests for frame discovery and job construction."""
import random

import pytest

from framediffusion.config import RenderSettings
from framediffusion.errors import ConfigurationError
from framediffusion.frames import build_jobs, collect_frames, find_frames
from framediffusion.scheduling.job import JobState


class TestFindFrames:
    """Tests for find_frames."""

    def test_finds_numbered_frames_in_order(self, frames_dir):
        frames = find_frames(frames_dir)
        assert list(frames) == list(range(1, 11))
        assert frames[3].name == "frame_0003.png"

    def test_ignores_other_files(self, tmp_path):
        (tmp_path / "frame_0001.jpg").write_bytes(b"x")
        (tmp_path / "frame_0002.JPEG").write_bytes(b"x")
        (tmp_path / "thumbnail.jpg").write_bytes(b"x")
        (tmp_path / "frame_0003.txt").write_bytes(b"x")
        (tmp_path / "frame_0004.png").mkdir()

        assert list(find_frames(tmp_path)) == [1, 2]

    def test_duplicate_frame_number(self, tmp_path):
        (tmp_path / "frame_0001.jpg").write_bytes(b"x")
        (tmp_path / "frame_1.png").write_bytes(b"x")
        with pytest.raises(ConfigurationError, match="appears twice"):
            find_frames(tmp_path)

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            find_frames(tmp_path / "nope")


class TestCollectFrames:
    """Tests for frame range selection."""

    def test_defaults_to_all_frames(self, frames_dir):
        assert len(collect_frames(frames_dir)) == 10

    def test_range(self, frames_dir):
        assert list(collect_frames(frames_dir, start_frame=3, end_frame=5)) == [3, 4, 5]

    def test_end_frame_clamped(self, frames_dir, caplog):
        frames = collect_frames(frames_dir, start_frame=8, end_frame=50)
        assert list(frames) == [8, 9, 10]
        assert "exceeds last frame (10)" in caplog.text

    @pytest.mark.parametrize("start,end", [(0, None), (11, None), (5, 4)])
    def test_invalid_range(self, frames_dir, start, end):
        with pytest.raises(ConfigurationError):
            collect_frames(frames_dir, start_frame=start, end_frame=end)

    def test_offset_numbering_uses_highest_index(self, tmp_path):
        for i in range(2, 12):
            (tmp_path / f"frame_{i:04d}.png").write_bytes(b"x")

        assert list(collect_frames(tmp_path, start_frame=11)) == [11]
        assert list(collect_frames(tmp_path, start_frame=9, end_frame=20)) == [9, 10, 11]
        with pytest.raises(ConfigurationError, match="exceeds last frame"):
            collect_frames(tmp_path, start_frame=12)

    def test_range_inside_gap(self, tmp_path):
        for i in (1, 2, 8, 9):
            (tmp_path / f"frame_{i:04d}.png").write_bytes(b"x")

        assert list(collect_frames(tmp_path, start_frame=2, end_frame=8)) == [2, 8]
        with pytest.raises(ConfigurationError, match="No frames between 4 and 6"):
            collect_frames(tmp_path, start_frame=4, end_frame=6)

    def test_empty_directory(self, tmp_path):
        with pytest.raises(ConfigurationError, match="No frame_NNNN images"):
            collect_frames(tmp_path)


class TestBuildJobs:
    """Tests for build_jobs."""

    def test_one_pending_job_per_frame(self, frames_dir, render_settings):
        jobs = build_jobs(collect_frames(frames_dir, 1, 3), render_settings)

        assert [job.frame_index for job in jobs] == [1, 2, 3]
        assert all(job.state == JobState.PENDING for job in jobs)
        assert all(job.attempt == 0 for job in jobs)
        assert jobs[0].input_path == jobs[0].source_path
        assert jobs[1].session_id == "2025-01-01_1200_frame_0002"
        assert jobs[1].seed == 1234
        assert jobs[1].prompt_strength == 0.5

    def test_random_seed_per_frame(self, frames_dir, tmp_path):
        settings = RenderSettings(prompt="x", output_dir=tmp_path)
        jobs = build_jobs(collect_frames(frames_dir), settings, rng=random.Random(7))

        seeds = [job.seed for job in jobs]
        assert len(set(seeds)) > 1
        expected = random.Random(7)
        assert seeds == [expected.randint(0, 2 ** 32 - 1) for _ in range(10)]
