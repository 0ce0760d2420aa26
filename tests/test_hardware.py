"""Tests for host detection and concurrency auto-tuning."""

from unittest.mock import MagicMock, patch

import pytest

from framediffusion.utils.hardware import (
    HostInfo,
    get_host_info,
    recommend_concurrency,
    resolve_dispatch_settings,
)


class TestHostInfo:
    """Tests for host information gathering."""

    def test_get_host_info_returns_dataclass(self):
        """Test that host info is sensible on the current machine."""
        info = get_host_info()
        assert isinstance(info, HostInfo)
        assert info.os_name is not None
        assert info.cpu_cores > 0
        assert info.ram_total_gb >= 0

    def test_ram_rounded_down_to_whole_gb(self):
        """Test RAM is reported in whole gigabytes."""
        with patch("framediffusion.utils.hardware.psutil") as mock_psutil:
            mock_psutil.cpu_count.return_value = 8
            mock_psutil.virtual_memory.return_value = MagicMock(total=int(15.9 * 1024 ** 3))
            info = get_host_info()

        assert info.cpu_cores == 8
        assert info.ram_total_gb == 15

    def test_unknown_core_count(self):
        """Test a core count psutil cannot determine falls back to one."""
        with patch("framediffusion.utils.hardware.psutil") as mock_psutil:
            mock_psutil.cpu_count.return_value = None
            mock_psutil.virtual_memory.return_value = MagicMock(total=8 * 1024 ** 3)
            assert get_host_info().cpu_cores == 1


class TestRecommendConcurrency:
    """Tests for concurrency tiers."""

    @pytest.mark.parametrize("cores,ram,expected", [
        (32, 64, 20),
        (16, 32, 20),
        (16, 31, 16),
        (12, 16, 16),
        (12, 15, 12),
        (8, 8, 12),
        (4, 4, 12),
    ])
    def test_tiers(self, cores, ram, expected):
        """Test tier boundaries are inclusive."""
        profile = recommend_concurrency(HostInfo("Linux", cores, ram))
        assert profile.max_concurrent == expected

    def test_high_end_uses_short_dispatch_delay(self):
        profile = recommend_concurrency(HostInfo("Linux", 24, 64))
        assert profile.tier == "high-end"
        assert profile.dispatch_delay < recommend_concurrency(HostInfo("Linux", 4, 4)).dispatch_delay


class TestResolveDispatchSettings:
    """Tests for limiter capacity and dispatch delay resolution."""

    def test_sequential_always_one(self):
        profile = resolve_dispatch_settings(16, 0.1, sequential=True)
        assert profile.max_concurrent == 1
        assert profile.dispatch_delay == 0.1

    def test_explicit_values_skip_detection(self):
        with patch("framediffusion.utils.hardware.get_host_info") as mock_detect:
            profile = resolve_dispatch_settings(5, 0.2)
        mock_detect.assert_not_called()
        assert profile.max_concurrent == 5
        assert profile.dispatch_delay == 0.2

    def test_detected_when_not_given(self):
        profile = resolve_dispatch_settings(None, None, host=HostInfo("Linux", 12, 16))
        assert profile.tier == "high-performance"
        assert profile.max_concurrent == 16
        assert profile.dispatch_delay == 0.03

    def test_explicit_capacity_keeps_tier_delay(self):
        profile = resolve_dispatch_settings(4, None, host=HostInfo("Linux", 24, 64))
        assert profile.max_concurrent == 4
        assert profile.dispatch_delay == 0.005

    def test_explicit_delay_keeps_tier_capacity(self):
        profile = resolve_dispatch_settings(None, 0, host=HostInfo("Linux", 24, 64))
        assert profile.max_concurrent == 20
        assert profile.dispatch_delay == 0

    def test_sequential_detects_delay_only(self):
        profile = resolve_dispatch_settings(None, None, sequential=True, host=HostInfo("Linux", 4, 4))
        assert profile.max_concurrent == 1
        assert profile.dispatch_delay == 0.05

    def test_detection_uses_psutil(self):
        with patch("framediffusion.utils.hardware.psutil") as mock_psutil:
            mock_psutil.cpu_count.return_value = 16
            mock_psutil.virtual_memory.return_value = MagicMock(total=32 * 1024 ** 3)
            profile = resolve_dispatch_settings(None, None)
        assert profile.max_concurrent == 20
        assert profile.dispatch_delay == 0.005
