"""Host hardware detection and concurrency auto-tuning.

The render calls themselves run on remote workers, but every in-flight
request costs the host an open connection, a polling thread and a decoded
image in memory. The default system-wide request cap and the pause between
dispatches are derived from the host's CPU core count and RAM.
"""
import logging
import platform
from dataclasses import dataclass
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 12
SEQUENTIAL_MAX_CONCURRENT = 1


@dataclass(frozen=True)
class HostInfo:
    """Summary of the machine driving the render pool."""
    os_name: str
    cpu_cores: int
    ram_total_gb: int


@dataclass(frozen=True)
class ConcurrencyProfile:
    """Auto-tuned dispatch settings for a host.

    Attributes:
        tier: Human-readable hardware tier
        max_concurrent: System-wide cap on simultaneous render requests
        dispatch_delay: Pause after each request before its slot is reused
    """
    tier: str
    max_concurrent: int
    dispatch_delay: float


def get_host_info() -> HostInfo:
    """Detect logical CPU cores and total RAM (whole GB, rounded down)."""
    cpu_cores = psutil.cpu_count(logical=True) or 1
    ram_total_gb = int(psutil.virtual_memory().total / (1024 ** 3))
    return HostInfo(
        os_name=platform.system(),
        cpu_cores=cpu_cores,
        ram_total_gb=ram_total_gb,
    )


def recommend_concurrency(host: HostInfo) -> ConcurrencyProfile:
    """Pick a concurrency tier for the host.

    Tiers:
        >= 16 cores and >= 32 GB: 20 concurrent requests
        >= 12 cores and >= 16 GB: 16 concurrent requests
        otherwise: 12 concurrent requests
    """
    if host.cpu_cores >= 16 and host.ram_total_gb >= 32:
        return ConcurrencyProfile("high-end", 20, 0.005)
    if host.cpu_cores >= 12 and host.ram_total_gb >= 16:
        return ConcurrencyProfile("high-performance", 16, 0.03)
    if host.cpu_cores >= 8 and host.ram_total_gb >= 8:
        return ConcurrencyProfile("good", DEFAULT_MAX_CONCURRENT, 0.05)
    return ConcurrencyProfile("baseline", DEFAULT_MAX_CONCURRENT, 0.05)


def resolve_dispatch_settings(
    max_concurrent: Optional[int],
    dispatch_delay: Optional[float],
    sequential: bool = False,
    host: Optional[HostInfo] = None,
) -> ConcurrencyProfile:
    """Fill in limiter capacity and dispatch delay for a run.

    Sequential mode always runs one request at a time. Explicit values win
    over detection; the host tier supplies whatever is left unset.
    """
    if sequential:
        max_concurrent = SEQUENTIAL_MAX_CONCURRENT
    if max_concurrent is not None and dispatch_delay is not None:
        return ConcurrencyProfile("configured", max_concurrent, dispatch_delay)

    host = host or get_host_info()
    detected = recommend_concurrency(host)
    profile = ConcurrencyProfile(
        detected.tier,
        detected.max_concurrent if max_concurrent is None else max_concurrent,
        detected.dispatch_delay if dispatch_delay is None else dispatch_delay,
    )
    logger.info(
        f"Detected {host.cpu_cores} CPU cores and {host.ram_total_gb} GB RAM "
        f"({profile.tier}): {profile.max_concurrent} concurrent requests, "
        f"{profile.dispatch_delay}s dispatch delay"
    )
    return profile
