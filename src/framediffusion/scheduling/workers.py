"""Worker registry, load tracking and admission for render backends.

The registry is the only owner of per-worker mutable state. In-flight
counters and dispatch timestamps change only through :meth:`WorkerRegistry.admit`
and :meth:`WorkerRegistry.release`, both under one lock.
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..config import ClassLimits, RunPolicy, SchedulerConfig, WorkerClass
from ..errors import ConfigurationError, NoWorkersAvailableError
from ..utils.logging import get_logger

logger = get_logger(__name__)

# Probe round-trip thresholds in seconds
LOW_LATENCY = 0.1
MEDIUM_LATENCY = 0.5

Probe = Callable[[str, float], Optional[float]]


class LoadScore(Enum):
    """Coarse worker load derived from probe latency."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @classmethod
    def from_latency(cls, latency: Optional[float]) -> "LoadScore":
        if latency is None:
            return cls.HIGH
        if latency < LOW_LATENCY:
            return cls.LOW
        if latency < MEDIUM_LATENCY:
            return cls.MEDIUM
        return cls.HIGH


@dataclass
class WorkerEndpoint:
    """One render backend instance."""
    host: str
    port: int
    worker_class: WorkerClass
    limits: ClassLimits
    in_flight: int = 0
    last_dispatched_at: Optional[float] = None
    last_latency: Optional[float] = None
    last_probe_at: Optional[float] = None
    is_healthy: bool = False

    @property
    def id(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def __str__(self) -> str:
        return f"{self.worker_class.value.upper()} {self.id}"


class SelectionOutcome(Enum):
    """Result kind of a worker selection."""
    ADMITTED = "admitted"
    BUSY = "busy"
    UNAVAILABLE = "unavailable"


@dataclass
class Selection:
    outcome: SelectionOutcome
    endpoint: Optional[WorkerEndpoint] = None


class WorkerRegistry:
    """Registry of render workers with health, load and admission tracking.

    Example:
        >>> registry = WorkerRegistry(config, probe=client.ping)
        >>> registry.register(WorkerEndpoint("localhost", 9000, WorkerClass.GPU, config.gpu_limits))
        >>> selection = registry.select(RunPolicy())
        >>> try:
        ...     render(selection.endpoint)
        ... finally:
        ...     registry.release(selection.endpoint)
    """

    def __init__(
        self,
        config: SchedulerConfig,
        probe: Probe,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._probe = probe
        self._clock = clock
        self._endpoints: Dict[str, WorkerEndpoint] = {}
        self._lock = threading.Lock()
        self._capacity = threading.Condition(self._lock)

    @classmethod
    def from_config(
        cls,
        config: SchedulerConfig,
        policy: RunPolicy,
        probe: Probe,
        clock: Callable[[], float] = time.monotonic,
    ) -> "WorkerRegistry":
        """Build a registry with the configured GPU and (if used) CPU ports.

        Raises:
            ConfigurationError: If the policy leaves no worker to render on
        """
        registry = cls(config, probe, clock=clock)
        pools = [(WorkerClass.GPU, config.gpu_ports)]
        if policy.uses_cpu:
            pools.append((WorkerClass.CPU, config.cpu_ports))
        for worker_class, ports in pools:
            limits = config.limits_for(worker_class)
            for port in ports:
                registry.register(WorkerEndpoint(config.host, port, worker_class, limits))

        if not registry.endpoints():
            raise ConfigurationError(
                f"No render workers configured for mode '{policy.describe()}'"
            )
        return registry

    def register(self, endpoint: WorkerEndpoint) -> None:
        with self._lock:
            if endpoint.id in self._endpoints:
                raise ConfigurationError(f"Worker {endpoint.id} is already registered")
            self._endpoints[endpoint.id] = endpoint
        logger.debug("Registered worker", worker=endpoint.id, worker_class=endpoint.worker_class.value)

    def endpoints(self, worker_class: Optional[WorkerClass] = None) -> List[WorkerEndpoint]:
        with self._lock:
            return [
                e for e in self._endpoints.values()
                if worker_class is None or e.worker_class is worker_class
            ]

    # -------------------------------------------------------------------------
    # Health and load
    # -------------------------------------------------------------------------

    def healthy(self, endpoint: WorkerEndpoint, probe_timeout: Optional[float] = None) -> bool:
        """Probe the worker, reusing a result younger than ``health_cache_ttl``."""
        now = self._clock()
        with self._lock:
            if (
                endpoint.last_probe_at is not None
                and now - endpoint.last_probe_at < self.config.health_cache_ttl
            ):
                return endpoint.is_healthy

        timeout = probe_timeout if probe_timeout is not None else self.config.probe_timeout
        latency = self._probe(endpoint.url, timeout)

        with self._lock:
            endpoint.last_probe_at = self._clock()
            endpoint.last_latency = latency
            was_healthy = endpoint.is_healthy
            endpoint.is_healthy = latency is not None

        if was_healthy and latency is None:
            logger.warning("Worker stopped responding", worker=endpoint.id)
        return latency is not None

    def load_score(self, endpoint: WorkerEndpoint) -> LoadScore:
        """Load from the last probe latency; unreachable workers score HIGH."""
        if not self.healthy(endpoint):
            return LoadScore.HIGH
        with self._lock:
            return LoadScore.from_latency(endpoint.last_latency)

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    def _admissible(self, endpoint: WorkerEndpoint, now: float) -> bool:
        limits = endpoint.limits
        if endpoint.in_flight >= limits.max_queue_depth:
            return False

        recent = (
            endpoint.last_dispatched_at is not None
            and now - endpoint.last_dispatched_at < limits.recency_window
        )
        if recent and (limits.busy_threshold == 0 or endpoint.in_flight > limits.busy_threshold):
            return False
        return True

    def admit(self, endpoint: WorkerEndpoint) -> bool:
        """Atomically check admission and reserve a slot on the worker."""
        with self._lock:
            now = self._clock()
            if not self._admissible(endpoint, now):
                return False
            endpoint.in_flight += 1
            endpoint.last_dispatched_at = now
            return True

    def release(self, endpoint: WorkerEndpoint) -> None:
        """Give back a slot reserved by :meth:`admit` and wake waiters."""
        with self._capacity:
            if endpoint.in_flight > 0:
                endpoint.in_flight -= 1
            else:
                logger.warning("Release with no request in flight", worker=endpoint.id)
            self._capacity.notify_all()

    def in_flight(self, endpoint: WorkerEndpoint) -> int:
        with self._lock:
            return endpoint.in_flight

    def wait_for_capacity(self, timeout: float) -> None:
        """Block until a worker releases a slot or ``timeout`` elapses.

        Recency windows also expire with time alone, so callers re-select
        after every wakeup.
        """
        with self._capacity:
            self._capacity.wait(timeout)

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def _healthy_sorted(self, worker_class: WorkerClass) -> List[WorkerEndpoint]:
        candidates = [e for e in self.endpoints(worker_class) if self.healthy(e)]
        with self._lock:
            return sorted(candidates, key=lambda e: (e.in_flight, e.id))

    def candidates(self, policy: RunPolicy) -> List[WorkerEndpoint]:
        """Healthy workers eligible under ``policy``, in the order to try them."""
        gpus = self._healthy_sorted(WorkerClass.GPU)

        if policy.hybrid:
            best_queue = gpus[0].in_flight if gpus else None
            if best_queue is None or best_queue > self.config.hybrid_soft_threshold:
                return self._healthy_sorted(WorkerClass.CPU) + gpus
            return gpus

        if policy.cpu_fallback:
            cpus = self._healthy_sorted(WorkerClass.CPU)
            if gpus and self.load_score(gpus[0]) is LoadScore.HIGH:
                # A CPU answering faster than a struggling GPU goes first
                lighter = [c for c in cpus if self.load_score(c).value < LoadScore.HIGH.value]
                return lighter + gpus + [c for c in cpus if c not in lighter]
            return gpus + cpus

        return gpus

    def select(self, policy: RunPolicy) -> Selection:
        """Pick and admit a worker for one render.

        Returns:
            ADMITTED with the reserved endpoint, BUSY if healthy candidates
            exist but none admits, UNAVAILABLE if none is healthy
        """
        candidates = self.candidates(policy)
        if not candidates:
            return Selection(SelectionOutcome.UNAVAILABLE)

        for endpoint in candidates:
            if self.admit(endpoint):
                return Selection(SelectionOutcome.ADMITTED, endpoint)

        return Selection(SelectionOutcome.BUSY)

    def check_availability(self) -> Dict[WorkerClass, int]:
        """Probe every worker before a run.

        Returns:
            Healthy worker count per class

        Raises:
            NoWorkersAvailableError: If no worker answers
        """
        counts = {WorkerClass.GPU: 0, WorkerClass.CPU: 0}
        for endpoint in self.endpoints():
            if self.healthy(endpoint):
                counts[endpoint.worker_class] += 1
                logger.info(
                    "Worker online", worker=endpoint.id, worker_class=endpoint.worker_class.value,
                    load=self.load_score(endpoint).name,
                )
            else:
                logger.warning("Worker not responding", worker=endpoint.id)

        if not any(counts.values()):
            raise NoWorkersAvailableError(
                "No render servers are available. Start Easy Diffusion on the "
                f"configured ports: {', '.join(e.id for e in self.endpoints())}"
            )
        return counts

    def status(self) -> List[Dict[str, object]]:
        """Snapshot of every worker for display."""
        with self._lock:
            return [
                {
                    "id": e.id,
                    "class": e.worker_class.value,
                    "healthy": e.is_healthy,
                    "latency": e.last_latency,
                    "load": LoadScore.from_latency(e.last_latency).name if e.is_healthy else "DOWN",
                    "in_flight": e.in_flight,
                }
                for e in sorted(self._endpoints.values(), key=lambda e: e.id)
            ]
