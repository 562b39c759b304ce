from collections import deque
from functools import wraps
from logging import Logger
from math import ceil
from threading import Event, RLock, Thread
from time import perf_counter
from typing import Any, Callable

from netlease.config.config import config
from netlease.services.logger.logger import MainLogger

LIBS_CONF = config.get("libs")
METRICS_MAX_SIZE = int(LIBS_CONF.get("metrics_max_size"))
WORKER_JOIN_TIMEOUT = float(LIBS_CONF.get("worker_join_timeout"))
DEFAULT_PERCENTILES: list[int] = [5, 25, 50, 75, 95, 99]

libs_logger: Logger = MainLogger.get_logger(service_name="LIBS", log_level="info")


class Metrics:
    """Store timing samples and calculate percentiles (thread-safe)."""

    def __init__(self, max_size: int = METRICS_MAX_SIZE):
        """Initialize with max number of metrics."""
        self._lock = RLock()
        self._samples: deque[float] = deque(maxlen=max_size)

    def add_sample(self, duration: float) -> None:
        """Add a timing sample in milliseconds."""
        with self._lock:
            self._samples.append(duration)

    def get_count(self) -> int:
        """Return number of samples."""
        with self._lock:
            return len(self._samples)

    def get_percentile(self, percentile: float) -> float:
        """Get duration corresponding to the given percentile (nearest rank)."""
        if not 0 <= percentile <= 100:
            raise ValueError("Percentile must be between 0 and 100.")
        with self._lock:
            if not self._samples:
                return 0.0
            ordered = sorted(self._samples)
            rank = max(ceil(percentile / 100 * len(ordered)), 1)
            return float(ordered[rank - 1])

    def get_stats(self, percentiles: list[int] = DEFAULT_PERCENTILES) -> dict:
        """Return sample count and percentile stats."""
        with self._lock:
            stats: dict[str, float] = {"count": len(self._samples)}
            for percentile in percentiles:
                stats[f"p{percentile}"] = self.get_percentile(percentile)
            return stats

    def clear(self):
        """Clear samples."""
        with self._lock:
            self._samples.clear()


def measure_latency_decorator(metrics: Metrics):
    """Decorator to measure execution time and add to metrics object.

    Args:
        metrics: Metrics instance.

    """

    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            start: float = perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                metrics.add_sample((perf_counter() - start) * 1000)

        return wrapper

    return decorator


class RepeatingTask:
    """Runs callback every interval seconds on a daemon thread until cancelled.

    The first run happens one interval after start(). Exceptions raised by
    the callback are logged and do not stop the task.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Any],
        name: str = "repeating-task",
        logger: Logger = libs_logger,
    ):
        if interval <= 0:
            raise ValueError("Interval must be positive.")
        if not callable(callback):
            raise TypeError("callback must be callable")
        self.interval = float(interval)
        self.name = name
        self._callback = callback
        self._logger = logger
        self._stop_event = Event()
        self._worker: Thread | None = None

    @property
    def running(self) -> bool:
        return bool(self._worker and self._worker.is_alive())

    def start(self) -> "RepeatingTask":
        if self.running:
            raise RuntimeError("Already running.")
        self._stop_event.clear()
        self._worker = Thread(target=self._work, name=self.name, daemon=True)
        self._worker.start()
        return self

    def cancel(self, join_timeout: float = WORKER_JOIN_TIMEOUT) -> None:
        self._stop_event.set()
        if self._worker and self._worker.is_alive():
            self._worker.join(timeout=join_timeout)
        self._worker = None

    def _work(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self._callback()
            except Exception as err:
                self._logger.exception("%s failed: %s.", self.name, err)


class Scheduler:
    """Hands out started RepeatingTask instances."""

    def __init__(self, logger: Logger = libs_logger):
        self._logger = logger

    def schedule_repeating(
        self, interval: float, callback: Callable[[], Any], name: str = "repeating-task"
    ) -> RepeatingTask:
        return RepeatingTask(
            interval=interval, callback=callback, name=name, logger=self._logger
        ).start()
