"""DHCP counters and latency metrics.

`dhcp_metrics` is a module-level Metrics instance shared by the server and
relay message handlers; `DHCPStats` counters belong to one engine.
"""

from collections import Counter
from threading import RLock

from netlease.libs.libs import Metrics

dhcp_metrics = Metrics()


class DHCPStats:
    """Thread-safe named counters, e.g. received_total, sent_offer."""

    def __init__(self):
        self._lock = RLock()
        self._counters: Counter[str] = Counter()

    def increment(self, key: str, count: int = 1) -> None:
        with self._lock:
            self._counters[key] += count

    def get(self, key: str) -> int:
        with self._lock:
            return self._counters[key]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()
