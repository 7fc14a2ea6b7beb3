from collections import Counter
from threading import Lock


class Metrics:
    """Process-wide counters plus gauges refreshed by the controller loop."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Counter[str] = Counter()
        self._gauges: dict[str, int] = {}

    def inc(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[key] += amount

    def set_gauge(self, key: str, value: int) -> None:
        with self._lock:
            self._gauges[key] = value

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {**self._counters, **self._gauges}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()


metrics = Metrics()
