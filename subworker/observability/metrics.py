"""Per-worker metrics (polls, deliveries, acks, failures, in-flight cycles)."""

from typing import Dict, Iterable


class Metrics:
    """In-memory counters and gauges for one worker.

    Names passed as ``counters``/``gauges`` start at zero so a snapshot always
    lists them, even before the first event.
    """

    def __init__(self, counters: Iterable[str] = (), gauges: Iterable[str] = ()) -> None:
        self._counters: Dict[str, int] = {name: 0 for name in counters}
        self._gauges: Dict[str, int] = {name: 0 for name in gauges}

    def increment(self, name: str, value: int = 1) -> None:
        self._counters[name] = self._counters.get(name, 0) + value

    def set_gauge(self, name: str, value: int) -> None:
        self._gauges[name] = value

    def get_counter(self, name: str) -> int:
        return self._counters.get(name, 0)

    def get_gauge(self, name: str) -> int:
        return self._gauges.get(name, 0)

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        """Return a copy of all counters and gauges."""
        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
        }
