"""In-memory registry of workers, one per (topic, subscriber) pair."""

from typing import Any, Dict, List, Mapping, Optional, Tuple

from subworker.bus import BusClient, Handler
from subworker.worker import Worker, WorkerState


class WorkerRegistry:
    """Owns independent workers that share only the injected bus client."""

    def __init__(self, bus: BusClient) -> None:
        self._bus = bus
        self._workers: Dict[Tuple[str, str], Worker] = {}

    @property
    def bus(self) -> BusClient:
        return self._bus

    def register(
        self,
        topic: str,
        subscriber: str,
        callback: Optional[Handler],
        options: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[Worker, bool]:
        """
        Create a worker only if the pair is not registered yet.
        Returns (worker, True) on success, (existing worker, False) on conflict.
        """
        key = (topic, subscriber)
        if key in self._workers:
            return self._workers[key], False
        worker = Worker(topic, subscriber, callback, self._bus, options)
        self._workers[key] = worker
        return worker, True

    def get(self, topic: str, subscriber: str) -> Optional[Worker]:
        """Return worker by pair or None."""
        return self._workers.get((topic, subscriber))

    def remove(self, topic: str, subscriber: str) -> bool:
        """
        Stop and forget the worker. In-flight cycles are left to finish.
        Returns True if the worker existed.
        """
        worker = self._workers.pop((topic, subscriber), None)
        if worker is None:
            return False
        worker.stop()
        return True

    def start_all(self) -> None:
        for worker in self._workers.values():
            worker.start()

    def stop_all(self) -> None:
        for worker in self._workers.values():
            worker.stop()

    async def wait_idle(self) -> None:
        """Wait for every worker's in-flight cycles to settle."""
        for worker in list(self._workers.values()):
            await worker.wait_idle()

    def list_workers(self) -> List[Dict[str, Any]]:
        """Return the status dict of each worker."""
        return [worker.status() for worker in self._workers.values()]

    def worker_stats(self) -> Dict[str, Dict[str, Dict[str, int]]]:
        """Return { "topic/subscriber": metrics snapshot } for the stats endpoint."""
        return {
            f"{topic}/{subscriber}": worker.metrics.snapshot()
            for (topic, subscriber), worker in self._workers.items()
        }

    def count(self) -> int:
        return len(self._workers)

    def running_count(self) -> int:
        return sum(1 for w in self._workers.values() if w.state is WorkerState.RUNNING)
