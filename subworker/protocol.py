"""Response shapes for the HTTP control surface (health, workers, stats)."""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List


# ---- Health ----

@dataclass
class HealthResponse:
    """Response for GET /health."""
    uptime_sec: float
    workers: int
    running: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_sec": int(self.uptime_sec),
            "workers": self.workers,
            "running": self.running,
        }


# ---- Workers ----

@dataclass
class WorkerStatus:
    """One worker as reported by GET /workers."""
    topic: str
    subscriber: str
    state: str
    restart_attempts: int
    in_flight: int
    peek_lock: bool
    poll_interval_ms: int
    serialize_cycles: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerStatus":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WorkerRegisteredResponse:
    """Response for POST /workers (201 Created)."""
    status: str = "created"
    topic: str = ""
    subscriber: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WorkerRemovedResponse:
    """Response for DELETE /workers/{topic}/{subscriber} (200 OK)."""
    status: str = "deleted"
    topic: str = ""
    subscriber: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def workers_list_response(workers: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Response for GET /workers."""
    return {"workers": [WorkerStatus.from_dict(w).to_dict() for w in workers]}


def stats_response(
    worker_stats: Dict[str, Dict[str, Dict[str, int]]],
    bus_stats: Dict[str, Dict[str, int]],
) -> Dict[str, Any]:
    """Response for GET /stats."""
    return {"workers": worker_stats, "subscriptions": bus_stats}
