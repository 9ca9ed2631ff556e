"""HTTP server: health, workers (register, start, stop, remove), publish to the in-memory bus, stats."""

from dotenv import load_dotenv
load_dotenv()

import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from subworker.handlers import log_message
from subworker.memory_bus import DEFAULT_LOCK_DURATION_SEC, InMemoryBus
from subworker.observability import get_logger
from subworker.protocol import (
    HealthResponse,
    WorkerRegisteredResponse,
    WorkerRemovedResponse,
    WorkerStatus,
    stats_response,
    workers_list_response,
)
from subworker.registry import WorkerRegistry


def _lock_duration() -> float:
    try:
        return float(os.environ.get("MEMORY_BUS_LOCK_SECONDS", DEFAULT_LOCK_DURATION_SEC))
    except (ValueError, TypeError):
        return DEFAULT_LOCK_DURATION_SEC


bus = InMemoryBus(lock_duration=_lock_duration())
registry = WorkerRegistry(bus)
logger = get_logger("subworker.server")
_start_time: float = 0.0


# X-API-Key is compulsory: API_KEY must be set in env (or .env)
def _get_expected_api_key() -> str | None:
    return (os.environ.get("API_KEY") or "").strip() or None


class XAPIKeyMiddleware(BaseHTTPMiddleware):
    """Require X-API-Key header; API_KEY env must be set."""
    async def dispatch(self, request: Request, call_next):
        expected = _get_expected_api_key()
        if not expected:
            return JSONResponse(
                status_code=503,
                content={"error": "UNAUTHORIZED", "message": "X-API-Key required (API_KEY env not set)"},
            )
        key = (request.headers.get("X-API-Key") or "").strip()
        if key != expected:
            return JSONResponse(
                status_code=401,
                content={"error": "UNAUTHORIZED", "message": "invalid or missing X-API-Key"},
            )
        return await call_next(request)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _start_time
    _start_time = time.time()
    logger.info("server_startup", extra={"lock_duration": bus.lock_duration})
    yield
    registry.stop_all()
    await registry.wait_idle()
    logger.info("server_shutdown", extra={"workers": registry.count()})


app = FastAPI(title="Subscriber Worker API", lifespan=lifespan)
app.add_middleware(XAPIKeyMiddleware)

router = APIRouter(prefix="/api/v1")


def _not_found(topic: str, subscriber: str) -> JSONResponse:
    return JSONResponse(
        content={"error": "worker not found", "topic": topic, "subscriber": subscriber},
        status_code=404,
    )


# ---- Health ----

@router.get("/health")
def health() -> JSONResponse:
    """GET /health → { uptime_sec, workers, running }."""
    body = HealthResponse(
        uptime_sec=time.time() - _start_time,
        workers=registry.count(),
        running=registry.running_count(),
    ).to_dict()
    return JSONResponse(content=body, status_code=200)


# ---- Stats ----

@router.get("/stats")
def stats() -> JSONResponse:
    """GET /stats → { workers: { topic/sub: metrics }, subscriptions: { topic/sub: { active, locked } } }."""
    body = stats_response(registry.worker_stats(), bus.stats())
    return JSONResponse(content=body, status_code=200)


# ---- Workers ----

class WorkerCreateBody(BaseModel):
    topic: str
    subscriber: str
    non_repeatable: bool | None = None
    serialize_cycles: bool = False
    start: bool = True


@router.get("/workers")
def list_workers() -> JSONResponse:
    """GET /workers → { workers: [ { topic, subscriber, state, ... } ] }."""
    return JSONResponse(content=workers_list_response(registry.list_workers()), status_code=200)


@router.post("/workers")
async def create_worker(body: WorkerCreateBody) -> JSONResponse:
    """POST /workers { topic, subscriber } → 201 { status: created } or 409 Conflict. Starts the worker unless start=false."""
    topic = body.topic.strip()
    subscriber = body.subscriber.strip()
    if not topic or not subscriber:
        return JSONResponse(content={"error": "topic and subscriber are required"}, status_code=400)
    options: Dict[str, Any] = {"serialize_cycles": body.serialize_cycles}
    if body.non_repeatable is not None:
        options["non_repeatable"] = body.non_repeatable
    worker, created = registry.register(topic, subscriber, log_message, options)
    if not created:
        return JSONResponse(
            content={"error": "worker already exists", "topic": topic, "subscriber": subscriber},
            status_code=409,
        )
    bus.create_subscription(topic, subscriber)
    if body.start:
        worker.start()
    return JSONResponse(
        content=WorkerRegisteredResponse(status="created", topic=topic, subscriber=subscriber).to_dict(),
        status_code=201,
    )


@router.delete("/workers/{topic}/{subscriber}")
def delete_worker(topic: str, subscriber: str) -> JSONResponse:
    """DELETE /workers/{topic}/{subscriber} → 200 { status: deleted } or 404. Drops the bus subscription too."""
    if not registry.remove(topic, subscriber):
        return _not_found(topic, subscriber)
    bus.delete_subscription(topic, subscriber)
    return JSONResponse(
        content=WorkerRemovedResponse(status="deleted", topic=topic, subscriber=subscriber).to_dict(),
        status_code=200,
    )


@router.post("/workers/{topic}/{subscriber}/start")
async def start_worker(topic: str, subscriber: str) -> JSONResponse:
    """Start (or restart after stop) a registered worker; returns its status."""
    worker = registry.get(topic, subscriber)
    if worker is None:
        return _not_found(topic, subscriber)
    worker.start()
    return JSONResponse(content=WorkerStatus.from_dict(worker.status()).to_dict(), status_code=200)


@router.post("/workers/{topic}/{subscriber}/stop")
async def stop_worker(topic: str, subscriber: str) -> JSONResponse:
    """Stop future polls of a worker; in-flight cycles finish on their own."""
    worker = registry.get(topic, subscriber)
    if worker is None:
        return _not_found(topic, subscriber)
    worker.stop()
    return JSONResponse(content=WorkerStatus.from_dict(worker.status()).to_dict(), status_code=200)


# ---- Publish (in-memory bus input) ----

class PublishBody(BaseModel):
    body: Any
    properties: Dict[str, Any] = {}


@router.post("/topics/{topic}/messages")
def publish(topic: str, body: PublishBody) -> JSONResponse:
    """POST /topics/{topic}/messages { body, properties } → 202 { message_id } or 404 if no subscription."""
    message_id = bus.publish(topic, body.body, **body.properties)
    if message_id is None:
        return JSONResponse(content={"error": "topic has no subscription", "topic": topic}, status_code=404)
    return JSONResponse(content={"status": "accepted", "message_id": message_id}, status_code=202)


app.include_router(router)
