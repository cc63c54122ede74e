"""FastAPI application for the keyrelay credential pool."""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional, Tuple

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request

from keyrelay.admin import admin_router, coordinator_router
from keyrelay.chat_routes import chat_router
from keyrelay.config import load_config
from keyrelay.coordinator import Coordinator
from keyrelay.credential_pool import CredentialPool
from keyrelay.errors import RelayError
from keyrelay.files import GeminiFileResolver
from keyrelay.orchestrator import SessionOrchestrator
from keyrelay.pool_client import LocalPoolClient, PoolClient, RemotePoolClient
from keyrelay.reporting import OutcomeReporter
from keyrelay.response_client import ResponseClient
from keyrelay.sessions import SessionStore
from keyrelay.store import create_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle: startup and shutdown."""
    config = load_config()

    logging.basicConfig(level=getattr(logging, config.log_level))

    http_client = httpx.AsyncClient(
        base_url=config.gemini_base_url,
        timeout=httpx.Timeout(10.0, read=300.0, write=30.0),
        limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
    )

    coordinator: Optional[Coordinator] = None
    coordinator_client = None
    pool_client: PoolClient
    if config.coordinator_url:
        # The pool lives in the coordinator process; none is kept here.
        coordinator_client = httpx.AsyncClient(
            base_url=config.coordinator_url, timeout=httpx.Timeout(10.0)
        )
        pool_client = RemotePoolClient(
            coordinator_client, cache_ttl_seconds=config.cache_ttl_seconds
        )
        logger.info("Using remote coordinator at %s", config.coordinator_url)
    else:
        store = create_store(config.store_path)
        pool = CredentialPool(store, unhealthy_threshold=config.unhealthy_threshold)
        await pool.ensure_configured(config.api_keys)
        coordinator = Coordinator(pool, store)
        pool_client = LocalPoolClient(coordinator)
        logger.info("Coordinator started with %d keys", len(pool.pool.records))

    reporter = OutcomeReporter(pool_client)
    sessions = SessionStore(
        pool_client,
        session_timeout_minutes=config.session_timeout_minutes,
        max_sessions=config.max_sessions,
    )
    orchestrator = SessionOrchestrator(
        sessions,
        ResponseClient(pool_client, http_client, config, reporter),
        pool_client,
        reporter,
        max_history_messages=config.max_history_messages,
        file_resolver=GeminiFileResolver(http_client, pool_client, config),
    )

    app.state.config = config
    app.state.http_client = http_client
    app.state.coordinator = coordinator
    app.state.pool_client = pool_client
    app.state.reporter = reporter
    app.state.sessions = sessions
    app.state.orchestrator = orchestrator

    await sessions.start_cleanup_task(config.cleanup_interval_seconds)
    logger.info("keyrelay started")

    yield

    await sessions.stop_cleanup_task()
    await reporter.close()
    await http_client.aclose()
    if coordinator_client is not None:
        await coordinator_client.aclose()
    logger.info("keyrelay stopped")


app = FastAPI(title="keyrelay Credential Pool", lifespan=lifespan)

app.include_router(admin_router)
app.include_router(coordinator_router)
app.include_router(chat_router)


async def _pool_counts(app: FastAPI) -> Tuple[int, int]:
    """Available and total credentials, from the coordinator that owns the pool."""
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is not None:
        status = coordinator.pool.get_status()
        return status["available_keys"], status["total_keys"]

    pool_client = app.state.pool_client
    try:
        await pool_client.refresh()
    except (RelayError, httpx.HTTPError) as e:
        logger.warning("Coordinator unreachable: %s", e)
        raise HTTPException(status_code=503, detail="Coordinator unreachable")
    records = pool_client.cached_snapshot["records"]
    available = sum(
        1 for record in records if record["healthy"] and not record["quota_exhausted"]
    )
    return available, len(records)


@app.get("/")
async def root(request: Request) -> Dict[str, object]:
    available, total = await _pool_counts(request.app)
    return {
        "service": "keyrelay Credential Pool",
        "status": "running",
        "keys_available": available,
        "total_keys": total,
    }


@app.get("/health")
async def health_check(request: Request) -> Dict[str, object]:
    """Health check endpoint with credential pool status."""
    available, total = await _pool_counts(request.app)
    return {
        "status": "healthy",
        "keys_available": available,
        "total_keys": total,
        "active_sessions": request.app.state.sessions.active_session_count,
    }


def run() -> None:
    config = load_config()
    uvicorn.run("keyrelay.main:app", host=config.host, port=config.port)


if __name__ == "__main__":
    run()
