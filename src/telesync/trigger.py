"""
On-demand HTTP trigger.

``POST /api/sync`` runs an incremental cycle, or a full bulk load when the
JSON body carries ``{"initialLoad": true}``.  Responses are plain text:
200 with a summary on success, 500 with the error message on failure.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import asyncpg
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import PlainTextResponse

from shared.db import health_check
from telesync.orchestrator import SyncOrchestrator

logger = logging.getLogger("telesync.trigger")


def parse_initial_load_flag(body: bytes) -> bool:
    """Return ``True`` if *body* asks for a bulk load.

    Empty bodies and unparseable JSON mean an incremental sync.
    """
    if not body or not body.strip():
        return False
    try:
        data: Any = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.debug("Trigger body is not JSON; defaulting to incremental")
        return False
    if not isinstance(data, dict):
        return False
    flag = data.get("initialLoad")
    if isinstance(flag, bool):
        return flag
    if isinstance(flag, str):
        return flag.strip().lower() == "true"
    if isinstance(flag, (int, float)):
        return flag != 0
    return False


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


router = APIRouter(prefix="/api", tags=["sync"])


@router.post("/sync", response_class=PlainTextResponse)
async def manual_sync(request: Request) -> PlainTextResponse:
    logger.info("Manual sync triggered")
    orchestrator = get_orchestrator(request)
    initial_load = parse_initial_load_flag(await request.body())
    try:
        if initial_load:
            await orchestrator.run_bulk_load()
            return PlainTextResponse("Initial load completed successfully")
        count = await orchestrator.run_incremental(manual=True)
        return PlainTextResponse(f"Manual sync completed. Processed {count} new records.")
    except Exception as exc:
        logger.exception("Error during manual sync")
        return PlainTextResponse(f"Error: {exc}", status_code=500)


@router.get("/healthz", response_class=PlainTextResponse, include_in_schema=False)
async def healthz(request: Request) -> PlainTextResponse:
    state_pool: Optional[asyncpg.Pool] = getattr(request.app.state, "state_pool", None)
    if state_pool is not None and not await health_check(state_pool):
        return PlainTextResponse("unavailable", status_code=503)
    return PlainTextResponse("ok")


def create_app(
    orchestrator: Optional[SyncOrchestrator] = None,
    state_pool: Optional[asyncpg.Pool] = None,
    lifespan: Any = None,
) -> FastAPI:
    """Build the trigger application.

    Args:
        orchestrator: Runs the requested sync.  May be left ``None`` when
                      *lifespan* assigns ``app.state.orchestrator`` at startup.
        state_pool: State database pool probed by ``/api/healthz``.
        lifespan: FastAPI lifespan handler (the service uses it to open
                  pools and run the scheduled loop next to the HTTP server).
    """
    app = FastAPI(title="telesync", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.state_pool = state_pool
    app.include_router(router)
    return app
