from __future__ import annotations

import asyncio
import logging
import os
import traceback
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TYPE_CHECKING

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.research.prompts import get_prompt_templates
from src.utils.config_loader import load_config

if TYPE_CHECKING:
    from src.trader.orchestrator import CycleOrchestrator

logger = logging.getLogger(__name__)

_orchestrator: CycleOrchestrator | None = None

# Thread pool for blocking history reads so they don't freeze the event loop.
_db_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="db_ro")


def set_orchestrator(orchestrator: CycleOrchestrator | None) -> None:
    global _orchestrator
    _orchestrator = orchestrator


def _require_orchestrator() -> CycleOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not ready")
    return _orchestrator


app = FastAPI(
    title="Aster Agents API",
    version="0.1.0",
)


@app.on_event("startup")
async def startup_event():
    if str(os.environ.get("AGENTS_DISABLE_ORCHESTRATOR", "")).strip() in {"1", "true", "TRUE", "yes", "YES"}:
        logger.info("Orchestrator startup skipped (AGENTS_DISABLE_ORCHESTRATOR set).")
        return
    if _orchestrator is not None:
        return

    # Import lazily so unit tests can run without building exchange clients.
    from src.trader.runner import build_orchestrator

    set_orchestrator(build_orchestrator(load_config()))
    logger.info("Orchestrator ready")


@app.on_event("shutdown")
async def shutdown_event():
    if _orchestrator is not None:
        await _orchestrator.close()
        set_orchestrator(None)
        logger.info("Orchestrator closed")


# Local dev defaults.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a clean JSON 500 for anything unhandled."""
    logger.error(f"Unhandled exception: {type(exc).__name__}: {exc}")
    logger.debug(traceback.format_exc())
    return JSONResponse(
        status_code=500,
        content={
            "detail": f"Internal server error: {type(exc).__name__}",
            "message": str(exc)[:200],
        },
    )


async def _run_in_executor(func, *args, timeout_seconds: float = 3.0, **kwargs):
    """
    Run a blocking function in the thread pool executor with a timeout.
    Returns None on timeout or failure so read endpoints stay responsive.
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(_db_executor, lambda: func(*args, **kwargs)),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning(f"History read timed out after {timeout_seconds}s: {func.__name__}")
        return None
    except Exception as e:
        logger.warning(f"History read failed: {func.__name__}: {e}")
        return None


def _symbol_from(payload: dict[str, Any] | None) -> str | None:
    if not payload:
        return None
    sym = str(payload.get("symbol") or "").strip().upper()
    return sym or None


@app.get("/api/health")
async def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "orchestrator_ready": _orchestrator is not None,
        "running": bool(_orchestrator.running) if _orchestrator is not None else False,
    }


@app.get("/api/status")
async def status() -> dict[str, Any]:
    return jsonable_encoder(_require_orchestrator().get_status())


@app.get("/api/history")
async def history(limit: int = Query(100, ge=1, le=1000)) -> list[dict[str, Any]]:
    orch = _require_orchestrator()
    entries = await _run_in_executor(orch.get_history)
    return jsonable_encoder([e.to_dict() for e in (entries or [])[:limit]])


@app.get("/api/positions")
async def positions() -> dict[str, Any]:
    orch = _require_orchestrator()
    past: list[dict[str, Any]] = []
    store = orch.deps.history
    if store is not None:
        past = await _run_in_executor(store.read_positions) or []
    return jsonable_encoder({
        "active": [p.to_dict() for p in orch.active_positions()],
        "history": past,
    })


@app.get("/api/prompts")
async def prompts() -> dict[str, str]:
    return get_prompt_templates()


@app.post("/api/start")
async def start(payload: dict[str, Any] | None = Body(default=None)) -> dict[str, Any]:
    orch = _require_orchestrator()
    started = await orch.start(_symbol_from(payload))
    return jsonable_encoder({"started": started, "status": orch.get_status()})


@app.post("/api/stop")
async def stop() -> dict[str, Any]:
    orch = _require_orchestrator()
    orch.stop()
    return {"stopped": True, "running": orch.running}


@app.post("/api/cycle")
async def cycle(payload: dict[str, Any] | None = Body(default=None)) -> dict[str, Any]:
    orch = _require_orchestrator()
    return jsonable_encoder(await orch.run_one_cycle(_symbol_from(payload)))
