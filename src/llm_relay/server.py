"""
server.py — FastAPI application for the chat relay.

Exposes the browser client's API:
  GET    /api/health           — liveness + whether an upstream key is set
  POST   /api/chat             — dispatch one chat request upstream
  GET    /api/models           — chat-capable model catalogue (?refresh=1)
  GET    /api/ratelimits       — latest upstream quota telemetry
  GET    /api/logs             — recent call log entries (?limit=&kind=&since=)
  DELETE /api/logs             — clear the call log
  /api/prompts/*               — prompt library (see prompts.py)
  /api/conversations/save      — transcript archive (see conversations.py)

Static files from ``public/`` are served at ``/`` when the directory exists.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .config import settings
from .conversations import router as conversations_router
from .errors import InvalidInput, RelayError
from .models import ChatRequest, LogKind
from .prompts import router as prompts_router
from .relay import Relay

logger = logging.getLogger(__name__)

_UNLOGGED_PREFIX = "/api/logs"

# ── Singleton relay instance ──────────────────────────────────────────────────
_relay: Relay | None = None  # pylint: disable=invalid-name


def get_relay() -> Relay:
    """Return the singleton Relay instance.

    Raises RuntimeError if the relay has not been initialised via the
    FastAPI lifespan manager.
    """
    if _relay is None:
        raise RuntimeError("Relay not initialised, check lifespan startup")
    return _relay


def _mount_public(application: FastAPI, directory: str) -> None:
    """Serve the browser UI after every API route, if its directory exists."""
    if not Path(directory).is_dir():
        logger.debug("No public directory at %s, static files disabled", directory)
        return
    if any(getattr(r, "name", None) == "public" for r in application.routes):
        return
    application.mount("/", StaticFiles(directory=directory, html=True), name="public")


# ══════════════════════════════════════════════════════════════════════════════
# FastAPI lifespan (startup / shutdown)
# ══════════════════════════════════════════════════════════════════════════════


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Build the relay at startup and stop it cleanly on shutdown."""
    # pylint: disable=global-statement
    global _relay
    try:
        _relay = Relay(settings)
        await _relay.start()
        application.state.relay = _relay
        _mount_public(application, settings.public_dir)
        logger.info("Chat relay started")
    except Exception:
        logger.exception("Relay failed to start during lifespan startup")
        raise

    try:
        yield
    finally:
        try:
            if _relay is not None:
                await _relay.stop()
                logger.info("Chat relay stopped")
        except Exception:
            logger.exception("Error while stopping Relay during shutdown")


# ══════════════════════════════════════════════════════════════════════════════
# App
# ══════════════════════════════════════════════════════════════════════════════

app = FastAPI(
    title="LLM Chat Relay",
    version="1.0.0",
    description=(
        "Chat relay in front of the OpenAI API with model discovery,"
        " adaptive temperature handling and rate-limit telemetry."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "User-Agent"],
)

app.include_router(prompts_router)
app.include_router(conversations_router)


@app.middleware("http")
async def record_api_requests(request: Request, call_next):
    """Record every /api request (except the log endpoints) in the call log."""
    path = request.url.path
    if not path.startswith("/api/") or path.startswith(_UNLOGGED_PREFIX) or _relay is None:
        return await call_next(request)

    start = time.monotonic()
    response = await call_next(request)
    _relay.call_log.record(
        LogKind.INTERNAL,
        path,
        response.status_code,
        method=request.method,
        duration_ms=(time.monotonic() - start) * 1000.0,
    )
    return response


# ══════════════════════════════════════════════════════════════════════════════
# Routes
# ══════════════════════════════════════════════════════════════════════════════


# ── Health ────────────────────────────────────────────────────────────────────


@app.get("/api/health", tags=["Observability"])
async def health() -> dict[str, Any]:
    return {"ok": True, "hasApiKey": get_relay().has_api_key}


# ── Chat ──────────────────────────────────────────────────────────────────────


@app.post("/api/chat", tags=["Chat"])
async def chat(body: ChatRequest) -> dict[str, Any]:
    """Dispatch one chat request; errors are rendered by the RelayError handler."""
    result = await get_relay().dispatcher.dispatch(body)
    return result.to_api()


# ── Models ────────────────────────────────────────────────────────────────────


@app.get("/api/models", tags=["Discovery"])
async def list_models(refresh: Optional[str] = None) -> dict[str, Any]:
    force = (refresh or "").lower() in ("1", "true", "yes")
    models = await get_relay().catalogue.list(force_refresh=force)
    return {"models": [m.to_api() for m in models]}


# ── Observability ─────────────────────────────────────────────────────────────


@app.get("/api/ratelimits", tags=["Observability"])
async def rate_limits() -> dict[str, Any]:
    return get_relay().rate_limits.snapshot()


@app.get("/api/logs", tags=["Observability"])
async def list_logs(limit: int = 100, kind: Optional[str] = None, since: Optional[int] = None) -> dict[str, Any]:
    log_kind: LogKind | None = None
    if kind:
        try:
            log_kind = LogKind(kind.lower())
        except ValueError as exc:
            raise InvalidInput(f"Unknown log kind: {kind}") from exc
    entries = get_relay().call_log.query(limit=max(0, limit), kind=log_kind, since=since)
    return {"logs": [e.to_dict() for e in entries]}


@app.delete("/api/logs", tags=["Observability"])
async def clear_logs() -> dict[str, Any]:
    get_relay().call_log.clear()
    return {"ok": True}


# ══════════════════════════════════════════════════════════════════════════════
# Exception handlers
# ══════════════════════════════════════════════════════════════════════════════


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    """Render relay errors as ``{"error": message}`` with the error's status."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render malformed request bodies as ``{"error": message}`` with status 400."""
    problems = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        msg = err.get("msg", "invalid value")
        problems.append(f"{'.'.join(loc)}: {msg}" if loc else msg)
    message = "; ".join(problems) or "Invalid request"
    logger.info("%s %s rejected: %s", request.method, request.url.path, message)
    return JSONResponse(status_code=400, content={"error": message})


# ══════════════════════════════════════════════════════════════════════════════
# Entry point
# ══════════════════════════════════════════════════════════════════════════════


def main():
    import argparse

    import uvicorn
    from dotenv import load_dotenv

    # .env is loaded at process start only, never on import
    load_dotenv(Path.cwd() / ".env", override=False)
    settings.reload()

    parser = argparse.ArgumentParser(description="Start the LLM chat relay.")
    parser.add_argument("--host", default=settings.host, help="Host to bind to")
    parser.add_argument("--port", type=int, default=settings.port, help="Port to bind to")
    parser.add_argument(
        "--debug",
        action="store_true",
        default=settings.debug,
        help="Enable reload/debug mode",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    uvicorn.run(
        "llm_relay.server:app",
        host=args.host,
        port=args.port,
        reload=args.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
