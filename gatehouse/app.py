from __future__ import annotations

import re
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from gatehouse.api.error_handling import register_exception_handlers
from gatehouse.api.routes import router
from gatehouse.config import Settings, get_settings
from gatehouse.logging import get_logger, set_correlation_id
from gatehouse.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

STATIC_DIR = Path(__file__).resolve().parent / "static"

CSP_DIRECTIVES: Dict[str, List[str]] = {
    "default-src": ["'self'"],
    "script-src": [
        "'self'",
        "'unsafe-inline'",
        "https://cdn.tailwindcss.com",
        "https://unpkg.com",
    ],
    "style-src": ["'self'", "'unsafe-inline'", "https://cdn.tailwindcss.com"],
    "img-src": ["'self'", "data:"],
    "connect-src": ["'self'", "wss://*.peerjs.com", "https://*.peerjs.com"],
    "font-src": ["'self'"],
    "object-src": ["'none'"],
    "frame-src": ["'none'"],
}

_SCAN_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"wp-includes",
        r"xmlrpc\.php",
        r"wp-content",
        r"wp-admin",
        r"wordpress",
        r"\.env",
        r"\.git",
        r"\.sql",
        r"\.php$",
    )
]

_WRITE_METHODS = {"POST", "PUT", "DELETE"}


def build_csp(directives: Dict[str, List[str]]) -> str:
    """Render a directive map as a Content-Security-Policy header value."""
    return "; ".join(f"{name} {' '.join(values)}" for name, values in directives.items())


def is_scan_path(path: str) -> bool:
    return any(pattern.search(path) for pattern in _SCAN_PATTERNS)


def create_app(
    settings: Optional[Settings] = None, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the FastAPI application.

    Required environment variables are checked here so a misconfigured
    deployment fails before serving anything. When ``runtime`` is given (tests)
    it is used as-is and left open on shutdown; otherwise the lifespan
    connects one from ``settings`` and closes it again.
    """
    settings = (settings or get_settings()).ensure_required()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned: Optional[Runtime] = None
        if getattr(app.state, "runtime", None) is None:
            owned = await Runtime.connect(settings)
            app.state.runtime = owned
        logger.info("startup_complete", host=settings.host, port=settings.port)
        try:
            yield
        finally:
            if owned is not None:
                try:
                    await owned.close()
                except Exception as exc:
                    logger.error("shutdown_failed", error=str(exc))
                app.state.runtime = None

    app = FastAPI(title="Gatehouse", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.cors_origin],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "X-Requested-With"],
        expose_headers=["Content-Length", "X-Requested-With", "X-Request-ID"],
    )

    @app.middleware("http")
    async def reject_cross_origin_writes(request: Request, call_next):
        if request.method.upper() in _WRITE_METHODS:
            origin = request.headers.get("origin")
            if origin and "localhost" not in origin:
                logger.warning("cross_origin_write_rejected", origin=origin, path=request.url.path)
                return JSONResponse(
                    status_code=403,
                    content={"error": "Cross-origin requests disabled", "code": "forbidden"},
                )
        return await call_next(request)

    @app.middleware("http")
    async def block_scanners(request: Request, call_next):
        path = request.url.path
        if is_scan_path(path):
            logger.warning("scan_attempt_blocked", path=path)
            return JSONResponse(status_code=404, content={"error": "Not Found", "code": "not_found"})
        return await call_next(request)

    csp = build_csp(CSP_DIRECTIVES)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["Content-Security-Policy"] = csp
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response

    register_exception_handlers(app)
    app.include_router(router)

    if STATIC_DIR.exists():
        app.mount("/static", StaticFiles(directory=STATIC_DIR, html=False), name="static")
    else:
        logger.warning("static_assets_missing", path=str(STATIC_DIR))

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
