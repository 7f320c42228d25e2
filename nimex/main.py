"""
NIMEX Marketplace — FastAPI Application
Configures CORS, security headers, rate limiting, error envelopes and the
database on startup.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from nimex.config import get_settings
from nimex.database import engine, Base, async_session
from nimex.errors import HTTP_ERROR_CODES, InvalidArgument, SettlementError, error_envelope
from nimex.middleware.rate_limit import limiter
from nimex.middleware.security import SecurityHeadersMiddleware
from nimex.routers.admin import router as admin_router
from nimex.routers.auth import router as auth_router
from nimex.routers.escrow import router as escrow_router
from nimex.routers.wallet import router as wallet_router
from nimex.seed import seed_database

# Registers every table on Base.metadata before create_all
import nimex.models  # noqa: F401

settings = get_settings()
logger = logging.getLogger("nimex")


# ═══════════════════════════════════════════════════════
#  LIFESPAN — startup / shutdown
# ═══════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, optionally seed demo escrows, dispose the pool on exit."""
    logger.info("🚀 Starting NIMEX Marketplace…")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Schema ready on %s", engine.url.render_as_string(hide_password=True))

    if settings.SEED_DEMO_DATA:
        async with async_session() as session:
            await seed_database(session)

    yield

    await engine.dispose()
    logger.info("👋 NIMEX Marketplace shut down.")


# ═══════════════════════════════════════════════════════
#  APP FACTORY
# ═══════════════════════════════════════════════════════

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Marketplace escrow settlement and vendor wallet service",
    lifespan=lifespan,
)


# ── CORS ──
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Security Headers ──
app.add_middleware(SecurityHeadersMiddleware)

# ── Rate Limiter ──
app.state.limiter = limiter

SETTLEMENT_PREFIX = "/api/escrow/"


def _is_settlement_call(request: Request) -> bool:
    return request.url.path.startswith(SETTLEMENT_PREFIX)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """slowapi's 429, wrapped in the settlement envelope on escrow routes."""
    if not _is_settlement_call(request):
        return _rate_limit_exceeded_handler(request, exc)

    response = JSONResponse(
        status_code=429,
        content=error_envelope(f"Rate limit exceeded: {exc.detail}", HTTP_ERROR_CODES[429]),
    )
    view_limit = getattr(request.state, "view_rate_limit", None)
    if view_limit is not None:
        response = request.app.state.limiter._inject_headers(response, view_limit)
    return response


# ── Error envelopes ──
@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    """Render settlement failures as {"success": false, "error": ...}."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    """Auth and routing failures on escrow routes use the settlement envelope too."""
    if not _is_settlement_call(request):
        return await http_exception_handler(request, exc)

    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(str(exc.detail), code),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are InvalidArgument, in the same envelope."""
    problems = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{field}: {err.get('msg')}" if field else err.get("msg"))
    error = InvalidArgument("; ".join(problems) or "Invalid request")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# ── Routers ──
app.include_router(auth_router)
app.include_router(escrow_router)
app.include_router(wallet_router)
app.include_router(admin_router)


# ═══════════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════════

@app.get("/api/health")
async def health_check():
    """Simple health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
    }


# ═══════════════════════════════════════════════════════
#  RUN (for direct execution)
# ═══════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "nimex.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info",
    )
