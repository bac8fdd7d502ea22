"""
Circles Coinflip Main Application Entry Point
FastAPI service for pay-to-play solo coinflip rounds settled in CRC.
"""

import sys
from pathlib import Path

# Add parent directory to path so imports work when running directly
if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).parent.parent))

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import uvicorn

from coinflip.core.logger import init_logging, get_logger
from coinflip.config import settings
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from coinflip.core.exceptions import SoloGameError
from coinflip.core.solo import shutdown_solo_service
from coinflip.routers import api

# Initialize logging first
init_logging(
    level=settings.logging.level,
    log_to_file=settings.logging.log_to_file,
    formatter=settings.logging.formatter,
    log_file_path=settings.paths.get_log_path(),
)
logger = get_logger("main")


# ==================== Security Headers Middleware ====================


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON only; nothing here should ever be framed or run scripts
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        return response


# ==================== Exception Handlers ====================


async def solo_error_handler(request: Request, exc: SoloGameError):
    if exc.status_code >= 500:
        logger.error(f"Solo game error on {request.url.path}: {exc.message}")
    return ORJSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return ORJSONResponse(status_code=400, content={"error": message})


async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions gracefully."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    content = {"error": "Internal server error"}
    if settings.server.debug:
        content["detail"] = str(exc)
    return ORJSONResponse(status_code=500, content=content)


# ==================== Application Setup ====================


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.server.name,
        docs_url="/docs" if settings.server.debug else None,
        redoc_url=None,
        default_response_class=ORJSONResponse,
    )

    app.state.limiter = api.limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(SoloGameError, solo_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware (for development)
    if settings.server.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(api.router, prefix="/api")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.on_event("shutdown")
    async def shutdown_event():
        await shutdown_solo_service()

    return app


app = create_app()

logger.info(f"Application '{settings.server.name}' initialized")
logger.info(f"Debug mode: {settings.server.debug}")


# ==================== Main Entry Point ====================

if __name__ == "__main__":
    logger.info(f"Starting server on {settings.server.host}:{settings.server.port}")
    uvicorn.run(
        "coinflip.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.debug,
    )
