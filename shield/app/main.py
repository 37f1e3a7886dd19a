from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shield.app.api.admin import router as admin_router
from shield.app.api.csrf import router as csrf_router
from shield.app.container import SecurityServices, build_services
from shield.app.core.config import Settings
from shield.app.core.logging import get_logger, setup_logging
from shield.app.exceptions import RateLimitedError, ShieldException
from shield.app.middleware.request_id import RequestIdMiddleware
from shield.app.middleware.request_size import RequestSizeLimitMiddleware
from shield.app.middleware.security import SecurityMiddleware


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[SecurityServices] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Application settings; loaded from the environment if omitted
        services: Pre-built services, mainly for tests

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or (services.settings if services else Settings())
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger(__name__)

    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the auth attempt sweep and release the cache on shutdown."""
        await services.start()
        logger.info(
            "Application startup complete",
            extra={"cache_backend": settings.cache_backend, "debug_mode": settings.debug},
        )
        yield
        await services.shutdown()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="AbuseShield",
        description="Request abuse-prevention pipeline: rate limiting, CSRF and injection defense",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(SecurityMiddleware)
    # Body size cap runs before the pipeline reads the body
    app.add_middleware(RequestSizeLimitMiddleware, max_body_size=settings.max_request_body_bytes)
    # Request ID middleware (outermost so every pipeline log line carries the ID)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(csrf_router)
    app.include_router(admin_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with cache connectivity."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}
        try:
            test_key = "_health_check_test"
            await services.cache.set(test_key, b"ping", ttl=5)
            value = await services.cache.get(test_key)
            await services.cache.delete(test_key)
            if value == b"ping":
                health_status["components"]["cache"] = {
                    "status": "ok",
                    "type": settings.cache_backend,
                }
            else:
                health_status["status"] = "degraded"
                health_status["components"]["cache"] = {"status": "error", "error": "Unexpected value"}
        except ShieldException as e:
            health_status["status"] = "degraded"
            health_status["components"]["cache"] = {"status": "error", "error": e.message}

        health_status["emergency_mode"] = services.orchestrator.emergency_mode
        return health_status

    @app.exception_handler(ShieldException)
    async def shield_exception_handler(request: Request, exc: ShieldException) -> JSONResponse:
        """Handle pipeline denials raised from route handlers."""
        headers = {}
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(status_code=exc.status_code, content=exc.to_response(), headers=headers)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; full details are logged
        server-side and debug mode adds only the exception type and message.
        """
        request_id = getattr(request.state, "request_id", "unknown")
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={"request_id": request_id, "exception_type": type(exc).__name__},
        )

        content = {
            "success": False,
            "error": {"code": "internal_error", "message": "Internal server error"},
            "request_id": request_id,
        }
        if settings.debug:
            content["error"]["message"] = str(exc)
            content["error"]["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app
