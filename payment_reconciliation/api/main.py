"""
FastAPI application factory.

``create_app`` wires the routers, middleware and error rendering around a
``ServiceContainer``. When no container is passed, the lifespan builds one
from settings and owns the database engine.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from payment_reconciliation import __version__
from payment_reconciliation.config import get_settings
from payment_reconciliation.core.errors import PaymentReconciliationError
from payment_reconciliation.database.connection import close_db, get_session_factory, init_db
from payment_reconciliation.monitoring.logging import setup_logging

from .dependencies import ServiceContainer, build_container
from .routes import monitoring_router, payment_router, student_router, webhook_router

setup_logging()
logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    settings = get_settings()
    owns_container = app.state.container is None
    logger.info(
        "application_startup",
        env=settings.app_env,
        test_mode=settings.is_test_mode,
        owns_container=owns_container,
    )

    if owns_container:
        await init_db()
        app.state.container = build_container(settings, get_session_factory())

    try:
        yield
    finally:
        logger.info("application_shutdown")
        if owns_container:
            await app.state.container.close()
            await close_db()


async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Bind a request id (client supplied or generated) and log one line per request."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    structlog.contextvars.bind_contextvars(
        request_id=request_id, method=request.method, path=request.url.path
    )
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception(
            "request_failed", duration_ms=round((time.perf_counter() - started) * 1000, 2)
        )
        raise
    else:
        response.headers[REQUEST_ID_HEADER] = request_id
        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            "request_handled",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


async def handle_domain_error(request: Request, exc: PaymentReconciliationError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("request_rejected", error_code=exc.error_code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


async def handle_request_validation(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]
    logger.info("request_invalid", errors=errors)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request body or parameters are invalid",
                "details": {"errors": errors},
            }
        },
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred. Please try again later.",
            }
        },
    )


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the application.

    Args:
        container: Prebuilt services, used as-is and never closed by the app

    Returns:
        FastAPI: Configured application
    """
    settings = get_settings()

    app = FastAPI(
        title="Payment Reconciliation Engine",
        description=(
            "Records Paystack charges in the payment ledger exactly once, whichever of "
            "the client verify call, the webhook or an admin re-verification sees them first."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )
    app.middleware("http")(request_context_middleware)

    app.add_exception_handler(PaymentReconciliationError, handle_domain_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected_error)

    for router in (student_router, payment_router, webhook_router, monitoring_router):
        app.include_router(router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": __version__,
            "environment": settings.app_env,
            "paystack_mode": "test" if settings.is_test_mode else "live",
        }

    return app


app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "payment_reconciliation.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
