"""
CryptoVault Ledger: FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.database import Database
from core.exceptions import LedgerError
from core.logging import configure_logging
from core.responses import err, ledger_err
from routers import admin, notifications, portfolio, prices, transactions
from services.notifications import ResendEmailSink
from services.price_oracle import PriceOracle

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, json_output=settings.APP_ENV == "production")

    app.state.db = Database(settings.DATABASE_URL)
    app.state.oracle = PriceOracle(
        base_url=settings.COINGECKO_API_URL,
        ttl_seconds=settings.PRICE_CACHE_TTL_SECONDS,
    )
    app.state.email_sink = (
        ResendEmailSink(settings.RESEND_API_KEY, settings.EMAIL_FROM) if settings.RESEND_API_KEY else None
    )
    logger.info(
        "api.startup",
        env=settings.APP_ENV,
        log_level=settings.LOG_LEVEL,
        email_enabled=app.state.email_sink is not None,
    )
    yield
    await app.state.oracle.close()
    if app.state.email_sink is not None:
        await app.state.email_sink.close()
    await app.state.db.dispose()
    logger.info("api.shutdown")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="CryptoVault Ledger API",
        description="Depósitos y retiros con aprobación de admin sobre un ledger de balances a coste medio.",
        version="1.0.0",
        docs_url="/docs" if settings.APP_ENV != "production" else None,
        redoc_url="/redoc" if settings.APP_ENV != "production" else None,
        lifespan=lifespan,
    )

    # -----------------------------------------------------------------------
    # Middlewares
    # -----------------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type"],
    )

    # -----------------------------------------------------------------------
    # Exception handlers globales: mantienen formato { data, error, meta }
    # -----------------------------------------------------------------------

    @app.exception_handler(LedgerError)
    async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("ledger_error", path=str(request.url), code=exc.code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=ledger_err(exc))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        headers = getattr(exc, "headers", None)
        return JSONResponse(
            status_code=exc.status_code,
            content=err(exc.detail),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=err(f"Error de validación: {exc.errors()}", meta={"code": "validation_failed"}),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_exception", path=str(request.url), error=str(exc), exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=err(f"Error interno del servidor: {type(exc).__name__}"),
        )

    # -----------------------------------------------------------------------
    # Routers
    # -----------------------------------------------------------------------

    app.include_router(prices.router, prefix="/api/v1/prices", tags=["prices"])
    app.include_router(transactions.router, prefix="/api/v1/transactions", tags=["transactions"])
    app.include_router(portfolio.router, prefix="/api/v1/portfolio", tags=["portfolio"])
    app.include_router(notifications.router, prefix="/api/v1/notifications", tags=["notifications"])
    app.include_router(admin.router, prefix="/api/v1/admin", tags=["admin"])

    # -----------------------------------------------------------------------
    # Health check (sin auth)
    # -----------------------------------------------------------------------

    @app.get("/api/v1/health", tags=["health"])
    async def health_check() -> dict:
        return {"status": "ok", "env": settings.APP_ENV}

    return app


app = create_app()
