"""FastAPI application entry point with global error handling."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from core.config import get_settings
from core.exceptions import (
    BillingInProgressError,
    ConfigurationError,
    DuplicateAssignmentError,
    ExternalServiceError,
    InvalidStatusTransitionError,
    LeadMarketError,
    LeadNotAvailableError,
    NoLeadsToInvoiceError,
    NotFoundError,
    ValidationError,
)
from core.logging_config import get_logger, setup_logging
from api.routes import billing, health, income, leads, settings

LOGGER = get_logger(__name__)

# Business conflicts: the request was well formed but the current state forbids it
CONFLICT_ERRORS = (
    LeadNotAvailableError,
    DuplicateAssignmentError,
    InvalidStatusTransitionError,
    BillingInProgressError,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Sets up logging, validates the database and creates missing tables.
    The app still starts when the database is not ready so health checks answer.
    """
    app_settings = get_settings()
    setup_logging(level=app_settings.log_level, json_format=app_settings.log_format == "json")

    if app_settings.is_notification_live():
        LOGGER.warning("!!! LIVE MODE !!! Partner notifications will be sent")
    else:
        LOGGER.info("Notifications are logged only (DRY_RUN or disabled)")

    LOGGER.info(
        "API application starting",
        extra={"extra_data": {
            "environment": app_settings.environment,
            "dry_run": app_settings.dry_run,
            "enabled_services": app_settings.get_enabled_services(),
        }}
    )

    try:
        from core.db import init_db, validate_database
        db_status = validate_database()

        if db_status["status"] == "error":
            LOGGER.error(
                "Database validation failed - app will start without database",
                extra={"extra_data": {"errors": db_status["errors"]}}
            )
        elif db_status["status"] == "missing_tables":
            LOGGER.warning(
                "Missing database tables detected - attempting to create",
                extra={"extra_data": {"missing": db_status["tables_missing"]}}
            )
            init_result = init_db(create_missing_only=True)
            if init_result["status"] == "error":
                LOGGER.error(
                    "Failed to create missing tables",
                    extra={"extra_data": {"error": init_result.get("error")}}
                )
        else:
            LOGGER.info(
                "Database validation passed",
                extra={"extra_data": {"tables_found": len(db_status["tables_found"])}}
            )
    except SQLAlchemyError as e:
        LOGGER.error(f"Database validation error during startup: {e} - app will start anyway")

    yield
    LOGGER.info("API application shutting down")


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance with:
        - CORS middleware
        - Exception handlers mapping domain errors to HTTP statuses
        - All API routes
    """
    application = FastAPI(
        title="Leadmarket",
        description="Lead assignment and partner billing API",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # -------------------------------------------------------------------------
    # CORS Middleware
    # -------------------------------------------------------------------------
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------------------------------------------------------------------------
    # Global Exception Handlers
    # -------------------------------------------------------------------------

    @application.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(404, "not_found", str(exc))

    for conflict in CONFLICT_ERRORS:
        @application.exception_handler(conflict)
        async def conflict_handler(request: Request, exc: LeadMarketError) -> JSONResponse:
            """Handle state conflicts (lead taken, duplicate, bad transition, billing running)."""
            LOGGER.info(f"Conflict: {exc}", extra={"extra_data": {"path": request.url.path}})
            return _error(409, "conflict", str(exc))

    @application.exception_handler(NoLeadsToInvoiceError)
    async def no_leads_handler(request: Request, exc: NoLeadsToInvoiceError) -> JSONResponse:
        LOGGER.info(f"Nothing to invoice: {exc}")
        return _error(422, "no_leads_to_invoice", str(exc))

    @application.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        """Handle validation errors."""
        LOGGER.warning(f"Validation error: {exc}", extra={"extra_data": {"path": request.url.path}})
        return _error(400, "validation_error", str(exc))

    @application.exception_handler(ConfigurationError)
    async def configuration_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
        """Handle configuration errors."""
        LOGGER.error(f"Configuration error: {exc}")
        return _error(500, "configuration_error", "Service misconfiguration")

    @application.exception_handler(ExternalServiceError)
    async def external_service_handler(request: Request, exc: ExternalServiceError) -> JSONResponse:
        """Handle external service errors."""
        LOGGER.error(f"External service error: {exc}", extra={"extra_data": {"path": request.url.path}})
        return _error(502, "external_service_error", str(exc))

    @application.exception_handler(LeadMarketError)
    async def app_error_handler(request: Request, exc: LeadMarketError) -> JSONResponse:
        """Handle all other application errors."""
        LOGGER.error(f"Application error: {exc}", exc_info=True)
        return _error(500, "application_error", str(exc))

    # -------------------------------------------------------------------------
    # Include Routers
    # -------------------------------------------------------------------------
    application.include_router(health.router, prefix="/health", tags=["Health"])
    application.include_router(leads.router, prefix="/leads", tags=["Leads"])
    application.include_router(billing.router, prefix="/billing", tags=["Billing"])
    application.include_router(income.router, prefix="/income", tags=["Income"])
    application.include_router(settings.router, prefix="/settings", tags=["Settings"])

    return application


# Create the application instance
app = create_app()
