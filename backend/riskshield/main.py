"""
RiskShield - FastAPI Application

Main entry point for the RiskShield compliance backend.

Architecture:
- Verdict -> ComplianceStatusResolver -> assignment status
- Escalating status -> EscalationScheduler -> NotificationDispatcher
- Exceptions -> ExceptionLifecycleManager -> resolver
- Every transition -> AuditRecorder
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .database import init_db
from .errors import ComplianceError
from .routers import (
    verifications_router, exceptions_router, scheduler_router,
    webhooks_router, audit_logs_router, admin_router,
)

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize logging and database on startup."""
    configure_logging(get_settings().log_level)
    init_db()
    yield


def create_app(run_init: bool = True) -> FastAPI:
    app = FastAPI(
        lifespan=lifespan if run_init else None,
        title="RiskShield",
        description="""
        RiskShield - Subcontractor Insurance Compliance

        Turns certificate verification verdicts into project compliance
        status, manages approved exceptions, and escalates missing or
        deficient Certificates of Currency up to a stop-work alert.
        """,
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ComplianceError)
    async def compliance_error_handler(request: Request, exc: ComplianceError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.code}: {exc.message}")
            return JSONResponse(
                status_code=exc.http_status,
                content={"error": exc.code, "message": "A dependency is unavailable, please retry later"},
            )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": "An unexpected error occurred"},
        )

    # Include routers
    app.include_router(verifications_router)
    app.include_router(exceptions_router)
    app.include_router(scheduler_router)
    app.include_router(webhooks_router)
    app.include_router(audit_logs_router)
    app.include_router(admin_router)

    @app.get("/")
    async def root():
        """Root endpoint - API information."""
        return {
            "name": "RiskShield",
            "version": "1.0.0",
            "description": "Subcontractor insurance compliance engine",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": "1.0.0"}

    return app


app = create_app()


# For running with: python -m riskshield.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
