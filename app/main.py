"""
Leasehold Core API - Main Application
FastAPI application with CORS, domain error handling, request logging and
database initialization
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
import logging
import traceback

from app.api.routes import leases_router, payments_router, signing_router
from app.api.webhooks import router as webhooks_router
from app.core.config import get_cors_origins, settings
from app.core.exceptions import DomainError
from app.database import SessionLocal, close_db_connection, init_db, test_connection
from app.db.base import utcnow
from app.services.payment_gateways import get_payment_gateway
from app.services.webhook_reconciler import WebhookReconciler


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Initialize FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description=settings.PROJECT_DESCRIPTION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# ==================== MIDDLEWARE ====================


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"],
    allow_headers=["*"],
    max_age=3600,
)


# ==================== ROUTERS ====================


app.include_router(leases_router, prefix=settings.API_PREFIX)
app.include_router(signing_router, prefix=settings.API_PREFIX)
app.include_router(payments_router, prefix=settings.API_PREFIX)
app.include_router(webhooks_router, prefix=settings.API_PREFIX)


# ==================== ERROR HANDLERS ====================


@app.exception_handler(DomainError)
async def domain_exception_handler(request: Request, exc: DomainError):
    """Render service-layer errors with their stable code"""
    log = logger.error if exc.status_code >= 500 else logger.info
    log(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()}
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with detailed response"""
    logger.warning(f"Validation error on {request.url}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": {"code": "VALIDATION_ERROR", "message": "Validation error"},
            "errors": jsonable_encoder(exc.errors())
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions"""
    logger.error(f"Unhandled exception: {exc}\n{traceback.format_exc()}")

    # Don't expose internal errors in production
    error_message = str(exc) if settings.DEBUG else "Internal server error"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {"code": "INTERNAL_ERROR", "message": error_message},
            "timestamp": utcnow().isoformat()
        }
    )


# ==================== HEALTH ====================


@app.get("/health", tags=["System"])
def health_check():
    """Liveness probe with a non-blocking database check"""
    connection_ok = test_connection()
    return {
        "success": True,
        "status": "healthy" if connection_ok else "degraded",
        "database": "connected" if connection_ok else "disconnected",
        "gateway": "configured" if settings.gateway_configured else "not configured",
        "timestamp": utcnow().isoformat(),
    }


# ==================== STARTUP & SHUTDOWN ====================


@app.on_event("startup")
def startup_event():
    """Create tables for local dev and trim the webhook idempotency log"""
    logger.info("=" * 70)
    logger.info(f"Starting {settings.PROJECT_NAME} v{settings.VERSION}")
    logger.info("=" * 70)

    if not test_connection():
        logger.warning("[WARN] Database connection failed - continuing in degraded mode")
        return

    init_db()

    db = SessionLocal()
    try:
        WebhookReconciler(db, get_payment_gateway()).purge_processed_events()
    finally:
        db.close()

    logger.info("[OK] Application startup complete!")


@app.on_event("shutdown")
def shutdown_event():
    """Run on application shutdown"""
    close_db_connection()
    logger.info("Application shutdown complete")


# ==================== REQUEST LOGGING ====================


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests"""
    if request.url.path == "/health":
        return await call_next(request)

    start_time = utcnow()
    response = await call_next(request)
    duration = (utcnow() - start_time).total_seconds()
    logger.info(f"<< {request.method} {request.url.path} - {response.status_code} ({duration:.2f}s)")
    return response
