from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from api.v1 import auth, users, cronjobs, deposits, admin
from core.config import settings
from core.errors import ApiError
from db.base import initialize_database
from db.session import engine, SessionLocal
from services.auth_service import purge_expired_tokens
from services.cron_service import get_scheduler
from services.deposit_service import mark_expired_orders
from sqlalchemy import text
from utils.logging_config import configure_logging, RequestContextMiddleware
from fastapi import Request

# Configure logging with date-based files and TTL retention
logger = configure_logging("operis")

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG
)

@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
        headers=exc.headers,
    )

# Global exception handler to ensure 500s for unexpected errors
@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error at {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "code": "INTERNAL_ERROR"})

# Add GZip compression for larger JSON payloads
app.add_middleware(GZipMiddleware, minimum_size=500)

# Add logging context middleware to capture user_id and API path
app.add_middleware(RequestContextMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(users.router, prefix="/users", tags=["Users"])
app.include_router(cronjobs.router, prefix="/cronjobs", tags=["Cronjobs"])
app.include_router(deposits.router, prefix="/deposits", tags=["Deposits"])
app.include_router(deposits.webhook_router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(admin.router, tags=["Admin"])

@app.on_event("startup")
async def startup():
    """Create tables, clear stale state and start the scheduler."""
    await initialize_database()
    logger.info("SQL database initialized")
    try:
        purged = await purge_expired_tokens()
        expired = await mark_expired_orders()
        logger.info(f"Startup cleanup: {purged} refresh tokens purged, {expired} deposit orders expired")
    except Exception as e:
        logger.warning(f"Startup cleanup skipped or failed: {e}")
    if settings.CRON_SCHEDULER_ENABLED:
        await get_scheduler().start()
    else:
        logger.info("CRON_SCHEDULER_ENABLED=false; scheduler not started")
    logger.info("Application startup complete")

@app.on_event("shutdown")
async def shutdown():
    """Application shutdown"""
    await get_scheduler().stop()
    try:
        await engine.dispose()
        logger.info("Disposed SQL engine")
    except Exception as e:
        logger.warning(f"Engine dispose failed: {e}")
    logger.info("Application shutdown complete")

@app.get("/")
async def root():
    return {"message": settings.APP_NAME, "version": settings.VERSION}

@app.get("/health")
async def health_check():
    try:
        async with SessionLocal() as db:
            await db.execute(text("SELECT 1"))
        db_status = "sql_connected"
    except Exception as e:
        logger.warning(f"Health SQL check failed: {e}")
        db_status = "sql_unavailable"
    return {
        "status": "healthy" if db_status == "sql_connected" else "degraded",
        "database": db_status,
        "scheduler": get_scheduler().running,
    }
