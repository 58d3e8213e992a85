from fastapi import FastAPI, APIRouter, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
import logging
import time
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Import configuration
from config import get_settings

# Import logging and error tracking
from logging_config import setup_logging
from sentry_integration import init_sentry

# Import database and routers
from database import init_db, create_tables, dispose_engine
from routers import matching_router
from runtime import build_runtime

# Get settings
settings = get_settings()

# Configure structured logging
setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    service_name=settings.SERVICE_NAME
)
logger = logging.getLogger(__name__)

# Initialize Sentry error tracking
if settings.SENTRY_DSN:
    init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    logger.info("=" * 60)
    logger.info("Starting Recon Core API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info("=" * 60)

    # Initialize database
    try:
        await init_db()
        if settings.is_development:
            await create_tables()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    app.state.runtime = build_runtime(settings)
    logger.info("Recon Core API started successfully")

    yield

    logger.info("Shutting down Recon Core API...")
    await dispose_engine()


app = FastAPI(
    title="Recon Core API",
    description="""
    Reconciliation matching core: links inbox documents to bank transactions.

    ### Matching (/api/matching)
    - Dispatch matching events from ingestion pipelines
    - Queue depth and failed jobs for the operator board
    - Retry failed jobs
    - Review suggestions (confirm, decline) and documents (flag, exclude)
    - Manual matches, bulk confirmation and match status counts
    """,
    version="1.0.0",
    lifespan=lifespan,
)

api_router = APIRouter(prefix="/api")
api_router.include_router(matching_router)
app.include_router(api_router)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": settings.SERVICE_NAME,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# ==================== MIDDLEWARE ====================

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log failed requests with timing information"""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", f"req-{int(start_time * 1000)}")

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(f"[{request_id}] Request failed: {str(e)}")
        raise

    process_time = time.time() - start_time
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

    if response.status_code >= 400:
        logger.info(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)")

    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions"""
    logger.error(f"Unhandled exception: {exc}", exc_info=exc)

    # Don't expose internal errors in production
    if settings.is_production:
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
        }
    )
