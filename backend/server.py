from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import wholesalers, monitoring

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# In-memory job store: the sweep is re-derived from order state on every tick
scheduler = AsyncIOScheduler()

from job_runner import run_wholesaler_notification_sweep

WHOLESALER_SCHEDULER_ENABLED = os.environ.get("WHOLESALER_SCHEDULER_ENABLED", "true").strip().lower() != "false"
WHOLESALER_NOTIFICATION_INTERVAL_MINUTES = int(os.environ.get("WHOLESALER_NOTIFICATION_INTERVAL_MINUTES", "15"))

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    if os.environ.get("PYTEST_RUNNING"):
        yield
        return

    # Startup
    logger.info("Starting Wholesaler Notification API")
    await database.connect()

    if WHOLESALER_SCHEDULER_ENABLED:
        # Wholesaler notification sweep; max_instances=1 keeps ticks from overlapping
        scheduler.add_job(
            run_wholesaler_notification_sweep,
            IntervalTrigger(minutes=WHOLESALER_NOTIFICATION_INTERVAL_MINUTES),
            id="wholesaler_notification_sweep",
            name="Wholesaler Notification Sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        scheduler.start()
        logger.info(f"Background job scheduler started (sweep every {WHOLESALER_NOTIFICATION_INTERVAL_MINUTES} min)")
    else:
        logger.info("WHOLESALER_SCHEDULER_ENABLED=false; wholesaler sweep runs only on demand")

    yield

    # Shutdown
    logger.info("Shutting down Wholesaler Notification API")
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Wholesaler Notification API",
    description="Order fulfillment notifications for external wholesalers",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(wholesalers.router)
app.include_router(monitoring.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Wholesaler Notification API",
        "version": "1.0.0",
        "status": "operational"
    }

# Validation error handler: log request_id + full errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": errors, "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
