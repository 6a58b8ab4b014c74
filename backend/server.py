from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database
from ledger.exceptions import LedgerError
from ledger.routes import webhooks, billing, credits, plans, admin
from ledger.services.notifications import notification_dispatcher

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
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

# In-memory job store: both jobs are idempotent sweeps, nothing to persist across restarts
scheduler = AsyncIOScheduler()

from job_runner import run_lapsed_subscription_sweep, run_webhook_event_cleanup


def _scheduler_enabled() -> bool:
    return os.getenv("ENABLE_SCHEDULER", "true").strip().lower() not in ("0", "false", "no")


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Ledger API")
    await database.connect()

    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_API_KEY / STRIPE_SECRET_KEY is not set. Checkout and portal will fail.")
    else:
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", "test" if stripe_key.startswith("sk_test_") else "live")
    if not os.environ.get("STRIPE_WEBHOOK_SECRET"):
        logger.error("STRIPE_WEBHOOK_SECRET is not set. Every webhook will be rejected.")

    if _scheduler_enabled():
        # Soft-canceled subscriptions past their period end, hourly
        scheduler.add_job(
            run_lapsed_subscription_sweep,
            IntervalTrigger(hours=1),
            id="lapsed_subscription_sweep",
            name="Lapsed Subscription Sweep",
            replace_existing=True
        )

        # Old webhook idempotency records, daily at 3:00 AM UTC
        scheduler.add_job(
            run_webhook_event_cleanup,
            CronTrigger(hour=3, minute=0),
            id="webhook_event_cleanup",
            name="Webhook Event Cleanup",
            replace_existing=True
        )

        scheduler.start()
        logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Ledger API")
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await notification_dispatcher.drain()
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Ledger API",
    description="Subscription & credit ledger",
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
app.include_router(webhooks.router)
app.include_router(billing.router)
app.include_router(credits.router)
app.include_router(plans.router)
app.include_router(admin.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Ledger errors carry their own HTTP status
@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error(f"Ledger error on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, **({"context": exc.details} if exc.details else {})}
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


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
