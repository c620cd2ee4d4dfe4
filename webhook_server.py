"""
PayPal Deposit Webhook Server

FastAPI application serving the PayPal webhook, deposit confirmation and
operator reconciliation routes. Run with gunicorn (see gunicorn_conf.py) or
`uvicorn webhook_server:app`.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from config import Config
from database import create_tables, test_connection
from handlers.deposit_routes import router as deposit_router
from handlers.paypal_webhook import router as paypal_router
from jobs.deposit_retry_scheduler import create_scheduler, schedule_deposit_retry

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: validate configuration, ensure tables, start the retry scheduler.
    Shutdown: stop the scheduler.
    """
    logger.info(f"🔧 Worker {os.getpid()} starting...")
    Config.log_environment_config()
    Config.validate_balance_configuration()
    Config.validate_webhook_security_configuration()

    if test_connection():
        create_tables()

    scheduler = None
    if Config.ENABLE_DEPOSIT_RETRY_JOB:
        scheduler = create_scheduler()
        schedule_deposit_retry(scheduler)
        scheduler.start()
        logger.info("✅ Deposit retry scheduler started")
    else:
        logger.info("⏸️ Deposit retry scheduler disabled (ENABLE_DEPOSIT_RETRY_JOB=false)")

    app.state.scheduler = scheduler
    yield

    if scheduler is not None:
        scheduler.shutdown(wait=False)
    logger.info(f"🔄 Worker {os.getpid()} shutting down...")


app = FastAPI(
    title="PayPal Deposit Service",
    description="Idempotent PayPal deposit processing and balance reconciliation",
    lifespan=lifespan,
)

app.include_router(paypal_router)
app.include_router(deposit_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for deployment probes"""
    return {
        "status": "ok",
        "service": "PayPal Deposit Service",
        "environment": Config.CURRENT_ENVIRONMENT,
        "webhook_verification": "enabled" if Config.PAYPAL_WEBHOOK_ID else "reduced_trust",
    }
