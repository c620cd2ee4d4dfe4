"""Configuration management for the PayPal deposit service"""

import os
import logging
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection
    # ENVIRONMENT takes absolute priority, then deployment heuristics
    ENVIRONMENT = os.getenv("ENVIRONMENT", "").lower().strip()

    if ENVIRONMENT:
        IS_PRODUCTION = (ENVIRONMENT == "production")
    else:
        IS_PRODUCTION = bool(os.getenv("RAILWAY_PUBLIC_DOMAIN"))

    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_SOURCE = "PostgreSQL" if DATABASE_URL and DATABASE_URL.startswith("postgres") else (
        "SQLite" if DATABASE_URL else "NOT CONFIGURED"
    )

    # PayPal REST API
    PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET")
    PAYPAL_WEBHOOK_ID = os.getenv("PAYPAL_WEBHOOK_ID")
    PAYPAL_MODE = os.getenv("PAYPAL_MODE", "sandbox").lower().strip()
    PAYPAL_BASE_URL = os.getenv(
        "PAYPAL_BASE_URL",
        "https://api-m.paypal.com" if PAYPAL_MODE == "live" else "https://api-m.sandbox.paypal.com",
    )
    PAYPAL_API_TIMEOUT_SECONDS = int(os.getenv("PAYPAL_API_TIMEOUT_SECONDS", "15"))

    # Deposit fee schedule (PayPal: 3.9% + $0.30)
    DEPOSIT_FEE_PERCENTAGE = Decimal(os.getenv("DEPOSIT_FEE_PERCENTAGE", "3.9"))
    DEPOSIT_FIXED_FEE = Decimal(os.getenv("DEPOSIT_FIXED_FEE", "0.30"))
    MIN_DEPOSIT_AMOUNT = Decimal(os.getenv("MIN_DEPOSIT_AMOUNT", "1"))

    # Reconciliation
    BALANCE_RECONCILIATION_TOLERANCE = Decimal(os.getenv("BALANCE_RECONCILIATION_TOLERANCE", "0.01"))
    RECENT_COMPLETED_LOOKBACK_HOURS = int(os.getenv("RECENT_COMPLETED_LOOKBACK_HOURS", "24"))

    # Last-resort matching of provider events to the newest unmatched pending deposit
    ENABLE_PENDING_DEPOSIT_HEURISTIC = os.getenv("ENABLE_PENDING_DEPOSIT_HEURISTIC", "true").lower() == "true"

    # Manual reprocessing retries (linear backoff: delay * attempt)
    MANUAL_PROCESSING_MAX_RETRIES = int(os.getenv("MANUAL_PROCESSING_MAX_RETRIES", "2"))
    MANUAL_PROCESSING_RETRY_DELAY_SECONDS = float(os.getenv("MANUAL_PROCESSING_RETRY_DELAY_SECONDS", "1.0"))

    # Background retry of stuck deposits
    ENABLE_DEPOSIT_RETRY_JOB = os.getenv("ENABLE_DEPOSIT_RETRY_JOB", "true").lower() == "true"
    DEPOSIT_RETRY_INTERVAL_MINUTES = int(os.getenv("DEPOSIT_RETRY_INTERVAL_MINUTES", "5"))
    DEPOSIT_RETRY_MAX_ATTEMPTS = int(os.getenv("DEPOSIT_RETRY_MAX_ATTEMPTS", "5"))
    DEPOSIT_RETRY_MAX_AGE_MINUTES = int(os.getenv("DEPOSIT_RETRY_MAX_AGE_MINUTES", "60"))
    DEPOSIT_RETRY_LIMIT_PER_RUN = int(os.getenv("DEPOSIT_RETRY_LIMIT_PER_RUN", "10"))
    STALE_DEPOSIT_MINUTES = int(os.getenv("STALE_DEPOSIT_MINUTES", "30"))

    # Operator endpoints
    ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Deposit Service Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Is Production: {Config.IS_PRODUCTION}")

        if Config.DATABASE_SOURCE == "NOT CONFIGURED":
            logger.error(f"   ❌ Database: {Config.DATABASE_SOURCE}")
        else:
            logger.info(f"   Database: {Config.DATABASE_SOURCE}")

        logger.info(f"   PayPal Mode: {Config.PAYPAL_MODE} ({Config.PAYPAL_BASE_URL})")
        logger.info(f"   PayPal Credentials: {'✅ Set' if Config.PAYPAL_CLIENT_ID and Config.PAYPAL_CLIENT_SECRET else '❌ Not set'}")
        logger.info(f"   Deposit Fee: {Config.DEPOSIT_FEE_PERCENTAGE}% + ${Config.DEPOSIT_FIXED_FEE}")
        logger.info(f"   Minimum Deposit: ${Config.MIN_DEPOSIT_AMOUNT}")
        logger.info(f"   Pending Deposit Heuristic: {'ENABLED' if Config.ENABLE_PENDING_DEPOSIT_HEURISTIC else 'DISABLED'}")
        logger.info(f"   Deposit Retry Job: {'ENABLED' if Config.ENABLE_DEPOSIT_RETRY_JOB else 'DISABLED'} "
                    f"(every {Config.DEPOSIT_RETRY_INTERVAL_MINUTES}m)")

    @staticmethod
    def validate_webhook_security_configuration():
        """Validate webhook security configuration and surface reduced-trust mode"""
        logger.info("🔧 Webhook Security Configuration:")

        if Config.PAYPAL_WEBHOOK_ID:
            logger.info("   PAYPAL_WEBHOOK_ID: ✅ Configured")
            if not (Config.PAYPAL_CLIENT_ID and Config.PAYPAL_CLIENT_SECRET):
                logger.error("❌ PAYPAL_WEBHOOK_ID is set but PayPal API credentials are missing")
                logger.error("   Signature verification calls will fail and webhooks will be rejected")
            return True

        if Config.IS_PRODUCTION:
            logger.critical("🚨 PRODUCTION_SECURITY_RISK: PAYPAL_WEBHOOK_ID not configured!")
            logger.critical("   PayPal webhooks are accepted WITHOUT signature verification (reduced trust mode)")
        else:
            logger.warning("⚠️ PAYPAL_WEBHOOK_ID not configured - webhook signature verification skipped (reduced trust mode)")
        return False

    @staticmethod
    def validate_balance_configuration():
        """Validate fee and reconciliation settings"""
        if Config.DEPOSIT_FEE_PERCENTAGE < 0 or Config.DEPOSIT_FIXED_FEE < 0:
            raise ValueError("Deposit fee settings must not be negative")
        if Config.MIN_DEPOSIT_AMOUNT <= 0:
            raise ValueError("MIN_DEPOSIT_AMOUNT must be positive")
        if Config.BALANCE_RECONCILIATION_TOLERANCE < 0:
            raise ValueError("BALANCE_RECONCILIATION_TOLERANCE must not be negative")
        return True
