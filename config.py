"""Configuration management for the OTC payments feed"""

import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection
    # ENVIRONMENT takes absolute priority, then deployment heuristics
    ENVIRONMENT = os.getenv("ENVIRONMENT", "").lower().strip()
    if ENVIRONMENT:
        IS_PRODUCTION = ENVIRONMENT == "production"
    else:
        IS_PRODUCTION = bool(os.getenv("RAILWAY_PUBLIC_DOMAIN"))

    # Database
    # Local development falls back to a SQLite file, production must set DATABASE_URL
    DATABASE_URL = os.getenv("DATABASE_URL") or (
        None if IS_PRODUCTION else "sqlite:///./otc_feed.db"
    )
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Escrow contract the wallet provider deposits into
    MULTISIG_CONTRACT_ADDRESS = os.getenv(
        "MULTISIG_CONTRACT_ADDRESS", "0x0000000000000000000000000000000000000000"
    )
    USDT_CURRENCY = "USDT"
    SUPPORTED_FIAT_CURRENCIES = [
        c.strip().upper()
        for c in os.getenv("SUPPORTED_FIAT_CURRENCIES", "NGN,VES,USD").split(",")
        if c.strip()
    ]
    MIN_OTC_AMOUNT = Decimal(os.getenv("MIN_OTC_AMOUNT", "0.01"))

    # Number of "fiat not received" claims after which the depositor's
    # refund signature is recorded
    FIAT_REJECTION_REFUND_THRESHOLD = int(os.getenv("FIAT_REJECTION_REFUND_THRESHOLD", "2"))

    # Notifications
    NOTIFICATIONS_ENABLED = os.getenv("NOTIFICATIONS_ENABLED", "true").lower() == "true"

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # API server
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("PORT", os.getenv("API_PORT", "8000")))

    @classmethod
    def log_environment_config(cls):
        """Log the resolved configuration at startup"""
        env_name = "PRODUCTION" if cls.IS_PRODUCTION else "DEVELOPMENT"
        db_backend = (cls.DATABASE_URL or "unset").split(":", 1)[0]
        logger.info(f"🌍 ENVIRONMENT: {env_name}")
        logger.info(f"🗄️ DATABASE_BACKEND: {db_backend}")
        logger.info(f"🔐 MULTISIG_CONTRACT: {cls.MULTISIG_CONTRACT_ADDRESS}")
        logger.info(
            f"⚖️ REFUND_THRESHOLD: {cls.FIAT_REJECTION_REFUND_THRESHOLD} fiat rejection(s)"
        )
        logger.info(f"🔔 NOTIFICATIONS: {'enabled' if cls.NOTIFICATIONS_ENABLED else 'disabled'}")
