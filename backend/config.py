"""
Configuration & Logging
=======================
Environment-driven settings shared by the store, gateway, dispatcher,
recovery loop and API server, plus the structlog setup used everywhere.
"""

import logging
import os

import structlog


# =============================================================================
# STRUCTURED LOGGING SETUP
# =============================================================================

def configure_logging(level: int = logging.INFO) -> None:
    """Configure structlog once for the whole process."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# CONFIGURATION
# =============================================================================

class Settings:
    """Service configuration from environment"""

    # Server
    PORT = int(os.getenv("PORT", "3000"))
    ENV = os.getenv("ENV", "development")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "https://take2eu.com").split(",")

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    FRONTEND_URL = os.getenv("FRONTEND_URL", "https://take2eu.com")
    CHECKOUT_SUCCESS_URL = os.getenv("CHECKOUT_SUCCESS_URL", f"{FRONTEND_URL}/#/success")
    CHECKOUT_CANCEL_URL = os.getenv("CHECKOUT_CANCEL_URL", f"{FRONTEND_URL}/#/cancel")
    PRODUCT_NAME = os.getenv("PRODUCT_NAME", "Form Submission")
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "eur")
    CHECKOUT_EXPIRY_MINUTES = int(os.getenv("CHECKOUT_EXPIRY_MINUTES", "60"))

    # Database (durable staged store); empty means in-memory
    DATABASE_URL = os.getenv("DATABASE_URL", "")
    DB_MIN_POOL_SIZE = int(os.getenv("DB_MIN_POOL_SIZE", "2"))
    DB_MAX_POOL_SIZE = int(os.getenv("DB_MAX_POOL_SIZE", "10"))

    # Staging lifecycle
    SUBMISSION_TTL_HOURS = int(os.getenv("SUBMISSION_TTL_HOURS", "24"))
    DELIVERED_RETENTION_HOURS = int(os.getenv("DELIVERED_RETENTION_HOURS", "72"))
    CLAIM_TIMEOUT_SECONDS = int(os.getenv("CLAIM_TIMEOUT_SECONDS", "600"))

    # Intake limits
    MAX_FIELDS = int(os.getenv("MAX_FIELDS", "100"))
    MAX_FIELD_LENGTH = int(os.getenv("MAX_FIELD_LENGTH", "10000"))
    MAX_FIELDS_BYTES = int(os.getenv("MAX_FIELDS_BYTES", str(256 * 1024)))
    MAX_ATTACHMENTS = int(os.getenv("MAX_ATTACHMENTS", "10"))
    MAX_ATTACHMENT_BYTES = int(os.getenv("MAX_ATTACHMENT_BYTES", str(10 * 1024 * 1024)))
    MAX_TOTAL_ATTACHMENT_BYTES = int(os.getenv("MAX_TOTAL_ATTACHMENT_BYTES", str(25 * 1024 * 1024)))

    # Delivery
    SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY", "")
    MAIL_FROM = os.getenv("MAIL_FROM", "no-reply@take2eu.com")
    OPERATOR_EMAIL = os.getenv("OPERATOR_EMAIL", "")
    RECIPIENT_FIELD = os.getenv("RECIPIENT_FIELD", "email")
    MAX_DELIVERY_ATTEMPTS = int(os.getenv("MAX_DELIVERY_ATTEMPTS", "5"))
    DELIVERY_BACKOFF_SECONDS = float(os.getenv("DELIVERY_BACKOFF_SECONDS", "2"))
    BACKGROUND_DELIVERY = os.getenv("BACKGROUND_DELIVERY", "true").lower() == "true"

    # Recovery loop
    RECOVERY_ENABLED = os.getenv("RECOVERY_ENABLED", "true").lower() == "true"
    RECOVERY_INTERVAL = int(os.getenv("RECOVERY_INTERVAL", "300"))
    RECOVERY_BATCH_SIZE = int(os.getenv("RECOVERY_BATCH_SIZE", "10"))


settings = Settings()
