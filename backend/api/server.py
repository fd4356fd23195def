# api/server.py
# ============================================================================
# PAID SUBMISSION FULFILLMENT: FASTAPI SERVER
# ============================================================================
# Intake (fields + files) -> Stripe Checkout -> webhook -> email delivery
# ============================================================================

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
import structlog
import uvicorn

from config import configure_logging, settings
from database import Database
from pipeline.agents.checkout_gateway import CheckoutSessionGateway
from pipeline.agents.notification_dispatcher import (
    InMemoryMailTransport,
    NotificationDispatcher,
    SendGridMailTransport,
)
from pipeline.errors import (
    AlreadyInProgressError,
    FulfillmentError,
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from pipeline.fulfillment_engine import FulfillmentEngine
from schemas.submission import Attachment, SubmissionLimits, utcnow
from storage.submission_store import InMemorySubmissionStore, PostgresSubmissionStore
from tasks.recovery import recovery_loop

configure_logging()
logger = structlog.get_logger().bind(component="server")

START_TIME = utcnow()


# ============================================================================
# WIRING
# ============================================================================

def build_engine(config=settings) -> Tuple[FulfillmentEngine, Optional[Database]]:
    """Construct the engine and its collaborators from configuration."""
    store_options = dict(
        limits=SubmissionLimits(
            max_fields=config.MAX_FIELDS,
            max_field_length=config.MAX_FIELD_LENGTH,
            max_fields_bytes=config.MAX_FIELDS_BYTES,
            max_attachments=config.MAX_ATTACHMENTS,
            max_attachment_bytes=config.MAX_ATTACHMENT_BYTES,
            max_total_attachment_bytes=config.MAX_TOTAL_ATTACHMENT_BYTES,
        ),
        ttl=timedelta(hours=config.SUBMISSION_TTL_HOURS),
        claim_timeout=timedelta(seconds=config.CLAIM_TIMEOUT_SECONDS),
        delivered_retention=timedelta(hours=config.DELIVERED_RETENTION_HOURS),
        max_delivery_attempts=config.MAX_DELIVERY_ATTEMPTS,
    )

    database = None
    if config.DATABASE_URL:
        database = Database(config.DATABASE_URL, config.DB_MIN_POOL_SIZE, config.DB_MAX_POOL_SIZE)
        store = PostgresSubmissionStore(database, **store_options)
    else:
        logger.warning("database_not_configured", fallback="in_memory")
        store = InMemorySubmissionStore(**store_options)

    if config.SENDGRID_API_KEY:
        transport = SendGridMailTransport(config.SENDGRID_API_KEY)
    else:
        logger.warning("mail_transport_not_configured", fallback="in_memory")
        transport = InMemoryMailTransport()

    gateway = CheckoutSessionGateway(
        store,
        api_key=config.STRIPE_SECRET_KEY,
        webhook_secret=config.STRIPE_WEBHOOK_SECRET,
        product_name=config.PRODUCT_NAME,
        checkout_expiry=timedelta(minutes=config.CHECKOUT_EXPIRY_MINUTES),
    )
    dispatcher = NotificationDispatcher(
        transport,
        from_email=config.MAIL_FROM,
        operator_email=config.OPERATOR_EMAIL,
        recipient_field=config.RECIPIENT_FIELD,
    )
    engine = FulfillmentEngine(
        store,
        gateway,
        dispatcher,
        success_url=config.CHECKOUT_SUCCESS_URL,
        cancel_url=config.CHECKOUT_CANCEL_URL,
        background_delivery=config.BACKGROUND_DELIVERY,
        backoff_seconds=config.DELIVERY_BACKOFF_SECONDS,
    )
    return engine, database


def error_response(status_code: int, error: FulfillmentError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error.message,
            "code": error.code,
            "submissionId": error.submission_id,
        },
    )


def parse_amount(raw) -> int:
    """Amount arrives in minor units (e.g. cents) as an integer string or number."""
    if isinstance(raw, bool) or raw is None:
        raise ValidationError("Amount must be provided")
    if isinstance(raw, int):
        amount = raw
    else:
        text = str(raw).strip()
        if not text.isdigit():
            raise ValidationError("Amount must be a positive integer in minor currency units")
        amount = int(text)
    if amount <= 0:
        raise ValidationError("Amount must be a positive integer in minor currency units")
    return amount


async def read_intake(request: Request) -> Tuple[Dict[str, str], List[Attachment], object, str]:
    """Split an intake request into fields, attachments, amount and currency."""
    fields: Dict[str, str] = {}
    attachments: List[Attachment] = []
    amount = None
    currency = settings.DEFAULT_CURRENCY

    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Request body is not valid JSON")
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        amount = body.pop("amount", None)
        currency = str(body.pop("currency", currency))
        for key, value in body.items():
            if not isinstance(value, (str, int, float)) or isinstance(value, bool):
                raise ValidationError(f"Field '{key}' must be a scalar value")
            fields[key] = str(value)
        return fields, attachments, amount, currency

    form = await request.form()
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            content = await value.read()
            if not value.filename and not content:
                continue  # empty file input
            attachments.append(Attachment(
                name=key,
                filename=value.filename or key,
                content_type=value.content_type or "application/octet-stream",
                content=content,
            ))
        elif key == "amount":
            amount = value
        elif key == "currency":
            currency = value
        else:
            fields[key] = value
    return fields, attachments, amount, currency


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    engine: Optional[FulfillmentEngine] = None,
    database: Optional[Database] = None,
    recovery_enabled: bool = settings.RECOVERY_ENABLED,
) -> FastAPI:
    if engine is None:
        engine, database = build_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", store=engine.store.backend, env=settings.ENV)

        if database is not None:
            await database.initialize()

        recovery_task = None
        if recovery_enabled:
            recovery_task = asyncio.create_task(recovery_loop(engine))

        yield

        logger.info("server_stopping")
        if recovery_task:
            recovery_task.cancel()
            try:
                await recovery_task
            except asyncio.CancelledError:
                pass
        await engine.drain()
        if database is not None:
            await database.close()

    app = FastAPI(
        title="Paid Submission Fulfillment",
        description="Form intake, Stripe Checkout and webhook-driven email delivery",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------------

    @app.post("/create-checkout-session")
    async def create_checkout_session(request: Request):
        """
        Stage form fields and files, then open a Stripe Checkout Session.
        `amount` is in minor currency units.
        """
        try:
            fields, attachments, raw_amount, currency = await read_intake(request)
            amount = parse_amount(raw_amount)
            result = await request.app.state.engine.intake(fields, attachments, amount, currency)
        except ValidationError as e:
            logger.info("intake_rejected", error=e.message)
            return error_response(400, e)
        except GatewayError as e:
            return error_response(500, e)

        return {
            "submissionId": result.submission_id,
            "sessionId": result.session_id,
            "url": result.redirect_url,
        }

    @app.post("/api/submissions/{submission_id}/checkout")
    async def retry_checkout(submission_id: str, request: Request):
        """Re-open checkout for a staged submission after a gateway failure."""
        try:
            result = await request.app.state.engine.retry_checkout(submission_id)
        except NotFoundError as e:
            return error_response(404, e)
        except InvalidTransitionError as e:
            return error_response(409, e)
        except GatewayError as e:
            return error_response(500, e)

        return {
            "submissionId": result.submission_id,
            "sessionId": result.session_id,
            "url": result.redirect_url,
        }

    @app.get("/api/submissions/{submission_id}")
    async def submission_status(submission_id: str, request: Request):
        try:
            submission = await request.app.state.engine.store.get(submission_id)
        except NotFoundError as e:
            return error_response(404, e)
        return submission.summary()

    # ------------------------------------------------------------------------
    # Stripe webhook
    # ------------------------------------------------------------------------

    @app.post("/webhook")
    async def stripe_webhook(request: Request):
        """Raw body is read untouched; the signature covers those exact bytes."""
        payload = await request.body()
        signature = request.headers.get("stripe-signature")
        ack = await request.app.state.engine.on_callback(payload, signature)
        return JSONResponse(status_code=ack.status_code, content=ack.body())

    # ------------------------------------------------------------------------
    # Operator endpoints
    # ------------------------------------------------------------------------

    @app.get("/api/admin/submissions/failed")
    async def failed_submissions(request: Request, limit: int = 100):
        failed = await request.app.state.engine.store.list_failed(limit=limit)
        return {"count": len(failed), "submissions": [s.summary() for s in failed]}

    @app.post("/api/admin/submissions/{submission_id}/retry")
    async def retry_failed_submission(submission_id: str, request: Request):
        engine = request.app.state.engine
        try:
            result = await engine.requeue_failed(submission_id)
        except NotFoundError as e:
            return error_response(404, e)
        except (InvalidTransitionError, AlreadyInProgressError) as e:
            return error_response(409, e)

        submission = await engine.store.get(submission_id)
        return {
            "delivered": result is not None,
            "messageId": result.message_id if result else None,
            "submission": submission.summary(),
        }

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": "1.0.0",
            "store": engine.store.backend,
            "uptime_seconds": (utcnow() - START_TIME).total_seconds(),
        }

    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    port = int(os.getenv("PORT", str(settings.PORT)))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=settings.ENV == "development",
        log_level="info",
    )
