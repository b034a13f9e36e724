from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from courier.database import SessionLocal
from courier.logging_config import get_logger
from courier.models import Bot
from courier.services.message_service import mark_messages_forwarded
from courier.services.webhook_poster import DeliveryStatus, WebhookPoster

logger = get_logger("forward_service")

FORWARD_SINGLE = "forward_single"
FORWARD_BATCH = "forward_batch"


class DeliveryError(Exception):
    """Transient delivery failure; the queue retries the job."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def _get_bot(db: Session, bot_id: str) -> Bot | None:
    try:
        bot_uuid = UUID(str(bot_id))
    except (TypeError, ValueError):
        return None
    return db.query(Bot).filter(Bot.id == bot_uuid).first()


def _message_ids(job_name: str, payload: dict[str, Any]) -> list[str]:
    if job_name == FORWARD_BATCH:
        return [item.get("messageId") for item in payload.get("messages") or [] if item.get("messageId")]
    message_id = payload.get("messageId")
    return [message_id] if message_id else []


async def forward(
    job_name: str,
    payload: dict[str, Any],
    *,
    poster: WebhookPoster,
    session_factory: Callable[[], Session] = SessionLocal,
) -> str:
    """Deliver a single or batch payload to the bot's callback URL.

    Returns "delivered", "rejected" or "skipped". Raises DeliveryError when
    the callback kept failing transiently, so the job is retried.
    """
    bot_id = payload.get("botId")
    message_ids = _message_ids(job_name, payload)
    context = {"job_name": job_name, "bot_id": bot_id, "messages": len(message_ids)}

    db = session_factory()
    try:
        bot = _get_bot(db, bot_id)
        if bot is None:
            logger.warning("Bot not found, skipping delivery", extra={"context": context})
            return "skipped"
        if not bot.webhook_url:
            logger.warning("Bot has no webhook URL, skipping delivery", extra={"context": context})
            return "skipped"
        webhook_url = bot.webhook_url
    finally:
        db.close()

    result = await poster.post(webhook_url, payload)

    if result.status == DeliveryStatus.REJECTED:
        logger.error(
            "Delivery rejected by callback, not retrying",
            extra={"context": {**context, "status_code": result.status_code, "error": result.error}},
        )
        return "rejected"

    if result.status == DeliveryStatus.RETRYABLE_FAILURE:
        raise DeliveryError(result.error or "delivery failed", status_code=result.status_code)

    db = session_factory()
    try:
        updated = mark_messages_forwarded(db, message_ids)
    finally:
        db.close()

    logger.info(
        "Delivery completed",
        extra={"context": {**context, "attempts": result.attempts, "marked": updated}},
    )
    return "delivered"


async def forward_single(payload: dict[str, Any], **kwargs) -> str:
    return await forward(FORWARD_SINGLE, payload, **kwargs)


async def forward_batch(payload: dict[str, Any], **kwargs) -> str:
    return await forward(FORWARD_BATCH, payload, **kwargs)


def build_job_handlers(
    poster: WebhookPoster,
    session_factory: Callable[[], Session] = SessionLocal,
) -> dict[str, Callable]:
    """Handlers for DeliveryWorkerPool, keyed by job name."""

    async def handle_single(payload: dict[str, Any]) -> str:
        return await forward_single(payload, poster=poster, session_factory=session_factory)

    async def handle_batch(payload: dict[str, Any]) -> str:
        return await forward_batch(payload, poster=poster, session_factory=session_factory)

    return {FORWARD_SINGLE: handle_single, FORWARD_BATCH: handle_batch}
