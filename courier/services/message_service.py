import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Iterable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from courier.logging_config import get_logger
from courier.models import Conversation, Message

logger = get_logger("message_service")


def build_external_id(
    external_id: str | None,
    participant_id: str | None,
    timestamp: int | None,
) -> str:
    """Pick a dedup key for events that may arrive without a provider id.

    A retried event keeps its provider timestamp, so (participant, timestamp)
    dedups it. Without either, every event is treated as new.
    """
    if external_id and external_id.strip():
        return external_id.strip()
    if participant_id and timestamp is not None:
        return f"wh_{participant_id}:{timestamp}"
    return f"wh_{uuid.uuid4().hex}"


def build_outbound_external_id() -> str:
    return f"out_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def find_message_by_external_id(db: Session, external_id: str) -> Message | None:
    return db.query(Message).filter(Message.external_id == external_id).first()


def persist_inbound_message(
    db: Session,
    conversation: Conversation,
    *,
    external_id: str,
    sender: str,
    content: str,
    message_type: str,
    from_me: bool = False,
) -> tuple[Message, bool]:
    """Store a message once per external id.

    Returns (message, created). A redelivered event resolves to the stored
    row, unchanged.
    """
    existing = find_message_by_external_id(db, external_id)
    if existing:
        logger.info("Duplicate message, skipping", extra={"context": {"external_id": external_id}})
        return existing, False

    message = Message(
        external_id=external_id,
        conversation_id=conversation.id,
        sender=sender,
        from_me=from_me,
        content=content or "",
        type=message_type,
        is_processed=False,
    )
    try:
        with db.begin_nested():
            db.add(message)
            db.flush()
    except IntegrityError:
        logger.warning(
            "Message create collision, re-reading existing row",
            extra={"context": {"external_id": external_id}},
        )
        existing = find_message_by_external_id(db, external_id)
        if existing is None:
            raise
        return existing, False

    return message, True


def save_outbound_message(
    db: Session,
    conversation_id: UUID,
    *,
    sender: str,
    content: str,
    message_type: str,
) -> Message:
    """Log a message sent by the bot. It never goes through delivery."""
    now = datetime.now(timezone.utc)
    message = Message(
        external_id=build_outbound_external_id(),
        conversation_id=conversation_id,
        sender=sender,
        from_me=True,
        content=content or "",
        type=message_type,
        is_processed=True,
        forwarded_at=now,
    )
    db.add(message)
    db.flush()
    return message


def _coerce_uuid(value) -> UUID | None:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def mark_messages_forwarded(db: Session, message_ids: Iterable) -> int:
    """Set forwarded_at/is_processed on messages that are not forwarded yet."""
    ids = [mid for mid in (_coerce_uuid(value) for value in message_ids) if mid is not None]
    if not ids:
        return 0
    updated = (
        db.query(Message)
        .filter(Message.id.in_(ids), Message.forwarded_at.is_(None))
        .update(
            {Message.forwarded_at: datetime.now(timezone.utc), Message.is_processed: True},
            synchronize_session=False,
        )
    )
    db.commit()
    return updated
