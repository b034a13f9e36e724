import re
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from courier.logging_config import get_logger
from courier.models import Client, Conversation

logger = get_logger("conversation_service")


def normalize_participant_id(value: str | None) -> str | None:
    """Turn a phone number or JID into a JID (`<digits>@s.whatsapp.net`)."""
    if not value:
        return None
    text = str(value).strip()
    if not text:
        return None
    if "@" in text:
        return text
    digits = re.sub(r"\D", "", text)
    if not digits:
        return None
    return f"{digits}@s.whatsapp.net"


def default_conversation_name(participant_id: str, push_name: str | None = None) -> str:
    if push_name and push_name.strip():
        return push_name.strip()
    return f"User {participant_id[:6]}"


def find_conversation(db: Session, bot_id: UUID, participant_id: str) -> Conversation | None:
    return (
        db.query(Conversation)
        .filter(Conversation.bot_id == bot_id, Conversation.identifier == participant_id)
        .first()
    )


def resolve_conversation(
    db: Session,
    bot_id: UUID,
    participant_id: str,
    push_name: str | None = None,
) -> tuple[Conversation, bool]:
    """Find the conversation for (bot, participant) or create it.

    Returns the conversation and whether this call created it. A unique
    violation on insert means a concurrent writer created the row first; the
    existing row is re-read and returned as not new.
    """
    conversation = find_conversation(db, bot_id, participant_id)
    if conversation:
        return conversation, False

    conversation = Conversation(
        bot_id=bot_id,
        identifier=participant_id,
        name=default_conversation_name(participant_id, push_name),
        status="CONNECTED",
    )
    try:
        with db.begin_nested():
            db.add(conversation)
            db.flush()
    except IntegrityError:
        logger.info(
            "Conversation create race, re-reading existing row",
            extra={"context": {"bot_id": str(bot_id), "participant_id": participant_id}},
        )
        existing = find_conversation(db, bot_id, participant_id)
        if existing is None:
            raise
        return existing, False

    logger.info(
        "New conversation",
        extra={"context": {"bot_id": str(bot_id), "participant_id": participant_id, "conversation_id": str(conversation.id)}},
    )
    return conversation, True


def is_handled_by_human(db: Session, bot_id: UUID, participant_id: str) -> bool:
    """Whether a person has taken over this contact."""
    client = db.query(Client).filter(Client.bot_id == bot_id, Client.jid == participant_id).first()
    return bool(client and client.is_handled_by_human)
