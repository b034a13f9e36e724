"""Bot management endpoints."""

import secrets
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from courier.database import get_db
from courier.dependencies import require_admin_token
from courier.logging_config import get_logger
from courier.models import Bot
from courier.schemas.bot import BotCreate, BotResponse, WebhookConfigUpdate

logger = get_logger("bots")

router = APIRouter(prefix="/bots", tags=["bots"], dependencies=[Depends(require_admin_token)])

API_KEY_PREFIX = "crr_"


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_hex(16)}"


def _bot_response(bot: Bot) -> BotResponse:
    return BotResponse(
        id=str(bot.id),
        name=bot.name,
        identifier=bot.identifier,
        webhookUrl=bot.webhook_url,
        apiKey=bot.api_key,
        responseDelay=bot.response_delay or 0,
    )


def _get_bot_or_404(db: Session, bot_id: str) -> Bot:
    try:
        bot_uuid = UUID(bot_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Bot not found")
    bot = db.query(Bot).filter(Bot.id == bot_uuid).first()
    if not bot:
        raise HTTPException(status_code=404, detail="Bot not found")
    return bot


@router.post("", response_model=BotResponse, status_code=201)
def create_bot(request: BotCreate, db: Session = Depends(get_db)):
    bot = Bot(name=request.name, identifier=request.identifier, api_key=generate_api_key(), response_delay=0)
    db.add(bot)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Bot identifier already exists")
    db.refresh(bot)
    logger.info("Bot created", extra={"context": {"bot_id": str(bot.id), "identifier": bot.identifier}})
    return _bot_response(bot)


@router.get("/{bot_id}/webhook", response_model=BotResponse)
def get_webhook(bot_id: str, db: Session = Depends(get_db)):
    return _bot_response(_get_bot_or_404(db, bot_id))


@router.put("/{bot_id}/webhook", response_model=BotResponse)
def update_webhook(bot_id: str, request: WebhookConfigUpdate, db: Session = Depends(get_db)):
    bot = _get_bot_or_404(db, bot_id)
    updates = request.model_dump(exclude_unset=True)
    if "webhookUrl" in updates:
        bot.webhook_url = updates["webhookUrl"] or None
    if updates.get("responseDelay") is not None:
        bot.response_delay = updates["responseDelay"]
    db.commit()
    db.refresh(bot)
    logger.info(
        "Webhook config updated",
        extra={"context": {"bot_id": str(bot.id), "has_webhook": bool(bot.webhook_url), "response_delay": bot.response_delay}},
    )
    return _bot_response(bot)


@router.post("/{bot_id}/regenerate-key", response_model=BotResponse)
def regenerate_key(bot_id: str, db: Session = Depends(get_db)):
    bot = _get_bot_or_404(db, bot_id)
    bot.api_key = generate_api_key()
    db.commit()
    db.refresh(bot)
    logger.info("API key regenerated", extra={"context": {"bot_id": str(bot.id)}})
    return _bot_response(bot)
