from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from courier.database import get_db
from courier.dependencies import require_admin_token
from courier.logging_config import get_logger
from courier.models import Bot, Client
from courier.schemas.bot import ClientResponse, ClientUpsert
from courier.services.conversation_service import normalize_participant_id

logger = get_logger("clients")

router = APIRouter(prefix="/clients", tags=["clients"], dependencies=[Depends(require_admin_token)])


def _find_client(db: Session, bot_id: UUID, jid: str) -> Client | None:
    return db.query(Client).filter(Client.bot_id == bot_id, Client.jid == jid).first()


def _apply(client: Client, request: ClientUpsert) -> None:
    for field in ("name", "phone", "email", "status"):
        value = getattr(request, field)
        if value is not None:
            setattr(client, field, value.upper() if field == "status" else value)


@router.post("", response_model=ClientResponse)
def upsert_client(request: ClientUpsert, db: Session = Depends(get_db)):
    """Create or update a contact. Status READY/ATTENDED stops automated delivery."""
    try:
        bot_id = UUID(request.botId)
    except ValueError:
        raise HTTPException(status_code=404, detail="Bot not found")
    if not db.query(Bot).filter(Bot.id == bot_id).first():
        raise HTTPException(status_code=404, detail="Bot not found")

    jid = normalize_participant_id(request.jid)
    if jid is None:
        raise HTTPException(status_code=400, detail="jid is required")

    client = _find_client(db, bot_id, jid)
    if client is None:
        client = Client(bot_id=bot_id, jid=jid, status="PENDING")
        _apply(client, request)
        try:
            with db.begin_nested():
                db.add(client)
                db.flush()
        except IntegrityError:
            client = _find_client(db, bot_id, jid)
            if client is None:
                raise
            _apply(client, request)
    else:
        _apply(client, request)

    db.commit()
    db.refresh(client)
    logger.info(
        "Client upserted",
        extra={"context": {"bot_id": str(bot_id), "jid": jid, "status": client.status}},
    )
    return ClientResponse(id=str(client.id), botId=str(client.bot_id), jid=client.jid, name=client.name, status=client.status)
