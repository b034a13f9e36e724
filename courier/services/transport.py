"""Seam between the messaging-network sessions and the delivery pipeline.

Live connections (login, QR pairing, event decoding, media download) are
handled outside this service. Each connected bot registers a session object
here; decoded inbound events come back through `message_received`.
"""

from typing import Any, Callable, Protocol, runtime_checkable

from pydantic import ValidationError
from sqlalchemy.orm import Session

from courier.database import SessionLocal
from courier.logging_config import get_logger
from courier.schemas.message import InboundEvent
from courier.services.ingestion_service import IngestResult, ingest_message

logger = get_logger("transport")


@runtime_checkable
class TransportSession(Protocol):
    @property
    def is_ready(self) -> bool: ...

    async def send(self, conversation_id: str, payload: dict[str, Any]) -> Any: ...


class TransportRegistry:
    def __init__(
        self,
        *,
        queue=None,
        batcher=None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.queue = queue
        self.batcher = batcher
        self.session_factory = session_factory
        self._sessions: dict[str, TransportSession] = {}

    def register(self, bot_id, session: TransportSession) -> None:
        self._sessions[str(bot_id)] = session
        logger.info("Transport session registered", extra={"context": {"bot_id": str(bot_id)}})

    def unregister(self, bot_id) -> TransportSession | None:
        session = self._sessions.pop(str(bot_id), None)
        if session is not None:
            logger.info("Transport session removed", extra={"context": {"bot_id": str(bot_id)}})
        return session

    def get(self, bot_id) -> TransportSession | None:
        return self._sessions.get(str(bot_id))

    def __len__(self) -> int:
        return len(self._sessions)

    async def message_received(self, bot_id, event: InboundEvent | dict[str, Any]) -> IngestResult | None:
        """Callback for inbound events. Failures are logged, never raised."""
        try:
            if not isinstance(event, InboundEvent):
                event = InboundEvent.model_validate(event)
        except ValidationError as exc:
            logger.warning(
                "Dropping malformed inbound event",
                extra={"context": {"bot_id": str(bot_id), "error": str(exc)}},
            )
            return None

        db = self.session_factory()
        try:
            return await ingest_message(db, bot_id, event, queue=self.queue, batcher=self.batcher)
        except Exception as exc:
            db.rollback()
            logger.error(
                "Failed to process inbound event",
                extra={"context": {"bot_id": str(bot_id), "external_id": event.externalId, "error": str(exc)}},
                exc_info=True,
            )
            return None
        finally:
            db.close()
