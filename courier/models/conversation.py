import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from courier.database import Base


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("bot_id", "identifier", name="uq_conversations_bot_identifier"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    bot_id = Column(Uuid, ForeignKey("bots.id"), nullable=False)
    identifier = Column(Text, nullable=False)  # participant JID
    name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="CONNECTED")  # CONNECTED, DISCONNECTED
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    bot = relationship("Bot", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")
