import uuid

from sqlalchemy import Column, DateTime, Integer, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from courier.database import Base


class Bot(Base):
    __tablename__ = "bots"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    identifier = Column(Text, nullable=False, unique=True)  # bot's own JID / phone
    webhook_url = Column(Text)
    api_key = Column(Text)
    response_delay = Column(Integer, nullable=False, default=0)  # seconds, 0 = no batching
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    conversations = relationship("Conversation", back_populates="bot")
    clients = relationship("Client", back_populates="bot")
