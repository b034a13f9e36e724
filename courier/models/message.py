import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from courier.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id = Column(Text, nullable=False, unique=True)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    sender = Column(Text, nullable=False)
    from_me = Column(Boolean, nullable=False, default=False)
    content = Column(Text, nullable=False, default="")
    type = Column(Text, nullable=False, default="TEXT")  # TEXT, IMAGE, AUDIO, PTT, VIDEO, DOCUMENT
    forwarded_at = Column(DateTime(timezone=True))
    is_processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    conversation = relationship("Conversation", back_populates="messages")
