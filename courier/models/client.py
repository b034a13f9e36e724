import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from courier.database import Base

# Contacts in these states are answered by a person, not the automation flow.
HUMAN_HANDLED_STATUSES = frozenset({"READY", "ATTENDED"})


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (UniqueConstraint("bot_id", "jid", name="uq_clients_bot_jid"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    bot_id = Column(Uuid, ForeignKey("bots.id"), nullable=False)
    jid = Column(Text, nullable=False)
    name = Column(Text)
    phone = Column(Text)
    email = Column(Text)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, READY, ATTENDED
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    bot = relationship("Bot", back_populates="clients")

    @property
    def is_handled_by_human(self) -> bool:
        return self.status in HUMAN_HANDLED_STATUSES
