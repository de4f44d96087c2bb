import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import relationship

from app.database import Base, JSONType


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("lead_id", "external_message_id", name="uq_messages_lead_external_id"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id"), nullable=False)
    lead_id = Column(Uuid, ForeignKey("leads.id"), nullable=False)
    direction = Column(Text, nullable=False)  # INBOUND, OUTBOUND
    phone_number_id = Column(Text)
    external_message_id = Column(Text)
    text_content = Column(Text, nullable=False, default="")
    raw_payload = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    lead = relationship("Lead", back_populates="messages")
