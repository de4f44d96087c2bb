import uuid

from sqlalchemy import Column, DateTime, Integer, Text, Uuid, func
from sqlalchemy.orm import relationship

from app.database import Base


class Client(Base):
    __tablename__ = "clients"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="active")
    score_threshold = Column(Integer, nullable=False, default=100)
    human_forward_number = Column(Text)
    notification_email = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    channels = relationship("Channel", back_populates="client")
    flows = relationship("Flow", back_populates="client")
