import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, Uuid, func
from sqlalchemy.orm import relationship

from app.database import Base


class Channel(Base):
    __tablename__ = "client_channels"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id"), nullable=False)
    phone_number_id = Column(Text, nullable=False, unique=True)
    meta_access_token_enc = Column(Text, nullable=False)  # iv.tag.ciphertext, base64 parts
    meta_app_secret_enc = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    client = relationship("Client", back_populates="channels")
