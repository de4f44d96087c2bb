import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, Uuid, func
from sqlalchemy.orm import relationship

from app.database import Base


class ReminderJob(Base):
    __tablename__ = "reminder_jobs"
    __table_args__ = (Index("ix_reminder_jobs_due", "status", "scheduled_for"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id"), nullable=False)
    lead_id = Column(Uuid, ForeignKey("leads.id"), nullable=False)
    reminder_number = Column(Integer, nullable=False, default=1)
    scheduled_for = Column(DateTime(timezone=True), nullable=False)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, SENT, SKIPPED, FAILED
    sent_at = Column(DateTime(timezone=True))
    error_text = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    lead = relationship("Lead", back_populates="reminder_jobs")
