import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, Text, Uuid, func, text
from sqlalchemy.orm import relationship

from app.database import Base, JSONType


class Lead(Base):
    __tablename__ = "leads"
    __table_args__ = (
        CheckConstraint("score BETWEEN 0 AND 100", name="ck_lead_score_range"),
        Index("ix_leads_client_wa_user", "client_id", "wa_user_id"),
        # At most one open lead per (tenant, WhatsApp user).
        Index(
            "uq_leads_open_per_user",
            "client_id",
            "wa_user_id",
            unique=True,
            postgresql_where=text("conversation_status <> 'CLOSED'"),
            sqlite_where=text("conversation_status <> 'CLOSED'"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id"), nullable=False)
    wa_user_id = Column(Text, nullable=False)
    wa_profile_name = Column(Text)
    conversation_status = Column(Text, nullable=False, default="ACTIVE")  # ACTIVE, HUMAN_REQUIRED, HUMAN_TAKEN, CLOSED
    routing_state = Column(Text, nullable=False, default="ROUTING")  # ROUTING, AWAITING_REENTRY_CHOICE
    human_required_reason = Column(Text)
    human_operator_id = Column(Text)
    score = Column(Integer, nullable=False, default=0)
    flow_id = Column(Uuid, ForeignKey("client_flows.id"))
    current_step_id = Column(Uuid, ForeignKey("flow_steps.id"))
    reminders_sent = Column(Integer, nullable=False, default=0)
    irrelevant_streak = Column(Integer, nullable=False, default=0)
    extracted_fields = Column(JSONType, nullable=False, default=dict)
    free_text_summary = Column(Text)
    notified_at = Column(DateTime(timezone=True))
    taken_at = Column(DateTime(timezone=True))
    closed_at = Column(DateTime(timezone=True))
    last_user_message_at = Column(DateTime(timezone=True))
    last_bot_message_at = Column(DateTime(timezone=True))
    last_reminder_at = Column(DateTime(timezone=True))
    next_reminder_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    messages = relationship("Message", back_populates="lead", order_by="Message.created_at")
    reminder_jobs = relationship("ReminderJob", back_populates="lead")
