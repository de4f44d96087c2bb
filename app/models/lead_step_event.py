import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, Uuid, func

from app.database import Base


class LeadStepEvent(Base):
    __tablename__ = "lead_step_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id"), nullable=False)
    lead_id = Column(Uuid, ForeignKey("leads.id"), nullable=False)
    flow_id = Column(Uuid, ForeignKey("client_flows.id"), nullable=False)
    step_id = Column(Uuid, ForeignKey("flow_steps.id"), nullable=False)
    raw_user_text = Column(Text, nullable=False, default="")
    selected_option_id = Column(Uuid, ForeignKey("flow_step_options.id"))
    mapping_source = Column(Text, nullable=False)  # DIRECT_OPTION, AI_MAPPED, OUT_OF_SCOPE
    ai_summary = Column(Text)
    ai_out_of_scope = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
