import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import relationship

from app.database import Base


class Flow(Base):
    __tablename__ = "client_flows"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id"), nullable=False)
    name = Column(Text, nullable=False)
    welcome_message = Column(Text, nullable=False)
    max_reminders = Column(Integer, nullable=False, default=2)
    reminder_delay_minutes = Column(Integer, nullable=False, default=60)
    max_irrelevant_streak = Column(Integer, nullable=False, default=3)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    client = relationship("Client", back_populates="flows")
    steps = relationship("FlowStep", back_populates="flow", order_by="FlowStep.step_order")


class FlowStep(Base):
    __tablename__ = "flow_steps"
    __table_args__ = (UniqueConstraint("flow_id", "step_order"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    flow_id = Column(Uuid, ForeignKey("client_flows.id"), nullable=False)
    step_order = Column(Integer, nullable=False)
    prompt_text = Column(Text, nullable=False)
    allow_free_text = Column(Boolean, nullable=False, default=False)

    flow = relationship("Flow", back_populates="steps")
    options = relationship(
        "FlowOption",
        back_populates="step",
        order_by="FlowOption.option_order",
        foreign_keys="FlowOption.step_id",
    )


class FlowOption(Base):
    __tablename__ = "flow_step_options"
    __table_args__ = (
        UniqueConstraint("step_id", "option_order"),
        CheckConstraint("score_delta BETWEEN -100 AND 100", name="ck_option_score_delta"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    step_id = Column(Uuid, ForeignKey("flow_steps.id"), nullable=False)
    option_order = Column(Integer, nullable=False)
    option_code = Column(Text, nullable=False)
    label_text = Column(Text, nullable=False)
    score_delta = Column(Integer, nullable=False, default=0)
    is_contact_human = Column(Boolean, nullable=False, default=False)
    is_terminal = Column(Boolean, nullable=False, default=False)
    next_step_id = Column(Uuid, ForeignKey("flow_steps.id"))  # None: next step by order

    step = relationship("FlowStep", back_populates="options", foreign_keys=[step_id])
