"""Read-only access to a tenant's flow graph (flows, steps, options)."""

from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Flow, FlowOption, FlowStep

logger = get_logger("flow_service")


def load_flow(db: Session, flow_id: UUID) -> Optional[Flow]:
    return db.query(Flow).filter(Flow.id == flow_id).first()


def load_first_step(db: Session, flow_id: UUID) -> Optional[FlowStep]:
    return db.query(FlowStep).filter(FlowStep.flow_id == flow_id).order_by(FlowStep.step_order.asc()).first()


def load_active_flow(db: Session, client_id: UUID) -> Optional[Tuple[Flow, FlowStep]]:
    """Active flow of the tenant with its first step, or None when nothing is routable."""
    flow = (
        db.query(Flow)
        .filter(Flow.client_id == client_id, Flow.is_active.is_(True))
        .order_by(Flow.created_at.desc())
        .first()
    )
    if not flow:
        return None

    first_step = load_first_step(db, flow.id)
    if not first_step:
        logger.warning("Active flow has no steps", extra={"context": {"flow_id": str(flow.id)}})
        return None

    return flow, first_step


def load_step(db: Session, step_id: UUID) -> Optional[Tuple[FlowStep, List[FlowOption]]]:
    step = db.query(FlowStep).filter(FlowStep.id == step_id).first()
    if not step:
        return None
    options = (
        db.query(FlowOption).filter(FlowOption.step_id == step.id).order_by(FlowOption.option_order.asc()).all()
    )
    return step, options


def load_next_by_order(db: Session, flow_id: UUID, from_order: int) -> Optional[FlowStep]:
    return (
        db.query(FlowStep)
        .filter(FlowStep.flow_id == flow_id, FlowStep.step_order > from_order)
        .order_by(FlowStep.step_order.asc())
        .first()
    )


def resolve_next_step(db: Session, option: FlowOption, step: FlowStep) -> Optional[FlowStep]:
    """Target of an option: its explicit edge if set, else the next step by order.

    A dangling explicit target means the graph is exhausted.
    """
    if option.next_step_id:
        target = db.query(FlowStep).filter(FlowStep.id == option.next_step_id).first()
        if not target:
            logger.warning(
                "Option points to a missing step",
                extra={"context": {"option_id": str(option.id), "next_step_id": str(option.next_step_id)}},
            )
        return target

    return load_next_by_order(db, step.flow_id, step.step_order)


def is_submenu(step: FlowStep, first_step: FlowStep) -> bool:
    return step.id != first_step.id
