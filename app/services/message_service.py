from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Channel, Lead, LeadStepEvent, Message

logger = get_logger("message_service")


class MessageDirection(str, Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


def insert_inbound(
    db: Session,
    lead: Lead,
    phone_number_id: str,
    external_message_id: Optional[str],
    text: str,
    raw_payload: dict,
    now: datetime,
) -> Optional[Message]:
    """Insert an inbound message. Returns None if (lead, external id) already exists."""
    message = Message(
        client_id=lead.client_id,
        lead_id=lead.id,
        direction=MessageDirection.INBOUND.value,
        phone_number_id=phone_number_id,
        external_message_id=external_message_id,
        text_content=text,
        raw_payload=raw_payload or {},
        created_at=now,
    )
    # Pending changes must not be rolled back with the savepoint.
    db.flush()
    try:
        with db.begin_nested():
            db.add(message)
            db.flush()
    except IntegrityError:
        logger.info(
            "Duplicate inbound message",
            extra={"context": {"lead_id": str(lead.id), "external_message_id": external_message_id}},
        )
        return None
    return message


def record_outbound(
    db: Session,
    lead: Lead,
    phone_number_id: str,
    external_message_id: Optional[str],
    text: str,
    raw_payload: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> Message:
    message = Message(
        client_id=lead.client_id,
        lead_id=lead.id,
        direction=MessageDirection.OUTBOUND.value,
        phone_number_id=phone_number_id,
        external_message_id=external_message_id,
        text_content=text,
        raw_payload=raw_payload or {},
        created_at=now or datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    return message


def touch_last_bot_message(db: Session, lead_id: UUID, at: datetime) -> None:
    # Bookkeeping only; does not bump Lead.version.
    db.query(Lead).filter(Lead.id == lead_id).update({Lead.last_bot_message_at: at}, synchronize_session=False)


def touch_last_user_message(db: Session, lead_id: UUID, at: datetime, profile_name: Optional[str] = None) -> None:
    """Record user activity without bumping Lead.version; the profile name is only filled once."""
    db.query(Lead).filter(Lead.id == lead_id).update({Lead.last_user_message_at: at}, synchronize_session=False)
    if profile_name:
        db.query(Lead).filter(Lead.id == lead_id, Lead.wa_profile_name.is_(None)).update(
            {Lead.wa_profile_name: profile_name}, synchronize_session=False
        )


def count_recent_inbound(db: Session, lead_id: UUID, since: datetime) -> int:
    return (
        db.query(Message)
        .filter(
            Message.lead_id == lead_id,
            Message.direction == MessageDirection.INBOUND.value,
            Message.created_at > since,
        )
        .count()
    )


def count_outbound(db: Session, lead_id: UUID) -> int:
    return (
        db.query(Message)
        .filter(Message.lead_id == lead_id, Message.direction == MessageDirection.OUTBOUND.value)
        .count()
    )


def count_step_events(db: Session, lead_id: UUID, step_id: UUID) -> int:
    return db.query(LeadStepEvent).filter(LeadStepEvent.lead_id == lead_id, LeadStepEvent.step_id == step_id).count()


def list_messages(db: Session, lead_id: UUID) -> List[Message]:
    return db.query(Message).filter(Message.lead_id == lead_id).order_by(Message.created_at.asc()).all()


def resolve_channel_for_lead(db: Session, lead: Lead) -> Optional[Channel]:
    """Channel of the lead's most recent message, else any active channel of the tenant."""
    last = (
        db.query(Message)
        .filter(Message.lead_id == lead.id, Message.phone_number_id.isnot(None))
        .order_by(Message.created_at.desc())
        .first()
    )
    if last:
        channel = (
            db.query(Channel)
            .filter(
                Channel.client_id == lead.client_id,
                Channel.phone_number_id == last.phone_number_id,
                Channel.is_active.is_(True),
            )
            .first()
        )
        if channel:
            return channel

    return (
        db.query(Channel)
        .filter(Channel.client_id == lead.client_id, Channel.is_active.is_(True))
        .order_by(Channel.created_at.asc())
        .first()
    )
