from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import EngineConfig
from app.logging_config import get_logger
from app.models import Client, Flow, FlowStep, Lead, Message
from app.services.crypto_service import decrypt_secret
from app.services.flow_service import load_active_flow
from app.services.message_service import (
    list_messages,
    record_outbound,
    resolve_channel_for_lead,
    touch_last_bot_message,
)
from app.services.reminder_service import clear_reminders, schedule_reminder
from app.services.result import INVALID_STATE, NO_CHANNEL, NOT_FOUND, Result
from app.services.state_machine import OPEN_STATUSES, LeadStatus, RoutingState, is_open, operator_take
from app.services.whatsapp_service import WhatsAppGateway

logger = get_logger("lead_service")

_OPEN_VALUES = [s.value for s in OPEN_STATUSES]


@dataclass
class LeadResolution:
    lead: Optional[Lead] = None
    created: bool = False
    ignored_reason: Optional[str] = None


def find_open_lead(db: Session, client_id: UUID, wa_user_id: str) -> Optional[Lead]:
    return (
        db.query(Lead)
        .filter(
            Lead.client_id == client_id,
            Lead.wa_user_id == wa_user_id,
            Lead.conversation_status.in_(_OPEN_VALUES),
        )
        .order_by(Lead.created_at.desc())
        .first()
    )


def closed_within_cooldown(db: Session, client_id: UUID, wa_user_id: str, cutoff: datetime) -> bool:
    recent = (
        db.query(Lead.id)
        .filter(
            Lead.client_id == client_id,
            Lead.wa_user_id == wa_user_id,
            Lead.conversation_status == LeadStatus.CLOSED.value,
            Lead.closed_at.isnot(None),
            Lead.closed_at > cutoff,
        )
        .first()
    )
    return recent is not None


def place_on_step(db: Session, lead: Lead, flow: Flow, step: FlowStep, now: datetime) -> None:
    """Bind the lead to a step and (re)schedule its reminder."""
    lead.flow_id = flow.id
    lead.current_step_id = step.id
    lead.routing_state = RoutingState.ROUTING.value
    schedule_reminder(db, lead, flow, now)


def resolve_or_create_lead(
    db: Session,
    client: Client,
    wa_user_id: str,
    wa_profile_name: Optional[str],
    config: EngineConfig,
    now: datetime,
) -> LeadResolution:
    """Open lead of the user, or a new one bound to the first step of the active flow."""
    lead = find_open_lead(db, client.id, wa_user_id)
    if lead:
        return LeadResolution(lead=lead)

    cutoff = now - timedelta(seconds=config.reopen_cooldown_seconds)
    if closed_within_cooldown(db, client.id, wa_user_id, cutoff):
        return LeadResolution(ignored_reason="reopen_cooldown")

    active = load_active_flow(db, client.id)
    if not active:
        return LeadResolution(ignored_reason="no_active_flow")
    flow, first_step = active

    lead = Lead(
        client_id=client.id,
        wa_user_id=wa_user_id,
        wa_profile_name=wa_profile_name,
        conversation_status=LeadStatus.ACTIVE.value,
        routing_state=RoutingState.ROUTING.value,
        score=0,
        reminders_sent=0,
        irrelevant_streak=0,
        extracted_fields={},
        created_at=now,
    )
    try:
        with db.begin_nested():
            db.add(lead)
            db.flush()
    except IntegrityError:
        # Another delivery opened a lead for this user first.
        existing = find_open_lead(db, client.id, wa_user_id)
        return LeadResolution(lead=existing, ignored_reason=None if existing else "lead_conflict")

    place_on_step(db, lead, flow, first_step, now)
    logger.info(
        "Lead created",
        extra={"context": {"lead_id": str(lead.id), "client_id": str(client.id), "flow_id": str(flow.id)}},
    )
    return LeadResolution(lead=lead, created=True)


def get_lead(db: Session, lead_id: UUID) -> Optional[Lead]:
    return db.query(Lead).filter(Lead.id == lead_id).first()


def take_lead(db: Session, lead_id: UUID, operator_id: Optional[str] = None) -> Result[Lead]:
    """HUMAN_REQUIRED -> HUMAN_TAKEN. Concurrent claims: exactly one wins."""
    now = datetime.now(timezone.utc)
    updated = (
        db.query(Lead)
        .filter(Lead.id == lead_id, Lead.conversation_status == LeadStatus.HUMAN_REQUIRED.value)
        .update(
            {
                Lead.conversation_status: operator_take(LeadStatus.HUMAN_REQUIRED).value,
                Lead.human_operator_id: operator_id,
                Lead.taken_at: now,
                Lead.version: Lead.version + 1,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.rollback()
        if not get_lead(db, lead_id):
            return Result.failure("Lead not found", NOT_FOUND)
        return Result.failure("Lead is not in HUMAN_REQUIRED", INVALID_STATE)

    db.commit()
    logger.info("Lead taken", extra={"context": {"lead_id": str(lead_id), "operator_id": operator_id}})
    return Result.success(get_lead(db, lead_id))


def close_lead(db: Session, lead_id: UUID) -> Result[Lead]:
    lead = get_lead(db, lead_id)
    if not lead:
        return Result.failure("Lead not found", NOT_FOUND)
    if not is_open(lead.conversation_status):
        return Result.success(lead)

    now = datetime.now(timezone.utc)
    updated = (
        db.query(Lead)
        .filter(Lead.id == lead_id, Lead.conversation_status.in_(_OPEN_VALUES))
        .update(
            {
                Lead.conversation_status: LeadStatus.CLOSED.value,
                Lead.routing_state: RoutingState.ROUTING.value,
                Lead.closed_at: now,
                Lead.next_reminder_at: None,
                Lead.version: Lead.version + 1,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.rollback()
        return Result.success(get_lead(db, lead_id))

    db.commit()
    db.refresh(lead)
    clear_reminders(db, lead, "Lead closed")
    db.commit()
    logger.info("Lead closed by operator", extra={"context": {"lead_id": str(lead_id)}})
    return Result.success(lead)


def send_operator_message(db: Session, gateway: WhatsAppGateway, lead_id: UUID, text: str) -> Result[Message]:
    """Free-text operator message. GatewayError/SecretsError propagate."""
    lead = get_lead(db, lead_id)
    if not lead:
        return Result.failure("Lead not found", NOT_FOUND)
    if lead.conversation_status == LeadStatus.CLOSED.value:
        return Result.failure("Lead is closed", INVALID_STATE)

    channel = resolve_channel_for_lead(db, lead)
    if not channel:
        return Result.failure("No active channel", NO_CHANNEL)

    access_token = decrypt_secret(channel.meta_access_token_enc)
    provider_id, raw = gateway.send_text(channel.phone_number_id, access_token, lead.wa_user_id, text)

    now = datetime.now(timezone.utc)
    message = record_outbound(db, lead, channel.phone_number_id, provider_id, text, raw, now=now)
    touch_last_bot_message(db, lead.id, now)
    db.commit()
    logger.info("Operator message sent", extra={"context": {"lead_id": str(lead_id)}})
    return Result.success(message)


def get_lead_history(db: Session, lead_id: UUID) -> Result[Tuple[Lead, List[Message]]]:
    lead = get_lead(db, lead_id)
    if not lead:
        return Result.failure("Lead not found", NOT_FOUND)
    return Result.success((lead, list_messages(db, lead_id)))
