"""Rules that hand a lead over to a human, and the handover side effects."""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.config import EngineConfig
from app.logging_config import get_logger
from app.models import Client, FlowOption, FlowStep, Lead
from app.services.email_service import Notifier
from app.services.message_service import count_outbound, count_step_events
from app.services.reminder_service import clear_reminders
from app.services.render_service import NOTIFICATION_SUBJECT, render_notification_html
from app.services.state_machine import EscalationReason, LeadStatus, RoutingState, escalate

logger = get_logger("escalation_service")


def check_safety(db: Session, lead: Lead, step: FlowStep, config: EngineConfig) -> Optional[EscalationReason]:
    """Pre-routing guard: runaway conversation or a lead stuck on one step."""
    if count_outbound(db, lead.id) >= config.max_bot_turns:
        return EscalationReason.SAFETY_MAX_BOT_TURNS
    if count_step_events(db, lead.id, step.id) >= config.max_same_step_events:
        return EscalationReason.SAFETY_SAME_STEP_LOOP
    return None


def decide_option_escalation(option: FlowOption, new_score: int, score_threshold: int) -> Optional[EscalationReason]:
    """Post-routing guard. Explicit human request wins over the score threshold."""
    if option.is_contact_human:
        return EscalationReason.USER_REQUEST
    if new_score >= score_threshold:
        return EscalationReason.SCORE_THRESHOLD
    return None


def clamp_score(score: int) -> int:
    return max(0, min(100, score))


def apply_escalation(db: Session, lead: Lead, reason: EscalationReason, now: datetime) -> bool:
    """Move the lead to HUMAN_REQUIRED. Returns True if the tenant must be notified."""
    lead.conversation_status = escalate(LeadStatus(lead.conversation_status)).value
    lead.human_required_reason = reason.value
    lead.routing_state = RoutingState.ROUTING.value
    clear_reminders(db, lead, f"Escalated: {reason.value}")

    should_notify = lead.notified_at is None
    if should_notify:
        lead.notified_at = now

    logger.info(
        "Lead escalated",
        extra={"context": {"lead_id": str(lead.id), "reason": reason.value, "notify": should_notify}},
    )
    return should_notify


def notify_escalation(notifier: Notifier, client: Client, lead: Lead, reason: EscalationReason) -> bool:
    """Email the tenant. Failure is logged and never propagates."""
    if not client.notification_email:
        logger.warning("Client has no notification email", extra={"context": {"client_id": str(client.id)}})
        return False

    html = render_notification_html(
        lead_name=lead.wa_profile_name or lead.wa_user_id,
        lead_id=str(lead.id),
        score=lead.score or 0,
        reason=reason.value,
    )
    try:
        sent = notifier.notify(client.notification_email, NOTIFICATION_SUBJECT, html)
    except Exception as e:
        logger.error(f"Notification email raised: {e}", extra={"context": {"lead_id": str(lead.id)}})
        return False

    if not sent:
        logger.error(
            "Lead notification email failed",
            extra={"context": {"lead_id": str(lead.id), "client_id": str(client.id), "reason": reason.value}},
        )
    return sent
