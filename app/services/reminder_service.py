from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.config import EngineConfig
from app.logging_config import get_logger
from app.models import Flow, Lead, ReminderJob
from app.services.alert_service import alert_error
from app.services.crypto_service import decrypt_secret
from app.services.flow_service import is_submenu, load_first_step, load_flow, load_step
from app.services.message_service import record_outbound, resolve_channel_for_lead
from app.services.render_service import render_reminder
from app.services.state_machine import LeadStatus, RoutingState
from app.services.whatsapp_service import WhatsAppGateway

logger = get_logger("reminder_service")

MAX_ERROR_TEXT_LENGTH = 700


class ReminderStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


def _set_job_status(db: Session, job_id: UUID, expected: ReminderStatus, new: ReminderStatus, **fields) -> bool:
    """Conditional status update. False if the job already left `expected`."""
    updated = (
        db.query(ReminderJob)
        .filter(ReminderJob.id == job_id, ReminderJob.status == expected.value)
        .update({ReminderJob.status: new.value, **fields}, synchronize_session=False)
    )
    return updated == 1


def _record_reminder_sent(db: Session, lead_id: UUID, at: datetime) -> int:
    """Count a delivered reminder without bumping Lead.version. Returns the new count."""
    db.query(Lead).filter(Lead.id == lead_id).update(
        {
            Lead.reminders_sent: func.coalesce(Lead.reminders_sent, 0) + 1,
            Lead.last_reminder_at: at,
            Lead.last_bot_message_at: at,
        },
        synchronize_session=False,
    )
    return db.query(Lead.reminders_sent).filter(Lead.id == lead_id).scalar()


def supersede_pending(db: Session, lead_id: UUID, reason: str) -> int:
    return (
        db.query(ReminderJob)
        .filter(ReminderJob.lead_id == lead_id, ReminderJob.status == ReminderStatus.PENDING.value)
        .update(
            {ReminderJob.status: ReminderStatus.SKIPPED.value, ReminderJob.error_text: reason},
            synchronize_session=False,
        )
    )


def clear_reminders(db: Session, lead: Lead, reason: str = "Lead left routing") -> None:
    supersede_pending(db, lead.id, reason)
    lead.next_reminder_at = None


def schedule_reminder(db: Session, lead: Lead, flow: Flow, now: datetime) -> Optional[ReminderJob]:
    """Replace any pending reminder with one due after the flow's delay.

    Nothing is scheduled once the lead reached the flow's reminder cap.
    """
    supersede_pending(db, lead.id, "Superseded by a newer step")
    reminders_sent = lead.reminders_sent or 0
    if reminders_sent >= flow.max_reminders:
        lead.next_reminder_at = None
        return None

    scheduled_for = now + timedelta(minutes=flow.reminder_delay_minutes)
    job = ReminderJob(
        client_id=lead.client_id,
        lead_id=lead.id,
        reminder_number=reminders_sent + 1,
        scheduled_for=scheduled_for,
        status=ReminderStatus.PENDING.value,
        created_at=now,
    )
    db.add(job)
    lead.next_reminder_at = scheduled_for
    return job


class ReminderScheduler:
    """Sends due reminder jobs in a bounded batch."""

    def __init__(self, gateway: WhatsAppGateway, config: EngineConfig):
        self.gateway = gateway
        self.config = config

    def process_due(self, db: Session, now: Optional[datetime] = None) -> dict:
        now = now or datetime.now(timezone.utc)
        summary = {"processed": 0, "sent": 0, "skipped": 0, "failed": 0}

        jobs = (
            db.query(ReminderJob)
            .filter(ReminderJob.status == ReminderStatus.PENDING.value, ReminderJob.scheduled_for <= now)
            .order_by(ReminderJob.scheduled_for.asc())
            .limit(self.config.reminder_batch_size)
            .all()
        )
        job_ids = [job.id for job in jobs]

        for job_id in job_ids:
            summary["processed"] += 1
            try:
                status = self._process_job(db, job_id, now)
            except Exception as e:
                db.rollback()
                logger.exception("Reminder job failed", extra={"context": {"job_id": str(job_id)}})
                self._fail_after_error(db, job_id, str(e))
                alert_error("Reminder job failed", {"job_id": str(job_id), "error": str(e)})
                summary["failed"] += 1
                continue
            summary[status] += 1

        if job_ids:
            logger.info("Reminder batch processed", extra={"context": summary})
        return summary

    def _skip(self, db: Session, job: ReminderJob, reason: str) -> str:
        _set_job_status(db, job.id, ReminderStatus.PENDING, ReminderStatus.SKIPPED, error_text=reason)
        db.commit()
        logger.info("Reminder skipped", extra={"context": {"job_id": str(job.id), "reason": reason}})
        return "skipped"

    def _fail(self, db: Session, job: ReminderJob, reason: str) -> str:
        _set_job_status(db, job.id, ReminderStatus.PENDING, ReminderStatus.FAILED, error_text=reason)
        db.commit()
        logger.warning("Reminder failed", extra={"context": {"job_id": str(job.id), "reason": reason}})
        return "failed"

    def _fail_after_error(self, db: Session, job_id: UUID, error: str) -> None:
        error_text = error[:MAX_ERROR_TEXT_LENGTH]
        if not _set_job_status(db, job_id, ReminderStatus.SENT, ReminderStatus.FAILED, error_text=error_text):
            _set_job_status(db, job_id, ReminderStatus.PENDING, ReminderStatus.FAILED, error_text=error_text)
        db.commit()

    def _process_job(self, db: Session, job_id: UUID, now: datetime) -> str:
        job = db.get(ReminderJob, job_id)
        if not job or job.status != ReminderStatus.PENDING.value:
            return "skipped"

        lead = db.get(Lead, job.lead_id)
        if not lead or lead.conversation_status != LeadStatus.ACTIVE.value:
            return self._skip(db, job, "Lead is not active")
        if lead.routing_state != RoutingState.ROUTING.value:
            return self._skip(db, job, "Lead is awaiting a reentry choice")
        if not lead.flow_id or not lead.current_step_id:
            return self._skip(db, job, "Lead has no flow or step")

        flow = load_flow(db, lead.flow_id)
        step_bundle = load_step(db, lead.current_step_id)
        if not flow or not step_bundle:
            return self._skip(db, job, "Flow or step not found")
        step, options = step_bundle

        if (lead.reminders_sent or 0) >= flow.max_reminders:
            lead.next_reminder_at = None
            return self._skip(db, job, "Reminder limit reached")

        channel = resolve_channel_for_lead(db, lead)
        if not channel:
            return self._fail(db, job, "No active channel")

        # Claim before sending so an overlapping run cannot send the same job.
        if not _set_job_status(db, job.id, ReminderStatus.PENDING, ReminderStatus.SENT, sent_at=now):
            db.rollback()
            return "skipped"
        db.commit()

        first_step = load_first_step(db, flow.id)
        text = render_reminder(step.prompt_text, options, is_submenu(step, first_step or step))
        access_token = decrypt_secret(channel.meta_access_token_enc)
        provider_id, raw = self.gateway.send_text(channel.phone_number_id, access_token, lead.wa_user_id, text)

        # Delivered: bookkeeping below must not conflict with a concurrent inbound turn.
        sent_at = datetime.now(timezone.utc)
        lead_id = lead.id
        record_outbound(db, lead, channel.phone_number_id, provider_id, text, raw, now=sent_at)
        reminders_sent = _record_reminder_sent(db, lead_id, sent_at)
        db.commit()

        self._schedule_next(db, lead_id, flow, sent_at)

        logger.info(
            "Reminder sent",
            extra={
                "context": {
                    "job_id": str(job_id),
                    "lead_id": str(lead_id),
                    "reminder_number": job.reminder_number,
                    "reminders_sent": reminders_sent,
                }
            },
        )
        return "sent"

    def _schedule_next(self, db: Session, lead_id: UUID, flow: Flow, sent_at: datetime) -> None:
        lead = db.get(Lead, lead_id)
        if (lead.reminders_sent or 0) >= flow.max_reminders:
            lead.next_reminder_at = None
        else:
            schedule_reminder(db, lead, flow, sent_at)
        try:
            db.commit()
        except StaleDataError:
            # A newer inbound turn committed first and owns the lead's schedule.
            db.rollback()
            logger.warning(
                "Lead changed while scheduling next reminder",
                extra={"context": {"lead_id": str(lead_id)}},
            )
