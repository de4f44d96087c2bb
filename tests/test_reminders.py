from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from app.config import EngineConfig
from app.models import Lead, Message, ReminderJob
from app.services.reminder_service import ReminderScheduler, ReminderStatus, schedule_reminder
from app.services.render_service import REMINDER_BANNER
from conftest import WA_USER_ID, FakeGateway, bump_lead_version


@pytest.fixture
def scheduler(gateway, engine_config):
    return ReminderScheduler(gateway, engine_config)


def _later(hours=2):
    return datetime.now(timezone.utc) + timedelta(hours=hours)


def _jobs(db):
    db.expire_all()
    return db.query(ReminderJob).order_by(ReminderJob.created_at.asc(), ReminderJob.reminder_number.asc()).all()


def _lead(db):
    db.expire_all()
    return db.query(Lead).filter(Lead.wa_user_id == WA_USER_ID).first()


class TestScheduleReminder:
    def test_schedules_after_flow_delay(self, db, deliver, tenant):
        deliver("Hola")
        lead = _lead(db)
        now = datetime.now(timezone.utc)

        job = schedule_reminder(db, lead, tenant.flow, now)

        assert job.reminder_number == 1
        assert job.scheduled_for == now + timedelta(minutes=60)
        assert lead.next_reminder_at == job.scheduled_for
        db.commit()
        assert [j.status for j in _jobs(db)] == ["SKIPPED", "PENDING"]

    def test_nothing_scheduled_at_cap(self, db, deliver, tenant):
        deliver("Hola")
        lead = _lead(db)
        lead.reminders_sent = 2

        job = schedule_reminder(db, lead, tenant.flow, datetime.now(timezone.utc))
        db.commit()

        assert job is None
        assert _lead(db).next_reminder_at is None
        assert [j.status for j in _jobs(db)] == ["SKIPPED"]


class TestProcessDue:
    def test_nothing_due(self, db, deliver, scheduler, gateway):
        deliver("Hola")
        sent_before = len(gateway.sent)

        summary = scheduler.process_due(db, now=datetime.now(timezone.utc))

        assert summary == {"processed": 0, "sent": 0, "skipped": 0, "failed": 0}
        assert len(gateway.sent) == sent_before

    def test_sends_due_reminder_and_schedules_next(self, db, deliver, scheduler, gateway):
        deliver("Hola")

        summary = scheduler.process_due(db, now=_later())

        assert summary["sent"] == 1
        assert gateway.texts[-1] == (
            f"{REMINDER_BANNER}\n\n¿Qué servicio te interesa?\n1) Servicios\n2) Ecommerce\n3) Hablar con un ejecutivo"
        )
        lead = _lead(db)
        assert lead.reminders_sent == 1
        assert lead.last_reminder_at is not None
        assert lead.next_reminder_at is not None
        jobs = _jobs(db)
        assert [j.status for j in jobs] == ["SENT", "PENDING"]
        assert jobs[0].sent_at is not None
        assert jobs[1].reminder_number == 2
        assert db.query(Message).filter(Message.direction == "OUTBOUND").count() == 3

    def test_submenu_reminder_offers_back_to_menu(self, db, deliver, scheduler, gateway):
        deliver("Hola")
        deliver("1")

        scheduler.process_due(db, now=_later())

        assert gateway.texts[-1].endswith("0) Volver al menú principal")

    def test_stops_at_reminder_cap(self, db, deliver, scheduler, gateway):
        deliver("Hola")

        first = scheduler.process_due(db, now=_later(2))
        second = scheduler.process_due(db, now=_later(4))
        third = scheduler.process_due(db, now=_later(8))

        assert first["sent"] == 1
        assert second["sent"] == 1
        assert third["processed"] == 0
        lead = _lead(db)
        assert lead.reminders_sent == 2
        assert lead.next_reminder_at is None
        assert [j.status for j in _jobs(db)] == ["SENT", "SENT"]

    def test_closed_lead_is_skipped(self, db, deliver, scheduler, gateway):
        deliver("Hola")
        lead = _lead(db)
        lead.conversation_status = "CLOSED"
        lead.closed_at = datetime.now(timezone.utc)
        db.commit()
        sent_before = len(gateway.sent)

        summary = scheduler.process_due(db, now=_later())

        assert summary["skipped"] == 1
        assert len(gateway.sent) == sent_before
        job = _jobs(db)[0]
        assert job.status == ReminderStatus.SKIPPED.value
        assert job.error_text == "Lead is not active"

    def test_awaiting_reentry_is_skipped(self, db, deliver, scheduler):
        deliver("Hola")
        lead = _lead(db)
        lead.routing_state = "AWAITING_REENTRY_CHOICE"
        db.commit()

        summary = scheduler.process_due(db, now=_later())

        assert summary["skipped"] == 1

    def test_limit_reached_is_skipped(self, db, deliver, scheduler):
        deliver("Hola")
        lead = _lead(db)
        lead.reminders_sent = 2
        db.commit()

        summary = scheduler.process_due(db, now=_later())

        assert summary["skipped"] == 1
        assert _lead(db).next_reminder_at is None

    def test_no_channel_fails_job(self, db, deliver, scheduler, tenant):
        deliver("Hola")
        tenant.channel.is_active = False
        db.commit()

        summary = scheduler.process_due(db, now=_later())

        assert summary["failed"] == 1
        job = _jobs(db)[0]
        assert job.status == ReminderStatus.FAILED.value
        assert job.error_text == "No active channel"

    @patch("app.services.reminder_service.alert_error")
    def test_send_failure_marks_job_failed(self, mock_alert, db, deliver, scheduler, gateway):
        deliver("Hola")
        gateway.fail = True

        summary = scheduler.process_due(db, now=_later())

        assert summary == {"processed": 1, "sent": 0, "skipped": 0, "failed": 1}
        job = _jobs(db)[0]
        assert job.status == ReminderStatus.FAILED.value
        assert "500" in job.error_text
        assert _lead(db).reminders_sent == 0
        mock_alert.assert_called_once()

    def test_batch_size_bounds_run(self, db, deliver, gateway):
        deliver("Hola")
        deliver("Hola", wa_user_id="56900000002")
        scheduler = ReminderScheduler(gateway, EngineConfig(reminder_batch_size=1))

        summary = scheduler.process_due(db, now=_later())

        assert summary["processed"] == 1
        assert [j.status for j in _jobs(db)].count("SENT") == 1


class ConcurrentTurnGateway(FakeGateway):
    """Gateway during whose send an inbound turn updates the same lead."""

    def __init__(self, db):
        super().__init__()
        self.db = db

    def send_text(self, phone_number_id, access_token, to, text):
        bump_lead_version(self.db, to)
        return super().send_text(phone_number_id, access_token, to, text)


class TestConcurrentLeadUpdates:
    def test_lead_updated_during_send_still_counts_reminder(self, db, deliver, engine_config):
        deliver("Hola")
        version = _lead(db).version
        concurrent = ConcurrentTurnGateway(db)

        summary = ReminderScheduler(concurrent, engine_config).process_due(db, now=_later())

        assert summary == {"processed": 1, "sent": 1, "skipped": 0, "failed": 0}
        assert len(concurrent.sent) == 1
        lead = _lead(db)
        assert lead.reminders_sent == 1
        assert lead.last_reminder_at is not None
        assert lead.version > version
        assert [j.status for j in _jobs(db)] == ["SENT", "PENDING"]
        outbound = db.query(Message).filter(Message.direction == "OUTBOUND").order_by(Message.created_at.asc()).all()
        assert outbound[-1].text_content == concurrent.texts[0]

    def test_conflict_while_rescheduling_keeps_job_sent(self, db, deliver, scheduler, gateway):
        deliver("Hola")

        def _schedule_then_concurrent_update(db_, lead, flow, now):
            job = schedule_reminder(db_, lead, flow, now)
            bump_lead_version(db_)
            return job

        with patch(
            "app.services.reminder_service.schedule_reminder", side_effect=_schedule_then_concurrent_update
        ):
            summary = scheduler.process_due(db, now=_later())

        assert summary["sent"] == 1
        assert summary["failed"] == 0
        assert _lead(db).reminders_sent == 1
        assert [j.status for j in _jobs(db)] == ["SENT"]
        assert db.query(Message).filter(Message.direction == "OUTBOUND").count() == 3
