"""Inbound webhook pipeline: one delivery in, at most one routing decision out.

Order per delivery: parse, channel, signature, client, lead, rate limit,
idempotent insert, status gate, routing, replies.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.config import EngineConfig
from app.logging_config import LeadLoggerAdapter, get_logger
from app.models import Channel, Client, Flow, FlowStep, Lead, LeadStepEvent
from app.schemas.webhook import InboundMessage, parse_inbound_message
from app.services.classifier_service import OptionClassifier
from app.services.crypto_service import decrypt_secret
from app.services.email_service import Notifier
from app.services.escalation_service import (
    apply_escalation,
    check_safety,
    clamp_score,
    decide_option_escalation,
    notify_escalation,
)
from app.services.flow_service import (
    is_submenu,
    load_active_flow,
    load_first_step,
    load_flow,
    load_step,
    resolve_next_step,
)
from app.services.lead_service import place_on_step, resolve_or_create_lead
from app.services.message_service import (
    count_recent_inbound,
    insert_inbound,
    record_outbound,
    touch_last_bot_message,
    touch_last_user_message,
)
from app.services.option_resolver import OptionResolver, Resolution, ResolutionKind
from app.services.phrase_service import PhraseBook
from app.services.reminder_service import clear_reminders, schedule_reminder
from app.services.render_service import (
    MSG_BACK_TO_MAIN_MENU,
    MSG_OPTIONS_RECOVERY,
    MSG_REENTRY_HINT,
    MSG_REENTRY_INVALID,
    MSG_REENTRY_RESET,
    MSG_STREAK_CLOSED,
    render_handoff,
    render_out_of_scope,
    render_step_prompt,
    render_with_options,
)
from app.services.state_machine import EscalationReason, LeadStatus, RoutingState, close
from app.services.whatsapp_service import WhatsAppGateway, verify_signature

logger = get_logger("inbound_service")


class Outcome(str, Enum):
    IGNORED = "ignored"
    RATE_LIMITED = "rate_limited"
    DEDUPLICATED = "deduplicated"
    SUPPRESSED = "suppressed"
    STARTED = "started"
    ESCALATED = "escalated"
    REENTRY_PROMPTED = "reentry_prompted"
    REENTRY_RESET = "reentry_reset"
    BACK_TO_MENU = "back_to_menu"
    OPTIONS_LISTED = "options_listed"
    OUT_OF_SCOPE = "out_of_scope"
    CLOSED = "closed"
    TERMINAL_CHOICE_REQUESTED = "terminal_choice_requested"
    ADVANCED = "advanced"


@dataclass
class ProcessResult:
    outcome: Outcome
    reason: Optional[str] = None
    lead_id: Optional[UUID] = None

    def to_response(self) -> dict:
        return {
            "received": True,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "lead_id": str(self.lead_id) if self.lead_id else None,
        }


@dataclass
class _Turn:
    """Routing decision already applied to the lead; replies are sent after commit."""

    outcome: Outcome
    reason: Optional[str] = None
    replies: List[str] = field(default_factory=list)
    notify_reason: Optional[EscalationReason] = None


class InboundPipeline:
    def __init__(
        self,
        gateway: WhatsAppGateway,
        classifier: OptionClassifier,
        notifier: Notifier,
        phrases: PhraseBook,
        config: EngineConfig,
    ):
        self.gateway = gateway
        self.notifier = notifier
        self.phrases = phrases
        self.config = config
        self.resolver = OptionResolver(classifier, phrases)

    def process(self, db: Session, raw_body: bytes, signature_header: Optional[str]) -> ProcessResult:
        """Handle one webhook delivery.

        Raises SignatureError on a bad signature; SecretsError, GatewayError and
        SQLAlchemyError abort the turn. Everything else is a labelled outcome.
        """
        try:
            payload = json.loads(raw_body or b"")
        except ValueError:
            payload = None
        message = parse_inbound_message(payload)
        if not message:
            return self._ignored("invalid_payload")

        channel = (
            db.query(Channel)
            .filter(Channel.phone_number_id == message.phone_number_id, Channel.is_active.is_(True))
            .first()
        )
        if not channel:
            return self._ignored("unknown_channel", {"phone_number_id": message.phone_number_id})

        app_secret = decrypt_secret(channel.meta_app_secret_enc)
        verify_signature(raw_body, app_secret, signature_header)

        client = db.get(Client, channel.client_id)
        if not client:
            return self._ignored("unknown_client", {"client_id": str(channel.client_id)})

        now = datetime.now(timezone.utc)
        resolution = resolve_or_create_lead(
            db, client, message.wa_user_id, message.wa_profile_name, self.config, now
        )
        if not resolution.lead:
            db.rollback()
            return self._ignored(resolution.ignored_reason, {"client_id": str(client.id)})
        lead = resolution.lead
        log = LeadLoggerAdapter(logger, {"lead_id": str(lead.id), "client_id": str(client.id)})

        window_start = now - timedelta(seconds=self.config.rate_limit_window_seconds)
        if count_recent_inbound(db, lead.id, window_start) >= self.config.rate_limit_max_messages:
            db.commit()
            log.warning("Inbound rate limit reached")
            return ProcessResult(Outcome.RATE_LIMITED, lead_id=lead.id)

        inserted = insert_inbound(
            db,
            lead,
            message.phone_number_id,
            message.external_message_id,
            message.text,
            message.raw_payload,
            now,
        )
        if not inserted:
            db.commit()
            log.info("Duplicate delivery", context={"external_message_id": message.external_message_id})
            return ProcessResult(Outcome.DEDUPLICATED, lead_id=lead.id)

        touch_last_user_message(db, lead.id, now, message.wa_profile_name)
        db.commit()

        turn = self._route_with_retry(db, lead.id, client, message, resolution.created, now)
        if turn.replies:
            self._send_replies(db, lead.id, channel, message.wa_user_id, turn.replies)
        if turn.notify_reason:
            notify_escalation(self.notifier, client, db.get(Lead, lead.id), turn.notify_reason)

        log.info("Inbound processed", context={"outcome": turn.outcome.value, "reason": turn.reason})
        return ProcessResult(turn.outcome, reason=turn.reason, lead_id=lead.id)

    def _ignored(self, reason: str, context: Optional[dict] = None) -> ProcessResult:
        logger.info("Inbound ignored", extra={"context": {"reason": reason, **(context or {})}})
        return ProcessResult(Outcome.IGNORED, reason=reason)

    def _route_with_retry(
        self,
        db: Session,
        lead_id: UUID,
        client: Client,
        message: InboundMessage,
        created: bool,
        now: datetime,
    ) -> _Turn:
        """Apply the routing decision and commit it before any reply goes out.

        A concurrent turn that committed first bumps Lead.version; the lead is
        re-read and the message routed again against the fresh state.
        """
        conflicts = 0
        while True:
            lead = db.get(Lead, lead_id)
            try:
                turn = self._decide(db, lead, client, message, created, now)
                db.commit()
                return turn
            except StaleDataError:
                db.rollback()
                conflicts += 1
                if conflicts > self.config.routing_conflict_retries:
                    raise
                logger.warning(
                    "Concurrent update of lead, re-routing",
                    extra={"context": {"lead_id": str(lead_id), "attempt": conflicts}},
                )

    def _send_replies(self, db: Session, lead_id: UUID, channel: Channel, to: str, replies: List[str]) -> None:
        access_token = decrypt_secret(channel.meta_access_token_enc)
        lead = db.get(Lead, lead_id)
        for text in replies:
            provider_id, raw = self.gateway.send_text(channel.phone_number_id, access_token, to, text)
            sent_at = datetime.now(timezone.utc)
            record_outbound(db, lead, channel.phone_number_id, provider_id, text, raw, now=sent_at)
            touch_last_bot_message(db, lead_id, sent_at)
            db.commit()

    def _decide(
        self,
        db: Session,
        lead: Lead,
        client: Client,
        message: InboundMessage,
        created: bool,
        now: datetime,
    ) -> _Turn:
        if lead.conversation_status != LeadStatus.ACTIVE.value:
            return _Turn(Outcome.SUPPRESSED, reason=lead.conversation_status)

        step_bundle = load_step(db, lead.current_step_id) if lead.current_step_id else None
        flow = load_flow(db, lead.flow_id) if lead.flow_id and step_bundle else None
        if flow:
            first_step = load_first_step(db, flow.id)
            if not first_step:
                return _Turn(Outcome.IGNORED, reason="invalid_step_or_options")
        else:
            # Unbound leads always restart on the tenant's current flow.
            active = load_active_flow(db, client.id)
            if not active:
                return _Turn(Outcome.IGNORED, reason="no_active_flow")
            flow, first_step = active
            place_on_step(db, lead, flow, first_step, now)
            step_bundle = load_step(db, first_step.id)
        step, options = step_bundle
        if not options:
            return _Turn(Outcome.IGNORED, reason="invalid_step_or_options")
        submenu = is_submenu(step, first_step)

        if created:
            replies = [flow.welcome_message] if (flow.welcome_message or "").strip() else []
            replies.append(render_step_prompt(step.prompt_text, options, submenu))
            return _Turn(Outcome.STARTED, replies=replies)

        safety_reason = check_safety(db, lead, step, self.config)
        if safety_reason:
            return self._escalate(db, lead, client, safety_reason, now)

        text = message.text
        if lead.routing_state == RoutingState.AWAITING_REENTRY_CHOICE.value:
            return self._handle_reentry(db, lead, client, flow, first_step, text, now)

        if submenu and self.phrases.is_back_to_main_menu(text):
            lead.irrelevant_streak = 0
            place_on_step(db, lead, flow, first_step, now)
            _, first_options = load_step(db, first_step.id)
            return _Turn(Outcome.BACK_TO_MENU, replies=[render_with_options(MSG_BACK_TO_MAIN_MENU, first_options)])

        resolution = self.resolver.resolve(
            text,
            options,
            irrelevant_streak=lead.irrelevant_streak or 0,
            context={"client_name": client.name, "step_prompt": step.prompt_text},
        )

        if resolution.kind == ResolutionKind.LIST_RECOVERY:
            lead.irrelevant_streak = 0
            schedule_reminder(db, lead, flow, now)
            return _Turn(Outcome.OPTIONS_LISTED, replies=[render_with_options(MSG_OPTIONS_RECOVERY, options, submenu)])

        self._record_event(db, lead, step, text, resolution, now)

        if resolution.kind == ResolutionKind.OUT_OF_SCOPE:
            return self._handle_out_of_scope(db, lead, client, flow, options, submenu, resolution, now)

        return self._handle_match(db, lead, client, flow, step, first_step, resolution, now)

    def _record_event(
        self, db: Session, lead: Lead, step: FlowStep, text: str, resolution: Resolution, now: datetime
    ) -> None:
        db.add(
            LeadStepEvent(
                client_id=lead.client_id,
                lead_id=lead.id,
                flow_id=step.flow_id,
                step_id=step.id,
                raw_user_text=text,
                selected_option_id=resolution.option.id if resolution.option else None,
                mapping_source=resolution.mapping_source.value,
                ai_summary=resolution.ai_summary,
                ai_out_of_scope=resolution.ai_out_of_scope,
                created_at=now,
            )
        )

    def _escalate(self, db: Session, lead: Lead, client: Client, reason: EscalationReason, now: datetime) -> _Turn:
        should_notify = apply_escalation(db, lead, reason, now)
        return _Turn(
            Outcome.ESCALATED,
            reason=reason.value,
            replies=[render_handoff(client.human_forward_number)],
            notify_reason=reason if should_notify else None,
        )

    def _handle_reentry(
        self,
        db: Session,
        lead: Lead,
        client: Client,
        flow: Flow,
        first_step: FlowStep,
        text: str,
        now: datetime,
    ) -> _Turn:
        if self.phrases.is_reentry_escalate(text):
            return self._escalate(db, lead, client, EscalationReason.REENTRY_ESCALATION, now)

        if self.phrases.is_reentry_resume(text):
            lead.irrelevant_streak = 0
            place_on_step(db, lead, flow, first_step, now)
            _, first_options = load_step(db, first_step.id)
            return _Turn(Outcome.REENTRY_RESET, replies=[render_with_options(MSG_REENTRY_RESET, first_options)])

        return _Turn(Outcome.REENTRY_PROMPTED, replies=[MSG_REENTRY_INVALID])

    def _handle_out_of_scope(
        self,
        db: Session,
        lead: Lead,
        client: Client,
        flow: Flow,
        options,
        submenu: bool,
        resolution: Resolution,
        now: datetime,
    ) -> _Turn:
        lead.irrelevant_streak = (lead.irrelevant_streak or 0) + 1
        if resolution.ai_summary:
            lead.free_text_summary = resolution.ai_summary

        if lead.irrelevant_streak >= flow.max_irrelevant_streak:
            lead.conversation_status = close(LeadStatus(lead.conversation_status)).value
            lead.closed_at = now
            clear_reminders(db, lead, "Lead closed: irrelevant streak")
            return _Turn(Outcome.CLOSED, reason="irrelevant_streak", replies=[MSG_STREAK_CLOSED])

        schedule_reminder(db, lead, flow, now)
        return _Turn(Outcome.OUT_OF_SCOPE, replies=[render_out_of_scope(client.name, options, submenu)])

    def _handle_match(
        self,
        db: Session,
        lead: Lead,
        client: Client,
        flow: Flow,
        step: FlowStep,
        first_step: FlowStep,
        resolution: Resolution,
        now: datetime,
    ) -> _Turn:
        option = resolution.option
        lead.score = clamp_score((lead.score or 0) + (option.score_delta or 0))
        lead.irrelevant_streak = 0
        if resolution.ai_summary:
            lead.free_text_summary = resolution.ai_summary

        reason = decide_option_escalation(option, lead.score, client.score_threshold)
        if reason:
            return self._escalate(db, lead, client, reason, now)

        if option.is_terminal:
            lead.routing_state = RoutingState.AWAITING_REENTRY_CHOICE.value
            clear_reminders(db, lead, "Awaiting reentry choice")
            return _Turn(Outcome.TERMINAL_CHOICE_REQUESTED, replies=[MSG_REENTRY_HINT])

        next_step = resolve_next_step(db, option, step)
        next_bundle = load_step(db, next_step.id) if next_step else None
        if not next_bundle:
            return self._escalate(db, lead, client, EscalationReason.FLOW_COMPLETED, now)
        next_step, next_options = next_bundle

        place_on_step(db, lead, flow, next_step, now)
        return _Turn(
            Outcome.ADVANCED,
            replies=[render_step_prompt(next_step.prompt_text, next_options, is_submenu(next_step, first_step))],
        )
