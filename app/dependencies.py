"""FastAPI dependency providers for the engine's external capabilities."""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from app.config import Settings, get_settings
from app.services.classifier_service import OptionClassifier, build_classifier
from app.services.email_service import Notifier, ResendEmailNotifier
from app.services.inbound_service import InboundPipeline
from app.services.phrase_service import PhraseBook, load_phrase_book
from app.services.reminder_service import ReminderScheduler
from app.services.whatsapp_service import WhatsAppGateway


def get_gateway(settings: Settings = Depends(get_settings)) -> WhatsAppGateway:
    return WhatsAppGateway(settings.whatsapp_api_base_url, timeout_seconds=settings.whatsapp_send_timeout_seconds)


def get_classifier(settings: Settings = Depends(get_settings)) -> OptionClassifier:
    return build_classifier(settings)


def get_notifier(settings: Settings = Depends(get_settings)) -> Notifier:
    return ResendEmailNotifier(
        settings.resend_api_key,
        settings.notification_from_email,
        timeout_seconds=settings.email_timeout_seconds,
    )


def get_phrase_book(settings: Settings = Depends(get_settings)) -> PhraseBook:
    return load_phrase_book(settings.phrases_path)


def get_inbound_pipeline(
    settings: Settings = Depends(get_settings),
    gateway: WhatsAppGateway = Depends(get_gateway),
    classifier: OptionClassifier = Depends(get_classifier),
    notifier: Notifier = Depends(get_notifier),
    phrases: PhraseBook = Depends(get_phrase_book),
) -> InboundPipeline:
    return InboundPipeline(gateway, classifier, notifier, phrases, settings.engine_config())


def get_reminder_scheduler(
    settings: Settings = Depends(get_settings),
    gateway: WhatsAppGateway = Depends(get_gateway),
) -> ReminderScheduler:
    return ReminderScheduler(gateway, settings.engine_config())


def require_operator_token(
    x_operator_token: Optional[str] = Header(default=None, alias="X-Operator-Token"),
    settings: Settings = Depends(get_settings),
) -> None:
    expected = settings.operator_api_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="OPERATOR_API_TOKEN not configured",
        )
    if not x_operator_token or not hmac.compare_digest(x_operator_token.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid operator token")
