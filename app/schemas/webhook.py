from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class _MetaModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class MetaTextBody(_MetaModel):
    body: Optional[str] = None


class MetaMessage(_MetaModel):
    id: Optional[str] = None
    text: Optional[MetaTextBody] = None
    from_: Optional[str] = Field(default=None, alias="from")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class MetaProfile(_MetaModel):
    name: Optional[str] = None


class MetaContact(_MetaModel):
    profile: Optional[MetaProfile] = None


class MetaMetadata(_MetaModel):
    phone_number_id: Optional[str] = None


class MetaChangeValue(_MetaModel):
    metadata: Optional[MetaMetadata] = None
    contacts: Optional[List[MetaContact]] = None
    messages: Optional[List[MetaMessage]] = None


class MetaChange(_MetaModel):
    value: MetaChangeValue


class MetaEntry(_MetaModel):
    changes: List[MetaChange]


class MetaWebhookPayload(_MetaModel):
    entry: Optional[List[MetaEntry]] = None


class InboundMessage(BaseModel):
    """The one message the engine routes from a webhook delivery."""

    phone_number_id: str
    wa_user_id: str
    text: str = ""
    external_message_id: Optional[str] = None
    wa_profile_name: Optional[str] = None
    raw_payload: dict = {}


class WebhookResponse(BaseModel):
    received: bool = True
    outcome: str
    reason: Optional[str] = None
    lead_id: Optional[str] = None


def parse_inbound_message(payload: Any) -> Optional[InboundMessage]:
    """First message of the first change; None if the delivery carries nothing routable."""
    if not isinstance(payload, dict):
        return None
    try:
        parsed = MetaWebhookPayload.model_validate(payload)
    except ValidationError:
        return None

    if not parsed.entry or not parsed.entry[0].changes:
        return None
    value = parsed.entry[0].changes[0].value
    message = value.messages[0] if value.messages else None
    phone_number_id = value.metadata.phone_number_id if value.metadata else None
    wa_user_id = message.from_ if message else None
    if not phone_number_id or not wa_user_id:
        return None

    profile = value.contacts[0].profile if value.contacts else None
    return InboundMessage(
        phone_number_id=phone_number_id,
        wa_user_id=wa_user_id,
        text=(message.text.body if message.text else None) or "",
        external_message_id=message.id,
        wa_profile_name=profile.name if profile else None,
        raw_payload=payload,
    )
