from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.dependencies import get_gateway, require_operator_token
from app.logging_config import get_logger
from app.schemas.lead import (
    LeadActionResponse,
    LeadMessagesResponse,
    LeadOut,
    MessageOut,
    SendMessageRequest,
    SendMessageResponse,
    TakeLeadRequest,
)
from app.services.alert_service import alert_error
from app.services.crypto_service import SecretsError
from app.services.lead_service import close_lead, get_lead_history, send_operator_message, take_lead
from app.services.result import INVALID_STATE, NO_CHANNEL, NOT_FOUND, Result
from app.services.whatsapp_service import GatewayError, WhatsAppGateway

logger = get_logger("leads")

router = APIRouter(prefix="/leads", dependencies=[Depends(require_operator_token)])

_ERROR_STATUS = {
    NOT_FOUND: status.HTTP_404_NOT_FOUND,
    INVALID_STATE: status.HTTP_409_CONFLICT,
    NO_CHANNEL: status.HTTP_409_CONFLICT,
}


def _unwrap(result: Result):
    if not result.ok:
        raise HTTPException(
            status_code=_ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST),
            detail=result.error,
        )
    return result.value


@router.post("/{lead_id}/take", response_model=LeadActionResponse)
def take(lead_id: UUID, request: TakeLeadRequest | None = None, db: Session = Depends(get_db)):
    lead = _unwrap(take_lead(db, lead_id, request.operator_id if request else None))
    return LeadActionResponse(success=True, lead=LeadOut.model_validate(lead))


@router.post("/{lead_id}/close", response_model=LeadActionResponse)
def close(lead_id: UUID, db: Session = Depends(get_db)):
    lead = _unwrap(close_lead(db, lead_id))
    return LeadActionResponse(success=True, lead=LeadOut.model_validate(lead))


@router.post("/{lead_id}/send", response_model=SendMessageResponse)
def send(
    lead_id: UUID,
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    gateway: WhatsAppGateway = Depends(get_gateway),
):
    try:
        message = _unwrap(send_operator_message(db, gateway, lead_id, request.text))
    except (GatewayError, SecretsError) as e:
        db.rollback()
        logger.error(f"Operator send failed: {e}", extra={"context": {"lead_id": str(lead_id)}})
        alert_error("Operator send failed", {"lead_id": str(lead_id), "error": str(e)})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return SendMessageResponse(success=True, message=MessageOut.model_validate(message))


@router.get("/{lead_id}/messages", response_model=LeadMessagesResponse)
def messages(lead_id: UUID, db: Session = Depends(get_db)):
    lead, history = _unwrap(get_lead_history(db, lead_id))
    return LeadMessagesResponse(
        lead=LeadOut.model_validate(lead),
        messages=[MessageOut.model_validate(m) for m in history],
    )
