import hmac
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.requests import ClientDisconnect

from app.config import Settings, get_settings
from app.database import get_db
from app.dependencies import get_inbound_pipeline
from app.logging_config import get_logger
from app.schemas.webhook import WebhookResponse
from app.services.alert_service import alert_critical, alert_error
from app.services.crypto_service import SecretsError
from app.services.inbound_service import InboundPipeline
from app.services.whatsapp_service import GatewayError, SignatureError

logger = get_logger("webhook")

router = APIRouter()

SIGNATURE_HEADER = "X-Hub-Signature-256"


@router.get("/webhooks/whatsapp")
def verify_webhook(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    settings: Settings = Depends(get_settings),
):
    """Meta subscription handshake."""
    expected = settings.whatsapp_webhook_verify_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Missing WHATSAPP_WEBHOOK_VERIFY_TOKEN",
        )
    token_ok = hmac.compare_digest((hub_verify_token or "").encode(), expected.encode())
    if hub_mode == "subscribe" and token_ok and hub_challenge:
        return PlainTextResponse(hub_challenge)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Webhook verification failed")


@router.post("/webhooks/whatsapp", response_model=WebhookResponse)
async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    pipeline: InboundPipeline = Depends(get_inbound_pipeline),
):
    try:
        raw_body = await request.body()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        return WebhookResponse(outcome="ignored", reason="client_disconnected")

    signature = request.headers.get(SIGNATURE_HEADER)
    try:
        result = await run_in_threadpool(pipeline.process, db, raw_body, signature)
    except SignatureError:
        logger.warning("Webhook signature rejected")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Inbound turn failed on database")
        alert_critical("Inbound turn failed on database", {"error_type": type(e).__name__, "error": str(e)})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Database error")
    except (SecretsError, GatewayError) as e:
        db.rollback()
        logger.exception("Inbound turn failed")
        alert_error("Inbound turn failed", {"error_type": type(e).__name__, "error": str(e)})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return WebhookResponse(**result.to_response())
