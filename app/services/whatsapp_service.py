"""WhatsApp Cloud API gateway: send text and verify webhook signatures."""

import hashlib
import hmac
from typing import Optional, Tuple

import httpx

from app.logging_config import get_logger

logger = get_logger("whatsapp_service")

SIGNATURE_PREFIX = "sha256="


class GatewayError(Exception):
    """Outbound send failed; the turn must fail."""


class SignatureError(Exception):
    """Webhook signature missing or invalid."""


def compute_signature(raw_body: bytes, app_secret: str) -> str:
    digest = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def is_valid_signature(raw_body: bytes, app_secret: str, signature_header: Optional[str]) -> bool:
    signature = (signature_header or "").strip()
    if not signature.startswith(SIGNATURE_PREFIX):
        return False
    try:
        received = bytes.fromhex(signature[len(SIGNATURE_PREFIX):])
    except ValueError:
        return False
    expected = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return hmac.compare_digest(expected, received)


def verify_signature(raw_body: bytes, app_secret: str, signature_header: Optional[str]) -> None:
    if not is_valid_signature(raw_body, app_secret, signature_header):
        raise SignatureError("Invalid X-Hub-Signature-256")


class WhatsAppGateway:
    def __init__(self, base_url: str = "https://graph.facebook.com/v20.0", timeout_seconds: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def send_text(self, phone_number_id: str, access_token: str, to: str, text: str) -> Tuple[Optional[str], dict]:
        """Send a text message. Returns (provider message id, raw response)."""
        url = f"{self.base_url}/{phone_number_id}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": text},
        }
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    url,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp send failed: {e}", extra={"context": {"phone_number_id": phone_number_id}})
            raise GatewayError(f"WhatsApp request failed: {e}") from e

        if not response.is_success:
            logger.error(
                "WhatsApp API error",
                extra={"context": {"status": response.status_code, "body": response.text[:300]}},
            )
            raise GatewayError(f"WhatsApp API error: {response.status_code} {response.text[:300]}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        messages = data.get("messages") if isinstance(data, dict) else None
        provider_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        return provider_id, data if isinstance(data, dict) else {}
