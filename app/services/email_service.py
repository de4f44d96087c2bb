"""Tenant notification email via the Resend API. Best effort, never raises."""

from abc import ABC, abstractmethod
from typing import Optional

import httpx

from app.logging_config import get_logger

logger = get_logger("email_service")

RESEND_API_URL = "https://api.resend.com/emails"


class Notifier(ABC):
    @abstractmethod
    def notify(self, to: str, subject: str, body: str) -> bool:
        """Send an HTML email. Returns True if accepted by the provider."""
        pass


class ResendEmailNotifier(Notifier):
    def __init__(self, api_key: Optional[str], from_email: str, timeout_seconds: float = 10.0):
        self.api_key = api_key
        self.from_email = from_email
        self.timeout_seconds = timeout_seconds

    def notify(self, to: str, subject: str, body: str) -> bool:
        if not self.api_key:
            logger.warning("Email not configured: missing RESEND_API_KEY", extra={"context": {"to": to}})
            return False
        if not to:
            return False

        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    RESEND_API_URL,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={"from": self.from_email, "to": [to], "subject": subject, "html": body},
                )
        except Exception as e:
            logger.error(f"Failed to send notification email: {e}")
            return False

        if not response.is_success:
            logger.error(
                "Resend API error",
                extra={"context": {"status": response.status_code, "body": response.text[:300]}},
            )
            return False
        return True
