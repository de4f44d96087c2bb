from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest

from app.services.whatsapp_service import (
    GatewayError,
    SignatureError,
    WhatsAppGateway,
    compute_signature,
    is_valid_signature,
    verify_signature,
)

BODY = b'{"entry": []}'


class TestSignature:
    def test_valid_signature(self):
        assert is_valid_signature(BODY, "secret", compute_signature(BODY, "secret")) is True

    def test_wrong_secret(self):
        assert is_valid_signature(BODY, "secret", compute_signature(BODY, "other")) is False

    def test_body_changed(self):
        assert is_valid_signature(BODY + b" ", "secret", compute_signature(BODY, "secret")) is False

    def test_missing_prefix(self):
        digest = compute_signature(BODY, "secret")[len("sha256="):]
        assert is_valid_signature(BODY, "secret", digest) is False

    def test_uppercase_hex_digest(self):
        digest = compute_signature(BODY, "secret")[len("sha256="):]
        assert is_valid_signature(BODY, "secret", "sha256=" + digest.upper()) is True

    def test_non_hex_digest(self):
        assert is_valid_signature(BODY, "secret", "sha256=not-hex") is False

    def test_verify_raises(self):
        with pytest.raises(SignatureError):
            verify_signature(BODY, "secret", None)


def _mock_client(mock_client_class):
    mock_client = MagicMock()
    mock_client_class.return_value.__enter__.return_value = mock_client
    return mock_client


class TestSendText:
    @patch("app.services.whatsapp_service.httpx.Client")
    def test_sends_and_returns_provider_id(self, mock_client_class):
        mock_client = _mock_client(mock_client_class)
        mock_response = Mock()
        mock_response.is_success = True
        mock_response.json.return_value = {"messages": [{"id": "wamid.123"}]}
        mock_client.post.return_value = mock_response

        provider_id, raw = WhatsAppGateway("https://graph.example/v20.0/").send_text("PNID", "token", "569", "Hola")

        assert provider_id == "wamid.123"
        assert raw == {"messages": [{"id": "wamid.123"}]}
        call_args = mock_client.post.call_args
        assert call_args[0][0] == "https://graph.example/v20.0/PNID/messages"
        assert call_args[1]["headers"]["Authorization"] == "Bearer token"
        assert call_args[1]["json"]["text"] == {"body": "Hola"}
        assert call_args[1]["json"]["to"] == "569"

    @patch("app.services.whatsapp_service.httpx.Client")
    def test_api_error_raises(self, mock_client_class):
        mock_response = Mock()
        mock_response.is_success = False
        mock_response.status_code = 401
        mock_response.text = "invalid token"
        _mock_client(mock_client_class).post.return_value = mock_response

        with pytest.raises(GatewayError, match="401"):
            WhatsAppGateway().send_text("PNID", "token", "569", "Hola")

    @patch("app.services.whatsapp_service.httpx.Client")
    def test_network_error_raises(self, mock_client_class):
        _mock_client(mock_client_class).post.side_effect = httpx.ConnectError("refused")

        with pytest.raises(GatewayError):
            WhatsAppGateway().send_text("PNID", "token", "569", "Hola")

    @patch("app.services.whatsapp_service.httpx.Client")
    def test_response_without_id(self, mock_client_class):
        mock_response = Mock()
        mock_response.is_success = True
        mock_response.json.return_value = {}
        _mock_client(mock_client_class).post.return_value = mock_response

        provider_id, _ = WhatsAppGateway().send_text("PNID", "token", "569", "Hola")

        assert provider_id is None
