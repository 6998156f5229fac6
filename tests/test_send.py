"""
Tests for the POST /sms/send endpoint.

Tests cover:
- Bearer token and admin role gate
- Payload validation (missing fields, E.164)
- Opt-out compliance
- Conversation reuse
- Gateway rejection and transport failures
"""

import httpx
import pytest

from smsrelay.gateway import GatewayFailure, SendReceipt
from smsrelay.models import Conversation, Message


def send(client, headers, payload):
    return client.post("/sms/send", json=payload, headers=headers)


class TestSendAuthorization:
    """Test the caller gate that runs before anything else."""

    def test_missing_token_returns_401(self, client, twilio):
        response = send(client, {}, {"to": "+15551234567", "body": "Hi"})

        assert response.status_code == 401
        assert response.json() == {"error": "Authorization required"}
        assert twilio.sent == []

    def test_unknown_token_returns_401(self, client, twilio):
        response = send(client, {"Authorization": "Bearer nope"}, {"to": "+15551234567", "body": "Hi"})

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid authentication"}

    def test_non_admin_returns_403(self, client, twilio, customer_headers, fetch):
        response = send(client, customer_headers, {"to": "+15551234567", "body": "Hi"})

        assert response.status_code == 403
        assert response.json() == {"error": "Admin access required"}
        assert twilio.sent == []
        assert fetch(Message) == []


class TestSendValidation:
    """Test payload validation; nothing is written and the gateway is not called."""

    def test_missing_body(self, client, twilio, admin_headers, fetch):
        response = send(client, admin_headers, {"to": "+15551234567"})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields: to, body"}
        assert twilio.sent == []
        assert fetch(Message) == []

    def test_missing_to(self, client, admin_headers):
        response = send(client, admin_headers, {"body": "Hello"})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields: to, body"}

    def test_number_without_plus_rejected(self, client, twilio, admin_headers, fetch):
        response = send(client, admin_headers, {"to": "5551234567", "body": "Hi"})

        assert response.status_code == 400
        assert response.json() == {"error": "Phone number must be in E.164 format (e.g., +15551234567)"}
        assert twilio.sent == []
        assert fetch(Message) == []
        assert fetch(Conversation) == []

    @pytest.mark.parametrize("to", ["+0551234567", "+1", "+1555123456789012", "+1-555-123-4567"])
    def test_malformed_numbers_rejected(self, client, admin_headers, to):
        response = send(client, admin_headers, {"to": to, "body": "Hi"})

        assert response.status_code == 400

    def test_invalid_json(self, client, admin_headers):
        response = client.post(
            "/sms/send",
            content="{not json",
            headers={**admin_headers, "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid JSON")


class TestSendCompliance:
    """Test that opted-out numbers never reach the gateway."""

    def test_opted_out_number_blocked(self, client, twilio, admin_headers, opt_out, fetch):
        opt_out("+15551234567")

        response = send(client, admin_headers, {"to": "+15551234567", "body": "Hi"})

        assert response.status_code == 400
        assert response.json() == {"error": "Customer has opted out of SMS communications"}
        assert twilio.sent == []
        assert fetch(Message) == []
        assert fetch(Conversation) == []

    def test_other_numbers_unaffected(self, client, twilio, admin_headers, opt_out):
        opt_out("+15559999999")

        response = send(client, admin_headers, {"to": "+15551234567", "body": "Hi"})

        assert response.status_code == 200
        assert twilio.sent == [("+15551234567", "Hi")]


class TestSendSuccess:
    """Test successful sends and what they persist."""

    def test_send_persists_queued_message(self, client, twilio, admin, admin_headers, fetch):
        response = send(client, admin_headers, {"to": "+15551234567", "body": "Your order is ready"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["gatewaySid"] == data["message"]["gateway_message_id"]
        assert data["message"]["status"] == "queued"
        assert data["message"]["direction"] == "outbound"
        assert data["message"]["body"] == "Your order is ready"

        messages = fetch(Message)
        assert len(messages) == 1
        message = messages[0]
        assert message.gateway_message_id == data["gatewaySid"]
        assert message.to_number == "+15551234567"
        assert message.from_number == "+15550000000"
        assert message.sent_by == admin.id
        assert message.status_check_count == 0

        conversations = fetch(Conversation)
        assert len(conversations) == 1
        assert message.conversation_id == conversations[0].id
        assert conversations[0].last_message_at is not None

    def test_repeat_sends_share_conversation(self, client, admin_headers, fetch):
        first = send(client, admin_headers, {"to": "+15551234567", "body": "One"})
        second = send(client, admin_headers, {"to": "+15551234567", "body": "Two"})

        assert first.status_code == 200
        assert second.status_code == 200
        assert (
            first.json()["message"]["conversation_id"]
            == second.json()["message"]["conversation_id"]
        )
        assert len(fetch(Conversation)) == 1
        assert len(fetch(Message)) == 2

    def test_conversation_linked_to_profile(self, client, admin_headers, make_profile, fetch):
        profile = make_profile(phone="+15551234567", first_name="Jane")

        send(client, admin_headers, {"to": "+15551234567", "body": "Hi"})

        conversation = fetch(Conversation)[0]
        assert conversation.customer_id == profile.id
        assert conversation.status == "active"

    def test_from_number_hint_used_when_gateway_echoes_none(self, client, twilio, admin_headers, fetch):
        twilio.send_results.append(
            SendReceipt(gateway_id="SMhint", status="accepted", from_number=None,
                        to_number="+15551234567", body="Hi")
        )

        response = send(client, admin_headers,
                        {"to": "+15551234567", "body": "Hi", "fromNumber": "+15557654321"})

        assert response.status_code == 200
        assert fetch(Message)[0].from_number == "+15557654321"


class TestSendGatewayFailure:
    """Test that carrier failures still leave exactly one failed row."""

    def test_carrier_rejection_records_failed_message(self, client, twilio, admin_headers, fetch):
        twilio.send_results.append(
            GatewayFailure(
                message="The 'To' number +15551234567 is not a valid phone number.",
                code="21211",
                status_code=400,
                raw={"code": 21211, "status": 400},
            )
        )

        response = send(client, admin_headers, {"to": "+15551234567", "body": "Hi"})

        assert response.status_code == 502
        assert response.json() == {"error": "The 'To' number +15551234567 is not a valid phone number."}

        messages = fetch(Message)
        assert len(messages) == 1
        assert messages[0].status == "failed"
        assert messages[0].error_code == "21211"
        assert messages[0].gateway_message_id is None
        assert messages[0].from_number == "unknown"

    def test_unreachable_gateway_records_failed_message(self, client, twilio, admin_headers, fetch):
        twilio.send_results.append(httpx.ConnectError("connection refused"))

        response = send(client, admin_headers, {"to": "+15551234567", "body": "Hi"})

        assert response.status_code == 502
        assert response.json() == {"error": "connection refused"}
        messages = fetch(Message)
        assert len(messages) == 1
        assert messages[0].status == "failed"
        assert messages[0].error_message == "connection refused"
