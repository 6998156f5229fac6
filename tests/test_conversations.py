"""
Tests for conversation resolution, including the concurrent-create race,
and the conversation read routes.
"""

import pytest

from smsrelay import storage
from smsrelay.conversations import resolve_conversation
from smsrelay.errors import PersistenceError
from smsrelay.models import Conversation


class TestResolveConversation:
    def test_creates_then_reuses(self, db, fetch):
        first = resolve_conversation(db, "+15551234567")
        second = resolve_conversation(db, "+15551234567")

        assert first == second
        assert len(fetch(Conversation)) == 1

    def test_distinct_numbers_get_distinct_conversations(self, db):
        assert resolve_conversation(db, "+15551110001") != resolve_conversation(db, "+15551110002")

    def test_unknown_number_has_no_customer(self, db, fetch):
        resolve_conversation(db, "+15551234567")

        assert fetch(Conversation)[0].customer_id is None

    def test_lost_race_reads_back_winner(self, db, fetch, monkeypatch):
        winner = storage.insert_conversation(db, "+15551234567").id
        real_lookup = storage.get_conversation_by_phone
        calls = []

        def stale_first_lookup(session, phone):
            # The first lookup runs before the other request has committed
            calls.append(phone)
            if len(calls) == 1:
                return None
            return real_lookup(session, phone)

        monkeypatch.setattr(storage, "get_conversation_by_phone", stale_first_lookup)

        assert resolve_conversation(db, "+15551234567") == winner
        assert len(calls) == 2
        assert len(fetch(Conversation)) == 1

    def test_conflict_without_readable_row_raises(self, db, monkeypatch):
        storage.insert_conversation(db, "+15551234567")
        monkeypatch.setattr(storage, "get_conversation_by_phone", lambda session, phone: None)

        with pytest.raises(PersistenceError):
            resolve_conversation(db, "+15551234567")


def set_last_message_at(db, conversation_id, value):
    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        {Conversation.last_message_at: value}, synchronize_session=False
    )
    db.commit()


class TestConversationRoutes:
    def test_list_most_recent_first(self, client, admin_headers, db):
        older = resolve_conversation(db, "+15551110001")
        newer = resolve_conversation(db, "+15551110002")
        unused = resolve_conversation(db, "+15551110003")
        set_last_message_at(db, older, "2026-01-01T00:00:00.000Z")
        set_last_message_at(db, newer, "2026-01-05T00:00:00.000Z")

        response = client.get("/sms/conversations", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        assert [c["id"] for c in data["data"]] == [newer, older, unused]
        assert data["data"][0]["customer_phone"] == "+15551110002"

    def test_list_skips_closed(self, client, admin_headers, db):
        closed = resolve_conversation(db, "+15551110001")
        db.query(Conversation).filter(Conversation.id == closed).update(
            {Conversation.status: "archived"}, synchronize_session=False
        )
        db.commit()

        assert client.get("/sms/conversations", headers=admin_headers).json()["total"] == 0

    def test_thread_oldest_first(self, client, admin_headers, seed_message, fetch):
        second = seed_message(to="+15551234567", gateway_id="SM2", created_at="2026-01-02T00:00:00.000Z")
        first = seed_message(to="+15551234567", gateway_id="SM1", created_at="2026-01-01T00:00:00.000Z")
        seed_message(to="+15559999999", gateway_id="SM9")
        conversation_id = fetch(Conversation, customer_phone="+15551234567")[0].id

        response = client.get(f"/sms/conversations/{conversation_id}/messages", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["conversation"]["id"] == conversation_id
        assert [m["id"] for m in data["messages"]] == [first, second]
        assert data["messages"][0]["gateway_message_id"] == "SM1"

    def test_unknown_thread(self, client, admin_headers):
        response = client.get("/sms/conversations/missing/messages", headers=admin_headers)

        assert response.status_code == 404
        assert response.json() == {"error": "Conversation not found"}

    def test_requires_admin(self, client, customer_headers):
        assert client.get("/sms/conversations", headers=customer_headers).status_code == 403
