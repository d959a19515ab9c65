"""Tests for chat action routes (read, archive, pin)."""

import pytest
from fastapi.testclient import TestClient

from helpers import text_message, webhook_payload
from wppgateway.api.factory import create_app
from wppgateway.provider.errors import ProviderError

PERSON = "5511999998888@s.whatsapp.net"


@pytest.fixture
def client(services):
    client = TestClient(create_app(role="public"))
    client.post(
        "/webhooks/evolution/acme",
        json=webhook_payload("messages.upsert", text_message("M1", PERSON, "oi")),
    )
    client.post(
        "/webhooks/evolution/acme",
        json=webhook_payload(
            "messages.upsert", text_message("M2", PERSON, "tudo bem?", timestamp=1_700_000_060)
        ),
    )
    return client


def _read_url(chat_id=PERSON):
    return f"/instances/inst-1/chats/{chat_id}/read"


class TestMarkRead:
    def test_marks_latest_incoming_message(self, client, store, provider):
        assert store.find_chat("inst-1", PERSON)["unread_count"] == 2

        response = client.post(_read_url())

        assert response.status_code == 200
        assert response.json() == {
            "chatId": PERSON,
            "unreadCount": 0,
            "markedMessages": 1,
            "providerAcknowledged": True,
        }
        assert provider.calls_to("mark_read") == [("acme", PERSON, [{"id": "M2", "fromMe": False}])]
        assert store.find_chat("inst-1", PERSON)["unread_count"] == 0

    def test_explicit_message_ids(self, client, provider):
        response = client.post(
            _read_url(),
            json={"message_ids": [{"id": "M1"}, {"id": "M2", "from_me": False}]},
        )
        assert response.json()["markedMessages"] == 2
        refs = provider.calls_to("mark_read")[0][2]
        assert [ref["id"] for ref in refs] == ["M1", "M2"]

    def test_bare_number_is_normalized(self, client):
        response = client.post(_read_url("5511999998888"))
        assert response.status_code == 200
        assert response.json()["chatId"] == PERSON

    def test_provider_failure_still_resets_unread(self, client, store, provider):
        provider.fail_mark_read = ProviderError("boom", status_code=500)

        response = client.post(_read_url())

        assert response.status_code == 200
        assert response.json()["providerAcknowledged"] is False
        assert store.find_chat("inst-1", PERSON)["unread_count"] == 0

    def test_publishes_unread_reset(self, client, services):
        subscription = services.hub.subscribe("inst-1")
        client.post(_read_url())
        envelope = subscription.get(0.5)
        assert envelope["event"] == "chat_unread_updated"
        assert envelope["data"] == {"chatId": PERSON, "unreadCount": 0}

    def test_unknown_instance_404(self, client):
        assert client.post(f"/instances/nope/chats/{PERSON}/read").status_code == 404

    def test_unknown_chat_404(self, client):
        assert client.post(_read_url("5521000000000@s.whatsapp.net")).status_code == 404

    def test_invalid_chat_id_400(self, client):
        assert client.post(_read_url("@s.whatsapp.net")).status_code == 400


class TestChatFlags:
    def test_archive(self, client, store):
        response = client.post(f"/instances/inst-1/chats/{PERSON}/archive")
        assert response.status_code == 200
        assert response.json() == {"chatId": PERSON, "archived": True}
        assert store.find_chat("inst-1", PERSON)["archived"] is True

    def test_unarchive(self, client, store):
        client.post(f"/instances/inst-1/chats/{PERSON}/archive")
        client.post(f"/instances/inst-1/chats/{PERSON}/archive", json={"archived": False})
        assert store.find_chat("inst-1", PERSON)["archived"] is False

    def test_pin_publishes_chats_updated(self, client, store, services):
        subscription = services.hub.subscribe("inst-1")

        response = client.post(f"/instances/inst-1/chats/{PERSON}/pin", json={"pinned": True})

        assert response.json() == {"chatId": PERSON, "pinned": True}
        assert store.find_chat("inst-1", PERSON)["pinned"] is True
        envelope = subscription.get(0.5)
        assert envelope["event"] == "chats_updated"
        assert envelope["data"] == {"chats": [{"chatId": PERSON, "pinned": True}]}

    def test_pin_unknown_chat_404(self, client):
        response = client.post("/instances/inst-1/chats/5521000000000@s.whatsapp.net/pin")
        assert response.status_code == 404
