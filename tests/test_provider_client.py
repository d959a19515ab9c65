"""Tests for the Evolution API client (HTTP mocked at the session)."""

from unittest.mock import MagicMock

import pytest
import requests

from wppgateway.observability.correlation import bound_correlation_id
from wppgateway.provider.client import (
    WEBHOOK_EVENTS,
    WEBSOCKET_EVENTS,
    EvolutionClient,
    RetryingProvider,
)
from wppgateway.provider.errors import ProviderError
from wppgateway.provider.retry import RetryPolicy


def _response(status=200, payload=None, content=b"{}"):
    response = MagicMock()
    response.status_code = status
    response.content = content
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def session():
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    return session


@pytest.fixture
def client(session):
    return EvolutionClient("http://evo:8080/", "secret-key", timeout=30, session=session)


class TestEvolutionClient:
    def test_api_key_header_set(self, client, session):
        assert session.headers["apikey"] == "secret-key"
        assert client.base_url == "http://evo:8080"

    def test_list_chats_request(self, client, session):
        session.request.return_value = _response(payload=[{"remoteJid": "a@s.whatsapp.net"}])

        result = client.list_chats("acme", page=2, page_size=100)

        assert result == [{"remoteJid": "a@s.whatsapp.net"}]
        args, kwargs = session.request.call_args
        assert args == ("POST", "http://evo:8080/chat/findChats/acme")
        assert kwargs["json"]["page"] == 2
        assert kwargs["json"]["limit"] == 100
        assert kwargs["timeout"] == 30

    def test_list_messages_filters_conversation(self, client, session):
        session.request.return_value = _response(payload={"messages": {"records": []}})

        client.list_messages("acme", "x@g.us", page=3, page_size=100)

        body = session.request.call_args.kwargs["json"]
        assert body["where"] == {"key": {"remoteJid": "x@g.us"}}
        assert body["offset"] == 200

    def test_group_info_empty_is_none(self, client, session):
        session.request.return_value = _response(payload={})
        assert client.get_group_info("acme", "x@g.us") is None

    def test_correlation_id_forwarded(self, client, session):
        session.request.return_value = _response(payload=[])
        with bound_correlation_id("corr-123"):
            client.list_chats("acme")
        assert session.request.call_args.kwargs["headers"]["X-Correlation-ID"] == "corr-123"

    def test_http_error_carries_status(self, client, session):
        session.request.return_value = _response(status=429)
        with pytest.raises(ProviderError) as exc_info:
            client.list_chats("acme")
        assert exc_info.value.status_code == 429

    def test_timeout_maps_to_code(self, client, session):
        session.request.side_effect = requests.Timeout()
        with pytest.raises(ProviderError) as exc_info:
            client.list_chats("acme")
        assert exc_info.value.code == "ETIMEDOUT"
        assert exc_info.value.status_code is None

    def test_connection_error_maps_to_code(self, client, session):
        session.request.side_effect = requests.ConnectionError()
        with pytest.raises(ProviderError) as exc_info:
            client.get_group_info("acme", "x@g.us")
        assert exc_info.value.code == "ECONNRESET"

    def test_invalid_json(self, client, session):
        session.request.return_value = _response(payload=ValueError("bad json"))
        with pytest.raises(ProviderError, match="invalid JSON"):
            client.list_chats("acme")

    def test_mark_read_body(self, client, session):
        session.request.return_value = _response(payload={"read": "success"})

        client.mark_read("acme", "a@s.whatsapp.net", [{"id": "M1", "fromMe": False}])

        body = session.request.call_args.kwargs["json"]
        assert body == {
            "readMessages": [{"remoteJid": "a@s.whatsapp.net", "id": "M1", "fromMe": False}]
        }

    def test_set_webhook_body(self, client, session):
        session.request.return_value = _response(payload={"id": "w1"})

        client.set_webhook("acme", "https://gw.example/webhooks/evolution/acme")

        args, kwargs = session.request.call_args
        assert args[1] == "http://evo:8080/webhook/set/acme"
        webhook = kwargs["json"]["webhook"]
        assert webhook["enabled"] is True
        assert webhook["url"] == "https://gw.example/webhooks/evolution/acme"
        assert webhook["events"] == list(WEBHOOK_EVENTS)

    def test_set_websocket_body(self, client, session):
        session.request.return_value = _response(payload={"websocket": {"enabled": True}})

        client.set_websocket("acme")

        args, kwargs = session.request.call_args
        assert args == ("POST", "http://evo:8080/websocket/set/acme")
        assert kwargs["json"] == {"websocket": {"enabled": True, "events": list(WEBSOCKET_EVENTS)}}
        assert "MESSAGES_UPSERT" in WEBSOCKET_EVENTS

    def test_send_text_empty_body(self, client, session):
        session.request.return_value = _response(content=b"")
        assert client.send_text("acme", "5511999999999", "hi") == {}

    def test_send_media_optional_fields(self, client, session):
        session.request.return_value = _response(payload={"key": {"id": "S2"}})

        client.send_media(
            "acme", "5511999999999", "https://cdn/x.jpg", "image", caption="look"
        )

        args, kwargs = session.request.call_args
        assert args[1] == "http://evo:8080/message/sendMedia/acme"
        assert kwargs["json"] == {
            "number": "5511999999999",
            "mediatype": "image",
            "media": "https://cdn/x.jpg",
            "caption": "look",
        }

    @pytest.mark.parametrize(
        "method, path, field",
        [
            ("send_audio", "/message/sendWhatsAppAudio/acme", "audio"),
            ("send_sticker", "/message/sendSticker/acme", "sticker"),
        ],
    )
    def test_send_audio_and_sticker(self, client, session, method, path, field):
        session.request.return_value = _response(payload={})

        getattr(client, method)("acme", "5511", "base64data")

        args, kwargs = session.request.call_args
        assert args[1] == "http://evo:8080" + path
        assert kwargs["json"] == {"number": "5511", field: "base64data"}


class TestRetryingProvider:
    def test_list_chats_retried(self):
        inner = MagicMock()
        inner.list_chats.side_effect = [ProviderError("busy", status_code=503), ["ok"]]
        sleeps = []
        provider = RetryingProvider(inner, RetryPolicy(sleep=sleeps.append))

        assert provider.list_chats("acme", 1, 100) == ["ok"]
        assert inner.list_chats.call_count == 2
        assert sleeps == [2.0]

    def test_set_websocket_retried(self):
        inner = MagicMock()
        inner.set_websocket.side_effect = [ProviderError("busy", status_code=502), {}]
        provider = RetryingProvider(inner, RetryPolicy(sleep=lambda s: None))

        assert provider.set_websocket("acme") == {}
        assert inner.set_websocket.call_count == 2

    def test_mark_read_not_retried(self):
        inner = MagicMock()
        inner.mark_read.side_effect = ProviderError("busy", status_code=503)
        provider = RetryingProvider(inner, RetryPolicy(sleep=lambda s: None))

        with pytest.raises(ProviderError):
            provider.mark_read("acme", "a@s.whatsapp.net", [{"id": "1"}])
        assert inner.mark_read.call_count == 1

    def test_sends_pass_through(self):
        inner = MagicMock()
        inner.send_text.return_value = {"key": {"id": "S1"}}
        provider = RetryingProvider(inner)

        assert provider.send_text("acme", "5511", "hi") == {"key": {"id": "S1"}}
