"""Tests for observability utilities: redaction, correlation ids, JSON logs."""

import io
import sys
import json
import logging

from wppgateway.observability.correlation import (
    accept_correlation_id,
    bound_correlation_id,
    get_correlation_id,
)
from wppgateway.observability.logging import JsonFormatter, get_logger
from wppgateway.observability.redaction import (
    mask_jid,
    redact_string,
    redact_value,
    safe_log_context,
)


class TestRedaction:
    """Tests for redaction helpers."""

    def test_redact_phone_number(self):
        result = redact_string("Call me at +55 11 99999-8888")
        assert "99999" not in result
        assert "[REDACTED]" in result

    def test_redact_email(self):
        result = redact_string("Email: user@example.com")
        assert "user@example.com" not in result

    def test_redact_jid_keeps_domain(self):
        result = redact_string("chat 5511999998888@s.whatsapp.net and 1234-5678@g.us")
        assert "5511999998888" not in result
        assert "1234-5678" not in result
        assert "[REDACTED]@s.whatsapp.net" in result
        assert "[REDACTED]@g.us" in result

    def test_redact_value_dict_only_keys(self):
        result = redact_value({"text": "secret message", "user": "john"})
        assert "secret message" not in result
        assert "text" in result

    def test_redact_value_list_only_len(self):
        assert redact_value(["a", "b", "c"]) == "list(len=3)"

    def test_safe_log_context(self):
        ctx = safe_log_context(phone="+5511999998888", count=42, ok=True, none=None)
        assert "[REDACTED]" in ctx["phone"]
        assert ctx["count"] == "42"
        assert ctx["ok"] == "true"
        assert ctx["none"] == "null"

    def test_mask_jid(self):
        assert mask_jid("5511999998888@s.whatsapp.net") == "***8888@s.whatsapp.net"
        assert mask_jid("123@g.us") == "***123@g.us"
        assert mask_jid(None) == "null"


class TestCorrelation:
    def test_accepts_well_formed_ids(self):
        assert accept_correlation_id("req-123_abc.def") == "req-123_abc.def"

    def test_replaces_malformed_ids(self):
        generated = accept_correlation_id("bad id\nwith newline")
        assert generated != "bad id\nwith newline"
        assert len(generated) == 36
        assert accept_correlation_id(None)
        assert accept_correlation_id("x" * 200) != "x" * 200

    def test_bound_correlation_id_restores_previous(self):
        before = get_correlation_id()
        with bound_correlation_id("outer"):
            with bound_correlation_id(None) as inner:
                assert get_correlation_id() == inner
                assert inner != "outer"
            assert get_correlation_id() == "outer"
        assert get_correlation_id() == before


class TestJsonLogging:
    def test_record_includes_correlation_and_extra_fields(self):
        logger = logging.getLogger("wppgateway.tests.json")
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False
        try:
            with bound_correlation_id("corr-log"):
                logger.info(
                    "sync completed",
                    extra={"extra_fields": safe_log_context(instanceId="inst-1", chats=3)},
                )
        finally:
            logger.removeHandler(handler)

        record = json.loads(stream.getvalue())
        assert record["message"] == "sync completed"
        assert record["level"] == "INFO"
        assert record["correlationId"] == "corr-log"
        assert record["instanceId"] == "inst-1"
        assert record["chats"] == "3"

    def test_get_logger_configures_once(self):
        logger = get_logger("wppgateway.tests.once")
        assert len(get_logger("wppgateway.tests.once").handlers) == len(logger.handlers) == 1

    def test_reserved_keys_not_overridden_by_context(self):
        record = logging.LogRecord("wppgateway.x", logging.WARNING, __file__, 1, "hello", None, None)
        record.extra_fields = {"message": "spoofed", "chat": "***8888@s.whatsapp.net"}

        body = json.loads(JsonFormatter(role="worker").format(record))
        assert body["message"] == "hello"
        assert body["chat"] == "***8888@s.whatsapp.net"
        assert body["service"] == "wppgateway"
        assert body["role"] == "worker"

    def test_exception_type_included(self):
        try:
            raise KeyError("missing")
        except KeyError:
            record = logging.LogRecord(
                "wppgateway.x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
            )
        body = json.loads(JsonFormatter().format(record))
        assert body["errorType"] == "KeyError"
        assert "KeyError" in body["exception"]

    def test_unknown_log_level_falls_back_to_info(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "chatty")
        logger = get_logger("wppgateway.tests.level")
        assert logger.level == logging.INFO
