import json
import logging
from decimal import Decimal

import httpx

from tickethub.logging_setup import JsonFormatter, record_context, request_id_var
from tickethub.notifications import TelegramNotifier, format_amount


def test_json_formatter_includes_request_id():
    token = request_id_var.set("req-42")
    try:
        record = logging.LogRecord("tickethub.test", logging.INFO, __file__, 1, "settled %s", ("R-1",), None)
        data = json.loads(JsonFormatter().format(record))
    finally:
        request_id_var.reset(token)

    assert data.pop("ts").endswith("+00:00")
    assert data == {"level": "INFO", "message": "settled R-1", "logger": "tickethub.test", "request_id": "req-42"}


def test_json_formatter_carries_extra_booking_fields():
    logger = logging.getLogger("tickethub.test.extra")
    record = logger.makeRecord(
        logger.name, logging.WARNING, __file__, 1, "receipt settled", (), None,
        extra={"receipt_id": "R-1", "amount": Decimal("150.00"), "session_id": None},
    )

    data = json.loads(JsonFormatter().format(record))

    assert data["receipt_id"] == "R-1"
    assert data["amount"] == "150.00"
    assert data["session_id"] is None
    assert data["level"] == "WARNING"
    assert "lineno" not in data and "args" not in data


def test_record_context_ignores_standard_attributes():
    record = logging.LogRecord("tickethub.test", logging.INFO, __file__, 1, "plain", (), None)
    assert record_context(record) == {}


def test_notifier_without_token_skips_delivery(monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("no request expected")

    monkeypatch.setattr(httpx, "post", fail)
    assert TelegramNotifier(bot_token="").send_message(1, "hi") is False


def test_notifier_posts_to_bot_api(monkeypatch):
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append((url, json))
        return httpx.Response(200, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx, "post", fake_post)
    notifier = TelegramNotifier(bot_token="123:ABC", api_base="https://tg.example/")

    assert notifier.send_message(55, "Tickets confirmed") is True
    assert calls == [("https://tg.example/bot123:ABC/sendMessage", {"chat_id": 55, "text": "Tickets confirmed"})]


def test_notifier_failure_is_reported_not_raised(monkeypatch):
    def fake_post(url, json=None, timeout=None):
        raise httpx.ConnectError("unreachable")

    monkeypatch.setattr(httpx, "post", fake_post)
    assert TelegramNotifier(bot_token="123:ABC").send_message(55, "x") is False


def test_format_amount():
    assert format_amount(1234.5) == "1,234.50 ETB"
