"""Notification dispatchers and the audit trail: best-effort side effects."""

import json
import threading
from decimal import Decimal
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import AsyncMock
from urllib.parse import parse_qs

import pytest
from telegram import Bot

from models.event import SubjectRef
from notifications.dispatcher import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationKind,
    TelegramNotificationDispatcher,
    format_message,
)
from repositories.memory import InMemoryAuditLogRepository
from services.audit_trail import AuditTrail
from tests.conftest import ACTOR, SCHOOL


def test_format_message_includes_context_and_currency():
    text = format_message(
        NotificationKind.INSTALLMENT_OVERDUE, SubjectRef.payment(5), ACTOR,
        {"late_fee": Decimal("5.00"), "installment_id": 3, "remarks": None},
    )

    lines = text.splitlines()
    assert lines[0] == "⏰ Installment overdue"
    assert lines[1] == "Payment #5 (by user 7)"
    assert "  • installment id: 3" in lines
    assert any(line.startswith("  • late fee: 5.00 ") for line in lines)
    assert not any("remarks" in line for line in lines)


def test_logging_dispatcher_logs(caplog):
    caplog.set_level("INFO")

    delivered = LoggingNotificationDispatcher().trigger(
        NotificationKind.CUSTOMER_CONVERTED, SubjectRef.customer(4), ACTOR, {"student_id": 9},
    )

    assert delivered is True
    assert "Customer converted to student" in caplog.text


def test_base_dispatcher_cannot_be_instantiated():
    with pytest.raises(TypeError):
        NotificationDispatcher()


# -----------------------------------------------------------------------------
# Telegram
# -----------------------------------------------------------------------------

class FakeBotAPI(BaseHTTPRequestHandler):
    """Answers getMe and sendMessage like the Telegram Bot API, over keep-alive."""

    protocol_version = "HTTP/1.1"

    def do_POST(self):
        body = self.rfile.read(int(self.headers.get("Content-Length") or 0)).decode()
        if "json" in (self.headers.get("Content-Type") or ""):
            fields = json.loads(body or "{}")
        else:
            fields = {k: v[0] for k, v in parse_qs(body).items()}

        method = self.path.rsplit("/", 1)[-1]
        if method == "getMe":
            result = {"id": 123, "is_bot": True, "first_name": "Ledger", "username": "ledger_bot"}
        elif method == "sendMessage":
            self.server.messages.append(fields)
            result = {
                "message_id": len(self.server.messages),
                "date": 1741597200,
                "chat": {"id": int(fields["chat_id"]), "type": "supergroup", "title": "Staff"},
                "text": fields["text"],
            }
        else:
            result = True

        payload = json.dumps({"ok": True, "result": result}).encode()
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def bot_api():
    server = ThreadingHTTPServer(("127.0.0.1", 0), FakeBotAPI)
    server.messages = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


class TestTelegramDispatcher:

    def test_sends_to_configured_chat(self):
        bot = AsyncMock()
        dispatcher = TelegramNotificationDispatcher(chat_id="-100123", bot=bot)

        delivered = dispatcher.trigger(NotificationKind.INSTALLMENT_PAID, SubjectRef.payment(5), ACTOR,
                                       {"installment_id": 3})

        assert delivered is True
        bot.send_message.assert_awaited_once()
        kwargs = bot.send_message.await_args.kwargs
        assert kwargs["chat_id"] == "-100123"
        assert kwargs["text"].startswith("✅ Installment paid")

    def test_send_errors_are_swallowed_and_logged(self, caplog):
        bot = AsyncMock()
        bot.send_message.side_effect = RuntimeError("Forbidden: bot was kicked")
        dispatcher = TelegramNotificationDispatcher(chat_id="-100123", bot=bot)

        delivered = dispatcher.trigger(NotificationKind.INSTALLMENT_PAID, SubjectRef.payment(5), ACTOR)

        assert delivered is False
        assert "bot was kicked" in caplog.text

    def test_requires_chat_and_token(self):
        with pytest.raises(ValueError):
            TelegramNotificationDispatcher(token="123:abc", chat_id="")
        with pytest.raises(ValueError):
            TelegramNotificationDispatcher(token="", chat_id="-100123")

    def test_real_bot_delivers_consecutive_notifications(self, bot_api):
        port = bot_api.server_address[1]
        bot = Bot(token="123:abc", base_url=f"http://127.0.0.1:{port}/bot")
        dispatcher = TelegramNotificationDispatcher(chat_id="-100123", bot=bot)

        try:
            results = [
                dispatcher.trigger(NotificationKind.INSTALLMENT_OVERDUE, SubjectRef.payment(2), ACTOR,
                                   {"installment_id": number})
                for number in (1, 2, 3)
            ]
        finally:
            dispatcher.close()

        assert results == [True, True, True]
        assert [m["chat_id"] for m in bot_api.messages] == ["-100123"] * 3
        assert "installment id: 3" in bot_api.messages[-1]["text"]

    def test_close_shuts_the_bot_down_once(self):
        bot = AsyncMock()
        dispatcher = TelegramNotificationDispatcher(chat_id="-100123", bot=bot)
        dispatcher.trigger(NotificationKind.INSTALLMENT_PAID, SubjectRef.payment(5), ACTOR)

        dispatcher.close()
        dispatcher.close()

        bot.initialize.assert_awaited_once()
        bot.shutdown.assert_awaited_once()
        assert dispatcher.trigger(NotificationKind.INSTALLMENT_PAID, SubjectRef.payment(5), ACTOR) is False


class TestAuditTrail:

    def test_writes_entry_with_json_details(self, uow, store):
        entry = AuditTrail(uow).write("PAY", "installment", 3, ACTOR, SCHOOL,
                                      {"amount": Decimal("100.00"), "payment_status": "PAID"})

        assert entry.id is not None
        assert store.tables["audit_logs"][entry.id].details == '{"amount": "100.00", "payment_status": "PAID"}'

    def test_failure_is_logged_not_raised(self, uow, caplog, monkeypatch):
        def broken(self, tenant_id, entity):
            raise RuntimeError("audit store offline")

        monkeypatch.setattr(InMemoryAuditLogRepository, "create", broken)

        assert AuditTrail(uow).write("PAY", "installment", 3, ACTOR, SCHOOL) is None
        assert "audit store offline" in caplog.text

    def test_audit_failure_does_not_fail_the_workflow(self, installments, payment, monkeypatch):
        def broken(self, tenant_id, entity):
            raise RuntimeError("audit store offline")

        monkeypatch.setattr(InMemoryAuditLogRepository, "create", broken)

        result = installments.create(SCHOOL, ACTOR, payment.id, 1, "10.00", "2025-04-01")

        assert result["success"] is True
