import asyncio

from macd_signal_bot.errors import NotificationFailure
from macd_signal_bot.formatters import format_event, take_profit_price
from macd_signal_bot.models import LONG, SHORT, SUCCESS, MessageRef, SignalEvent, UpdateEvent
from macd_signal_bot.notifier.telegram import TelegramNotifier

EVENT = SignalEvent(
    signal_id="abc",
    symbol="BTCUSDT",
    interval="15m",
    side=SHORT,
    entry_price=135.0,
    entry_time_ms=0,
    take_profit_percent=1.5,
    validity_hours=2,
)


class RecordingNotifier(TelegramNotifier):
    def __init__(self, failures: int, **kwargs):
        super().__init__("token", **kwargs)
        self.failures = failures
        self.calls = []

    async def _send(self, chat_id, text, parse_mode, reply_to):
        self.calls.append((chat_id, text, parse_mode, reply_to))
        if self.failures > 0:
            self.failures -= 1
            raise NotificationFailure("status=400 body=can't parse entities")
        return MessageRef(chat_id=chat_id, message_id=7)


def test_take_profit_price():
    assert take_profit_price(100.0, 1.5, LONG) == 101.5
    assert take_profit_price(100.0, 1.5, SHORT) == 98.5


def test_formatting_escapes_per_parse_mode():
    html_text = format_event(EVENT, "HTML")
    assert "<b>New SHORT signal</b>" in html_text
    assert "Entry: 135" in html_text
    assert "(132.975)" in html_text

    md = format_event(EVENT, "MarkdownV2")
    assert "*New SHORT signal*" in md
    assert "132\\.975" in md

    plain = format_event(EVENT, "PLAIN")
    assert "<b>" not in plain and "*" not in plain


def test_update_formatting():
    upd = UpdateEvent(
        signal_id="abc", symbol="BTCUSDT", interval="15m", side=SHORT, status=SUCCESS,
        entry_price=135.0, exit_price=133.0, pnl_percent=2.2222, max_favorable_excursion=2.2222,
    )
    text = format_event(upd, "PLAIN")
    assert text.startswith("Take profit reached: SHORT BTCUSDT 15m")
    assert "P/L: +2.22%" in text


def test_formatted_send_falls_back_to_plain_text():
    n = RecordingNotifier(failures=1)
    ref = asyncio.run(n.notify("@chan", EVENT))
    assert ref == MessageRef(chat_id="@chan", message_id=7)
    assert len(n.calls) == 2
    assert n.calls[0][2] == "HTML"
    assert n.calls[1][2] is None
    assert "<b>" not in n.calls[1][1]


def test_reply_threads_under_original_message():
    n = RecordingNotifier(failures=0)
    asyncio.run(n.reply(MessageRef(chat_id="@chan", message_id=55), UpdateEvent(
        signal_id="abc", symbol="BTCUSDT", interval="15m", side=LONG, status=SUCCESS,
        entry_price=1.0, exit_price=1.1, pnl_percent=10.0, max_favorable_excursion=10.0,
    )))
    assert n.calls[0][0] == "@chan"
    assert n.calls[0][3] == 55


def test_undeliverable_message_returns_none():
    n = RecordingNotifier(failures=2)
    assert asyncio.run(n.notify("@chan", EVENT)) is None
    assert len(n.calls) == 2


def test_disabled_without_token():
    n = TelegramNotifier("")
    assert not n.enabled()
    assert asyncio.run(n.notify("@chan", EVENT)) is None
