from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Union

from .models import LONG, SUCCESS, SignalEvent, UpdateEvent


def _fmt_ms(ts_ms: int) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M UTC")


def _escape_markdown_v2(text: str) -> str:
    specials = r"\_*[]()~`>#+-=|{}.!"
    escaped = []
    for ch in str(text):
        if ch in specials:
            escaped.append("\\" + ch)
        else:
            escaped.append(ch)
    return "".join(escaped)


def _escape_text(text: str, parse_mode: str) -> str:
    if parse_mode == "MARKDOWNV2":
        return _escape_markdown_v2(text)
    if parse_mode == "PLAIN":
        return str(text)
    return html.escape(str(text), quote=False)


def _bold(text: str, parse_mode: str) -> str:
    escaped = _escape_text(text, parse_mode)
    if parse_mode == "MARKDOWNV2":
        return f"*{escaped}*"
    if parse_mode == "PLAIN":
        return escaped
    return f"<b>{escaped}</b>"


def _fmt_price(val: float) -> str:
    return f"{val:.8f}".rstrip("0").rstrip(".") or "0"


def take_profit_price(entry_price: float, take_profit_percent: float, side: str) -> float:
    mult = 1 + take_profit_percent / 100.0 if side == LONG else 1 - take_profit_percent / 100.0
    return round(entry_price * mult, 8)


def format_signal_event(event: SignalEvent, parse_mode: str = "HTML") -> str:
    parse_mode = (parse_mode or "HTML").upper()
    direction = "LONG" if event.side == LONG else "SHORT"
    tp_price = take_profit_price(event.entry_price, event.take_profit_percent, event.side)
    lines = [
        _bold(f"New {direction} signal", parse_mode),
        f"{_bold(event.symbol, parse_mode)} {_escape_text('| ' + event.interval, parse_mode)}",
        "",
        _escape_text(f"Entry: {_fmt_price(event.entry_price)}", parse_mode),
        _escape_text(f"Take profit: {event.take_profit_percent:g}% ({_fmt_price(tp_price)})", parse_mode),
        _escape_text(f"Valid for: {event.validity_hours:g}h", parse_mode),
        _escape_text(f"Time: {_fmt_ms(event.entry_time_ms)}", parse_mode),
    ]
    return "\n".join(lines)


def format_update_event(event: UpdateEvent, parse_mode: str = "HTML") -> str:
    parse_mode = (parse_mode or "HTML").upper()
    direction = "LONG" if event.side == LONG else "SHORT"
    status = "Take profit reached" if event.status == SUCCESS else "Expired"
    lines = [
        _bold(f"{status}: {direction} {event.symbol} {event.interval}", parse_mode),
        _escape_text(f"Entry: {_fmt_price(event.entry_price)} | Exit: {_fmt_price(event.exit_price)}", parse_mode),
        _escape_text(f"P/L: {event.pnl_percent:+.2f}% | Max move: {event.max_favorable_excursion:+.2f}%", parse_mode),
    ]
    return "\n".join(lines)


def format_event(event: Union[SignalEvent, UpdateEvent], parse_mode: str = "HTML") -> str:
    if isinstance(event, UpdateEvent):
        return format_update_event(event, parse_mode)
    return format_signal_event(event, parse_mode)
