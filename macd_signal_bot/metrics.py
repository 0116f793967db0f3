from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .models import ACTIVE, Signal


@dataclass(frozen=True)
class SignalMetrics:
    total_signals: int = 0
    success_rate: float = 0.0
    average_profit: float = 0.0
    average_loss: float = 0.0
    profit_factor: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0
    win_streak: int = 0
    loss_streak: int = 0
    average_holding_time_ms: float = 0.0


def compute_metrics(signals: Iterable[Signal]) -> SignalMetrics:
    """Performance summary over resolved signals, in entry order."""
    closed = sorted(
        (s for s in signals if s.status != ACTIVE and s.pnl_percent is not None),
        key=lambda s: s.entry_time_ms,
    )
    if not closed:
        return SignalMetrics()

    profits = [float(s.pnl_percent) for s in closed]
    wins = [p for p in profits if p > 0]
    losses = [p for p in profits if p < 0]

    win_run = loss_run = max_win = max_loss = 0
    for p in profits:
        if p > 0:
            win_run += 1
            loss_run = 0
            max_win = max(max_win, win_run)
        elif p < 0:
            loss_run += 1
            win_run = 0
            max_loss = max(max_loss, loss_run)

    total_profit = sum(wins)
    total_loss = abs(sum(losses))
    held = [s.closed_at_ms - s.entry_time_ms for s in closed if s.closed_at_ms is not None]

    return SignalMetrics(
        total_signals=len(closed),
        success_rate=len(wins) / len(closed) * 100.0,
        average_profit=total_profit / len(wins) if wins else 0.0,
        average_loss=total_loss / len(losses) if losses else 0.0,
        profit_factor=total_profit / total_loss if total_loss else 0.0,
        best_trade=max(profits),
        worst_trade=min(profits),
        win_streak=max_win,
        loss_streak=max_loss,
        average_holding_time_ms=sum(held) / len(held) if held else 0.0,
    )
