from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional
import os
import yaml

from .intervals import normalize_interval
from .models import Subscription


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


def _env_list(env_key: str) -> Optional[List[str]]:
    raw = os.getenv(env_key)
    if not raw:
        return None
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass
class StrategyConfig:
    # MACD
    fast_period: int = 12
    slow_period: int = 26
    signal_period: int = 9

    # Volume confirmation
    volume_sma_period: int = 9
    volume_change_min_pct: float = 10.0  # needs a rising smoothed SMA as well
    volume_spike_pct: float = 30.0  # confirms on its own

    direction_candles: int = 3
    window_size: int = 300
    htf_candles: int = 100

    # previous | peak (see SignalGenerator)
    fade_reference: str = "previous"


@dataclass
class ProviderConfig:
    type: str = "bybit"
    category: str = "linear"  # linear | spot | inverse
    testnet: bool = False
    warmup_candles: int = 300
    warmup_concurrency: int = 5
    rest_timeout_s: int = 20
    ws_heartbeat_s: int = 20
    queue_size: int = 500  # per pair


@dataclass
class BroadcastConfig:
    enabled: bool = True
    symbols: List[str] = field(default_factory=list)  # static list, used when top_symbols == 0
    top_symbols: int = 10
    intervals: List[str] = field(default_factory=lambda: ["15m"])
    refresh_hours: float = 4.0


@dataclass
class TelegramConfig:
    enabled: bool = True
    token: str = ""
    channel_id: str = ""
    parse_mode: str = "HTML"
    disable_web_page_preview: bool = True
    notify_subscribers: bool = True


@dataclass
class MaintenanceConfig:
    reconcile_interval_s: float = 60.0
    retention_days: int = 30
    interval_hours: float = 24.0


@dataclass
class AppConfig:
    name: str = "MACD Signal Bot"
    log_level: str = "INFO"
    scope: str = "broadcast"  # signal uniqueness scope when no channel id is set


@dataclass
class Config:
    app: AppConfig = field(default_factory=AppConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)
    subscriptions: List[Subscription] = field(default_factory=list)

    @property
    def scope(self) -> str:
        return self.telegram.channel_id or self.app.scope


def validate_config(cfg: Config) -> None:
    errs = []
    s = cfg.strategy
    if min(s.fast_period, s.slow_period, s.signal_period) <= 0:
        errs.append("strategy MACD periods must be positive")
    elif s.fast_period >= s.slow_period:
        errs.append("strategy.fast_period must be smaller than strategy.slow_period")
    if s.volume_sma_period <= 0:
        errs.append("strategy.volume_sma_period must be positive")
    if s.direction_candles < 1:
        errs.append("strategy.direction_candles must be >= 1")
    if s.window_size < s.slow_period:
        errs.append("strategy.window_size must be >= strategy.slow_period")
    if s.fade_reference not in ("previous", "peak"):
        errs.append("strategy.fade_reference must be 'previous' or 'peak'")
    for iv in cfg.broadcast.intervals:
        try:
            normalize_interval(iv)
        except ValueError as e:
            errs.append(f"broadcast.intervals: {e}")
    for sub in cfg.subscriptions:
        try:
            normalize_interval(sub.interval)
        except ValueError as e:
            errs.append(f"subscriptions[{sub.user_id}]: {e}")
    if errs:
        raise ValueError("Config violation: " + "; ".join(errs))


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    cfg = Config(
        app=AppConfig(**raw.get("app", {})),
        provider=ProviderConfig(**raw.get("provider", {})),
        strategy=StrategyConfig(**raw.get("strategy", {})),
        broadcast=BroadcastConfig(**raw.get("broadcast", {})),
        telegram=TelegramConfig(**raw.get("telegram", {})),
        maintenance=MaintenanceConfig(**raw.get("maintenance", {})),
        subscriptions=[Subscription(**s) for s in raw.get("subscriptions") or []],
    )

    for sub in cfg.subscriptions:
        sub.user_id = str(sub.user_id)
        sub.symbol = sub.symbol.upper()
    cfg.broadcast.symbols = [s.upper() for s in cfg.broadcast.symbols or []]

    # env overrides (useful on servers)
    cfg.telegram.token = _env_override(cfg.telegram.token, "TELEGRAM_TOKEN")
    cfg.telegram.channel_id = str(_env_override(cfg.telegram.channel_id, "TELEGRAM_CHANNEL_ID"))

    # Allow BROADCAST_SYMBOLS="BTCUSDT,ETHUSDT"
    symbols_env = _env_list("BROADCAST_SYMBOLS")
    if symbols_env:
        cfg.broadcast.symbols = [s.upper() for s in symbols_env]

    validate_config(cfg)
    for sub in cfg.subscriptions:
        sub.interval = normalize_interval(sub.interval)
    cfg.broadcast.intervals = [normalize_interval(iv) for iv in cfg.broadcast.intervals]
    return cfg
