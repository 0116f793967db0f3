from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import aiohttp
import websockets

from ..errors import TransientNetworkError
from ..intervals import from_exchange, interval_config
from ..models import Candle, Pair

log = logging.getLogger("bybit")

# Bybit rejects public subscribe requests with more than 10 args.
_MAX_ARGS_PER_OP = 10


def _rest_base(testnet: bool) -> str:
    return "https://api-testnet.bybit.com" if testnet else "https://api.bybit.com"


def _ws_url(category: str, testnet: bool) -> str:
    host = "stream-testnet.bybit.com" if testnet else "stream.bybit.com"
    return f"wss://{host}/v5/public/{category}"


def _topic(symbol: str, interval: str) -> str:
    return f"kline.{interval_config(interval).exchange}.{symbol.upper()}"


@dataclass(frozen=True)
class ClosedCandleEvent:
    symbol: str
    interval: str
    candle: Candle

    @property
    def pair(self) -> Pair:
        return Pair(self.symbol, self.interval)


def parse_kline_rows(rows: List[List[Any]], interval: str, now_ms: int) -> List[Candle]:
    """REST kline rows (newest first) to closed candles, oldest first.

    The still-open candle (start + duration beyond ``now_ms``) is dropped.
    """
    duration = interval_config(interval).duration_ms
    out: List[Candle] = []
    for row in rows:
        # [start, open, high, low, close, volume, turnover]
        out.append(Candle(
            start_time_ms=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            turnover=float(row[6]) if len(row) > 6 else 0.0,
        ))
    out.sort(key=lambda c: c.start_time_ms)
    while out and out[-1].start_time_ms + duration > now_ms:
        out.pop()
    return out


def parse_ws_message(msg: Dict[str, Any]) -> List[ClosedCandleEvent]:
    """Validate a public kline push; only confirmed (closed) klines become events."""
    topic = msg.get("topic")
    if not isinstance(topic, str) or not topic.startswith("kline."):
        return []
    parts = topic.split(".")
    if len(parts) != 3:
        return []
    _, code, symbol = parts
    try:
        interval = from_exchange(code)
    except ValueError:
        log.debug("ws_unknown_interval topic=%s", topic)
        return []

    data = msg.get("data")
    if not isinstance(data, list):
        return []
    events: List[ClosedCandleEvent] = []
    for k in data:
        if not isinstance(k, dict) or not k.get("confirm", False):
            continue  # only closed candles
        try:
            c = Candle(
                start_time_ms=int(k["start"]),
                open=float(k["open"]),
                high=float(k["high"]),
                low=float(k["low"]),
                close=float(k["close"]),
                volume=float(k["volume"]),
                turnover=float(k.get("turnover") or 0.0),
            )
        except (KeyError, TypeError, ValueError) as e:
            log.warning("ws_bad_kline topic=%s err=%s", topic, e)
            continue
        events.append(ClosedCandleEvent(symbol=symbol.upper(), interval=interval, candle=c))
    return events


_DIGITS = re.compile(r"\d")


def rank_top_volume(tickers: List[Dict[str, Any]], top_n: int, quote: str = "USDT") -> List[str]:
    """Symbols quoted in ``quote`` sorted by 24h turnover; names containing digits are skipped."""
    rows = []
    for t in tickers:
        sym = str(t.get("symbol", "")).upper()
        if not sym.endswith(quote) or _DIGITS.search(sym):
            continue
        try:
            turnover = float(t.get("turnover24h") or 0.0)
        except (TypeError, ValueError):
            continue
        rows.append((turnover, sym))
    rows.sort(key=lambda r: r[0], reverse=True)
    return [sym for _, sym in rows[: max(0, int(top_n))]]


class BybitProvider:
    def __init__(
        self,
        category: str = "linear",
        *,
        testnet: bool = False,
        rest_timeout_s: int = 20,
        ws_heartbeat_s: int = 20,
        rest_max_retries: int = 4,
        rest_backoff_s: float = 0.8,
        rest_conn_limit: int = 40,
        rest_conn_limit_per_host: int = 10,
    ):
        self.category = category
        self.testnet = testnet
        self.rest_timeout_s = rest_timeout_s
        self.ws_heartbeat_s = ws_heartbeat_s

        # REST robustness
        self.rest_max_retries = rest_max_retries
        self.rest_backoff_s = rest_backoff_s
        self.rest_conn_limit = rest_conn_limit
        self.rest_conn_limit_per_host = rest_conn_limit_per_host

        self._session: Optional[aiohttp.ClientSession] = None
        self._topics: Set[str] = set()
        self._ws = None
        self._req_id = 0

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.rest_timeout_s,
            connect=min(10, self.rest_timeout_s),
            sock_connect=min(10, self.rest_timeout_s),
            sock_read=max(10, int(self.rest_timeout_s * 0.75)),
        )

    def _connector(self) -> aiohttp.TCPConnector:
        return aiohttp.TCPConnector(
            limit=self.rest_conn_limit,
            limit_per_host=self.rest_conn_limit_per_host,
            ttl_dns_cache=300,
            enable_cleanup_closed=True,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout(), connector=self._connector())
        return self._session

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        url = _rest_base(self.testnet) + path
        sess = await self._get_session()

        backoff = float(self.rest_backoff_s)
        last_err: Optional[BaseException] = None
        for attempt in range(1, int(self.rest_max_retries) + 1):
            try:
                async with sess.get(url, params=params) as resp:
                    if resp.status in (403, 429):
                        txt = await resp.text()
                        log.warning(
                            "rest_rate_limited status=%s path=%s sleep=%.1fs body=%s",
                            resp.status, path, backoff, txt[:200],
                        )
                        last_err = TransientNetworkError(f"rate limited: {resp.status}")
                        await asyncio.sleep(backoff)
                        backoff = min(backoff * 2.0, 20.0)
                        continue

                    if resp.status != 200:
                        txt = await resp.text()
                        raise TransientNetworkError(f"Bybit {path} failed: {resp.status} {txt[:500]}")

                    data = await resp.json(content_type=None)

                if int(data.get("retCode", -1)) != 0:
                    raise TransientNetworkError(f"Bybit {path} retCode={data.get('retCode')} retMsg={data.get('retMsg')}")
                return data.get("result") or {}

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_err = e
                if attempt >= int(self.rest_max_retries):
                    break
                log.warning(
                    "rest_timeout_or_client_err attempt=%d/%d path=%s params=%s backoff=%.1fs err=%s",
                    attempt, self.rest_max_retries, path, params, backoff, e,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 20.0)

        raise TransientNetworkError(f"Bybit {path} failed after {self.rest_max_retries} attempts: {last_err!r}")

    async def fetch_historical_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        # One extra row so the window stays `limit` long after the open candle is dropped.
        params = {
            "category": self.category,
            "symbol": symbol.upper(),
            "interval": interval_config(interval).exchange,
            "limit": min(int(limit) + 1, 1000),
        }
        result = await self._get("/v5/market/kline", params)
        candles = parse_kline_rows(result.get("list") or [], interval, int(time.time() * 1000))
        return candles[-int(limit):] if limit > 0 else []

    async def fetch_top_volume_symbols(self, top_n: int, quote: str = "USDT") -> List[str]:
        result = await self._get("/v5/market/tickers", {"category": self.category})
        symbols = rank_top_volume(result.get("list") or [], top_n, quote)
        log.info("top_volume_symbols count=%d symbols=%s", len(symbols), symbols)
        return symbols

    async def subscribe(self, symbol: str, interval: str) -> None:
        topic = _topic(symbol, interval)
        if topic in self._topics:
            return
        self._topics.add(topic)
        await self._send_op("subscribe", [topic])

    async def unsubscribe(self, symbol: str, interval: str) -> None:
        topic = _topic(symbol, interval)
        if topic not in self._topics:
            return
        self._topics.discard(topic)
        await self._send_op("unsubscribe", [topic])

    async def _send_op(self, op: str, args: List[str]) -> None:
        ws = self._ws
        if ws is None:
            return  # sent on (re)connect
        for i in range(0, len(args), _MAX_ARGS_PER_OP):
            self._req_id += 1
            try:
                await ws.send(json.dumps({"op": op, "args": args[i:i + _MAX_ARGS_PER_OP], "req_id": str(self._req_id)}))
            except websockets.ConnectionClosed as e:
                # The reconnect loop replays the full topic set.
                log.warning("ws_send_failed op=%s err=%s", op, e)
                return

    async def _heartbeat(self, ws) -> None:
        try:
            while True:
                await asyncio.sleep(self.ws_heartbeat_s)
                await ws.send(json.dumps({"op": "ping"}))
        except websockets.ConnectionClosed:
            return

    async def stream(self) -> AsyncIterator[ClosedCandleEvent]:
        """Yields CLOSED klines for every subscribed topic. Auto-reconnects."""
        ws_url = _ws_url(self.category, self.testnet)

        backoff = 1
        while True:
            hb: Optional[asyncio.Task] = None
            try:
                async with websockets.connect(
                    ws_url,
                    ping_interval=None,
                    close_timeout=5,
                    max_queue=5000,
                ) as ws:
                    self._ws = ws
                    backoff = 1
                    hb = asyncio.create_task(self._heartbeat(ws))
                    topics = sorted(self._topics)
                    if topics:
                        await self._send_op("subscribe", topics)
                    log.info("ws_connected topics=%d category=%s", len(topics), self.category)

                    async for msg in ws:
                        try:
                            j = json.loads(msg)
                        except ValueError:
                            continue
                        if "op" in j:
                            if j.get("op") in ("subscribe", "unsubscribe") and not j.get("success", True):
                                log.warning("ws_op_rejected op=%s msg=%s", j.get("op"), j.get("ret_msg"))
                            continue  # acks and pongs
                        for evt in parse_ws_message(j):
                            yield evt

            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("ws_error err=%s reconnect_in=%ss", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 60)
            finally:
                self._ws = None
                if hb is not None:
                    hb.cancel()
