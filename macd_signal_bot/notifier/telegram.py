from __future__ import annotations

import aiohttp
from typing import Any, Dict, Optional, Union
import logging

from ..errors import NotificationFailure
from ..formatters import format_event
from ..models import MessageRef, SignalEvent, UpdateEvent

log = logging.getLogger("telegram")


class TelegramNotifier:
    """Bot API sender. A rejected formatted message is retried once as plain text."""

    def __init__(
        self,
        token: str,
        *,
        parse_mode: str = "HTML",
        disable_web_page_preview: bool = True,
        timeout_s: float = 15,
        api_base: str = "https://api.telegram.org",
    ):
        self.token = (token or "").strip()
        self.parse_mode = (parse_mode or "HTML").upper()
        self.disable_web_page_preview = disable_web_page_preview
        self.timeout_s = timeout_s
        self.api_base = api_base.rstrip("/")

    def enabled(self) -> bool:
        return bool(self.token)

    async def notify(self, scope: str, event: Union[SignalEvent, UpdateEvent]) -> Optional[MessageRef]:
        return await self._deliver(str(scope), event, reply_to=None)

    async def reply(self, ref: MessageRef, event: UpdateEvent) -> Optional[MessageRef]:
        return await self._deliver(ref.chat_id, event, reply_to=ref.message_id)

    async def _deliver(self, chat_id: str, event, *, reply_to: Optional[int]) -> Optional[MessageRef]:
        if not self.enabled() or not chat_id:
            return None
        try:
            return await self._send(chat_id, format_event(event, self.parse_mode), self.parse_mode, reply_to)
        except NotificationFailure as e:
            log.warning("telegram_send_failed chat_id=%s err=%s retry=plain", chat_id, e)
        try:
            return await self._send(chat_id, format_event(event, "PLAIN"), None, reply_to)
        except NotificationFailure as e:
            log.error("telegram_send_dropped chat_id=%s signal=%s err=%s", chat_id, event.signal_id, e)
            return None

    async def send_text(self, chat_id: str, text: str) -> Optional[MessageRef]:
        if not self.enabled() or not chat_id:
            return None
        try:
            return await self._send(str(chat_id), text, None, None)
        except NotificationFailure as e:
            log.warning("telegram_send_failed chat_id=%s err=%s", chat_id, e)
            return None

    async def _send(self, chat_id: str, text: str, parse_mode: Optional[str], reply_to: Optional[int]) -> MessageRef:
        url = f"{self.api_base}/bot{self.token}/sendMessage"
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": self.disable_web_page_preview,
        }
        if parse_mode and parse_mode != "PLAIN":
            payload["parse_mode"] = "MarkdownV2" if parse_mode == "MARKDOWNV2" else parse_mode
        if reply_to is not None:
            payload["reply_parameters"] = {"message_id": int(reply_to), "allow_sending_without_reply": True}
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s)) as sess:
                async with sess.post(url, json=payload) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        raise NotificationFailure(f"status={resp.status} body={body[:500]}")
                    data = await resp.json(content_type=None)
        except NotificationFailure:
            raise
        except Exception as e:
            raise NotificationFailure(repr(e)) from e
        result = data.get("result") or {}
        return MessageRef(chat_id=chat_id, message_id=int(result.get("message_id", 0)))
