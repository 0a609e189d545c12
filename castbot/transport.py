"""
Chat transport: the send primitives the bot core talks to, and their
Telegram Bot API implementation.
"""
import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from castbot.models import Button, MediaRef

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 4096
MAX_CAPTION_LENGTH = 1024

ButtonRows = List[List[Button]]


class ChatTransport(Protocol):
    async def send_message(
        self,
        chat_id: int,
        text: str,
        buttons: Optional[ButtonRows] = None,
        force_reply: bool = False,
    ) -> None: ...

    async def send_media(
        self,
        chat_id: int,
        media: MediaRef,
        caption: str,
        buttons: Optional[ButtonRows] = None,
    ) -> None: ...

    async def answer_callback(self, callback_id: str, text: str) -> None: ...


class TelegramError(Exception):
    pass


def clip_html(text: str, limit: int) -> str:
    """Cut ``text`` to at most ``limit`` characters without splitting an entity or a tag."""
    if len(text) <= limit:
        return text
    clipped = text[:limit]
    for opener, closer in (("<", ">"), ("&", ";")):
        start = clipped.rfind(opener)
        if start > clipped.rfind(closer):
            clipped = clipped[:start]
    return clipped


def _reply_markup(buttons: Optional[ButtonRows], force_reply: bool) -> Optional[Dict[str, Any]]:
    if force_reply:
        return {"force_reply": True}
    if buttons:
        return {
            "inline_keyboard": [
                [{"text": b.label, "callback_data": b.payload} for b in row]
                for row in buttons
            ]
        }
    return None


class TelegramTransport:
    """Sends messages through the Telegram Bot API over httpx."""

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.telegram.org",
        timeout: float = 20.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self._base = f"{api_url.rstrip('/')}/bot{token}"
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self):
        if self._owns_http:
            await self._http.aclose()

    async def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._http.post(f"{self._base}/{method}", json=payload)
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TelegramError(f"{method} failed: {e}") from e
        if not data.get("ok"):
            raise TelegramError(f"{method} rejected: {data.get('description')}")
        return data

    async def send_message(
        self,
        chat_id: int,
        text: str,
        buttons: Optional[ButtonRows] = None,
        force_reply: bool = False,
    ) -> None:
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "text": clip_html(text, MAX_TEXT_LENGTH),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        markup = _reply_markup(buttons, force_reply)
        if markup:
            payload["reply_markup"] = markup
        await self._call("sendMessage", payload)

    async def send_media(
        self,
        chat_id: int,
        media: MediaRef,
        caption: str,
        buttons: Optional[ButtonRows] = None,
    ) -> None:
        method, field = ("sendVideo", "video") if media.kind == "video" else ("sendPhoto", "photo")
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            field: media.url,
            "caption": clip_html(caption, MAX_CAPTION_LENGTH),
            "parse_mode": "HTML",
        }
        markup = _reply_markup(buttons, False)
        if markup:
            payload["reply_markup"] = markup
        try:
            await self._call(method, payload)
        except TelegramError:
            # Telegram refuses some remote media urls; the text still goes out
            logger.warning("%s failed for %s, sending text instead", method, media.url)
            await self.send_message(chat_id, f"{caption}\n\n{media.url}", buttons)

    async def answer_callback(self, callback_id: str, text: str) -> None:
        await self._call("answerCallbackQuery", {"callback_query_id": callback_id, "text": text})
