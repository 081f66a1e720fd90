"""Chat backends for the status message: Discord webhooks and Telegram."""

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping, Optional

import httpx
from telegram import Bot
from telegram.error import BadRequest, NetworkError, RetryAfter, TelegramError

from .config import NotifyConfig

logger = logging.getLogger(__name__)

DISCORD_API_BASE = "https://discord.com/api/webhooks"

_ID_TOKEN_RE = re.compile(r"^[0-9]+/[A-Za-z0-9_-]+$")


@dataclass
class TransportResult:
    """Outcome of one HTTP-level operation. status 0 means no response."""
    status: int
    message_id: Optional[str] = None
    retry_after: Optional[float] = None  # Seconds, from a 429 response
    error: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def extract_webhook_id_token(webhook_url: Optional[str]) -> Optional[str]:
    """
    Pull ``<id>/<token>`` out of a Discord webhook URL.

    Query strings, fragments and a trailing slash are ignored. Returns None
    when the URL has no webhook path or the pair is malformed.
    """
    if not webhook_url or "/webhooks/" not in webhook_url:
        return None
    id_token = webhook_url.split("/webhooks/", 1)[1]
    id_token = id_token.split("?", 1)[0].split("#", 1)[0].rstrip("/")
    return id_token if _ID_TOKEN_RE.match(id_token) else None


def _seconds(value: Any) -> Optional[float]:
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, bool) or value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


def parse_retry_after(headers: Mapping[str, str], body: Any = None) -> Optional[float]:
    """Retry hint from a 429: the Retry-After header, else JSON ``retry_after``."""
    hint = _seconds(headers.get("retry-after") or headers.get("Retry-After"))
    if hint is not None:
        return hint
    if isinstance(body, dict):
        return _seconds(body.get("retry_after"))
    return None


def render_embed_text(payload: dict) -> str:
    """Flatten an embed payload to plain text for backends without embeds."""
    embeds = payload.get("embeds") or [{}]
    embed = embeds[0]
    lines = [embed.get("title", "")]
    for item in embed.get("fields", []):
        lines.append(f"{item.get('name')}: {item.get('value')}")
    footer = (embed.get("footer") or {}).get("text")
    if footer:
        lines.append("")
        lines.append(footer)
    return "\n".join(lines)


class Transport:
    """Create, edit and delete a single message in a channel."""

    name = "transport"

    async def create(self, payload: dict) -> TransportResult:
        raise NotImplementedError

    async def edit(self, message_id: str, payload: dict) -> TransportResult:
        raise NotImplementedError

    async def delete(self, message_id: str) -> TransportResult:
        raise NotImplementedError

    async def close(self):
        pass


class DiscordWebhookTransport(Transport):
    """Discord webhook API over httpx."""

    name = "discord"

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.webhook_url = webhook_url
        self.id_token = extract_webhook_id_token(webhook_url)
        if not self.id_token:
            logger.warning("Could not extract webhook id/token, edits and deletes will fail")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def _message_url(self, message_id: str) -> str:
        return f"{DISCORD_API_BASE}/{self.id_token}/messages/{message_id}"

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        return await self.client.request(method, url, **kwargs)

    def _result(self, response: httpx.Response, want_id: bool = False) -> TransportResult:
        body = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = None

        if response.status_code == 429:
            return TransportResult(
                status=429,
                retry_after=parse_retry_after(response.headers, body),
                error="rate limited",
            )

        result = TransportResult(status=response.status_code)
        if not result.ok:
            result.error = response.text[:200]
        elif want_id:
            message_id = body.get("id") if isinstance(body, dict) else None
            if not message_id:
                # No handle means the message can never be edited; treat as failure
                return TransportResult(status=0, error="response had no message id")
            result.message_id = str(message_id)
        return result

    async def create(self, payload: dict) -> TransportResult:
        try:
            response = await self._request("POST", self.webhook_url, params={"wait": "true"}, json=payload)
        except httpx.HTTPError as e:
            return TransportResult(status=0, error=str(e) or type(e).__name__)
        return self._result(response, want_id=True)

    async def edit(self, message_id: str, payload: dict) -> TransportResult:
        if not self.id_token:
            return TransportResult(status=0, error="invalid webhook url")
        try:
            response = await self._request("PATCH", self._message_url(message_id), json=payload)
        except httpx.HTTPError as e:
            return TransportResult(status=0, error=str(e) or type(e).__name__)
        return self._result(response)

    async def delete(self, message_id: str) -> TransportResult:
        if not self.id_token:
            return TransportResult(status=0, error="invalid webhook url")
        try:
            response = await self._request("DELETE", self._message_url(message_id))
        except httpx.HTTPError as e:
            return TransportResult(status=0, error=str(e) or type(e).__name__)
        return self._result(response)

    async def close(self):
        if self._owns_client:
            await self.client.aclose()


class TelegramTransport(Transport):
    """
    Telegram backend via python-telegram-bot.

    Telegram errors are mapped onto HTTP-style statuses so the delivery
    client's retry and self-heal rules apply unchanged.
    """

    name = "telegram"

    def __init__(
        self,
        token: Optional[str] = None,
        chat_id: Optional[str] = None,
        thread_id: Optional[int] = None,
        bot: Optional[Bot] = None,
    ):
        if bot is None and not token:
            raise ValueError("Telegram transport needs a bot token")
        self.bot = bot or Bot(token=token)
        self.chat_id = chat_id
        self.thread_id = thread_id
        self._initialized = bot is not None

    async def _ensure_initialized(self):
        if not self._initialized:
            await self.bot.initialize()
            self._initialized = True

    @staticmethod
    def _error_result(error: TelegramError) -> TransportResult:
        if isinstance(error, RetryAfter):
            return TransportResult(status=429, retry_after=_seconds(error.retry_after), error=str(error))
        if isinstance(error, BadRequest):
            text = str(error).lower()
            if "not modified" in text:
                return TransportResult(status=200)
            if "not found" in text:
                return TransportResult(status=404, error=str(error))
            return TransportResult(status=400, error=str(error))
        if isinstance(error, NetworkError):
            return TransportResult(status=503, error=str(error))
        return TransportResult(status=500, error=str(error))

    async def create(self, payload: dict) -> TransportResult:
        try:
            await self._ensure_initialized()
            msg = await self.bot.send_message(
                chat_id=self.chat_id,
                text=render_embed_text(payload),
                message_thread_id=self.thread_id,
            )
        except TelegramError as e:
            return self._error_result(e)
        return TransportResult(status=200, message_id=str(msg.message_id))

    async def edit(self, message_id: str, payload: dict) -> TransportResult:
        try:
            await self._ensure_initialized()
            await self.bot.edit_message_text(
                chat_id=self.chat_id,
                message_id=int(message_id),
                text=render_embed_text(payload),
            )
        except TelegramError as e:
            return self._error_result(e)
        except ValueError:
            return TransportResult(status=404, error=f"invalid message id {message_id!r}")
        return TransportResult(status=200)

    async def delete(self, message_id: str) -> TransportResult:
        try:
            await self._ensure_initialized()
            await self.bot.delete_message(chat_id=self.chat_id, message_id=int(message_id))
        except TelegramError as e:
            return self._error_result(e)
        except ValueError:
            return TransportResult(status=404, error=f"invalid message id {message_id!r}")
        return TransportResult(status=200)

    async def close(self):
        if self._initialized:
            await self.bot.shutdown()


def create_transport(config: NotifyConfig) -> Optional[Transport]:
    """Build the configured backend, or None when nothing is configured."""
    if config.transport == "telegram":
        if not config.telegram_token or not config.telegram_chat_id:
            logger.warning("Telegram transport selected but token or chat id is missing")
            return None
        return TelegramTransport(
            token=config.telegram_token,
            chat_id=config.telegram_chat_id,
            thread_id=config.telegram_thread_id,
        )

    if config.transport != "discord":
        logger.warning(f"Unknown transport '{config.transport}', using discord")
    if not config.webhook_url:
        return None
    return DiscordWebhookTransport(config.webhook_url, timeout=config.request_timeout)
