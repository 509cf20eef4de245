"""Push emitted signals and fired alert policies to a Telegram chat."""

from __future__ import annotations

import logging

import httpx

from quanta_stream.common.http import HttpClient
from quanta_stream.config import Settings, get_settings
from quanta_stream.features.extractor import FeatureSet
from quanta_stream.signals.formatters import format_telegram_alert, format_telegram_signal
from quanta_stream.signals.models import AlertPolicy, Signal

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class TelegramNotifier:
    """Bot API sender used by the pipeline's outbox drain.

    Delivery problems are logged and reported as False; they never propagate
    into the ingestion path.
    """

    def __init__(
        self,
        bot_token: str | None = None,
        chat_id: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        if bot_token is None or chat_id is None:
            settings = settings or get_settings()
        self._bot_token = settings.telegram_bot_token if bot_token is None else bot_token
        self._chat_id = settings.telegram_chat_id if chat_id is None else chat_id
        self._client: HttpClient | None = None

    @property
    def enabled(self) -> bool:
        return bool(self._bot_token and self._chat_id)

    def _http(self) -> HttpClient:
        if self._client is None:
            self._client = HttpClient(base_url=TELEGRAM_API)
        return self._client

    async def send_message(self, text: str, parse_mode: str | None = "Markdown") -> bool:
        """POST one sendMessage call; True only when Telegram accepted it."""
        if not self.enabled:
            logger.debug("Telegram not configured, dropping %d-char message", len(text))
            return False

        payload: dict[str, object] = {"chat_id": self._chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        try:
            resp = await self._http().post(f"/bot{self._bot_token}/sendMessage", json=payload)
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Telegram rejected message (%d): %s",
                exc.response.status_code, exc.response.text[:200],
            )
            return False
        except httpx.HTTPError as exc:
            logger.warning("Telegram unreachable: %s", exc)
            return False

        try:
            body = resp.json()
        except ValueError:
            body = None
        ok = not isinstance(body, dict) or bool(body.get("ok", True))
        if not ok:
            logger.warning("Telegram returned ok=false for chat %s", self._chat_id)
        return ok

    async def notify_signal(self, signal: Signal) -> bool:
        return await self.send_message(format_telegram_signal(signal))

    async def notify_alert(self, policy: AlertPolicy, features: FeatureSet) -> bool:
        return await self.send_message(format_telegram_alert(policy, features))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
