"""
HTTP client for the Telegram Bot API.

The dialogue engine and reminder sweeper only deal in OutgoingMessage;
this client turns them into sendMessage / deleteMessage calls.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from counselbot.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class OutgoingMessage:
    """Message addressed to a channel user."""

    user_id: str
    text: str
    keyboard: list[list[str]] = field(default_factory=list)
    """Reply keyboard rows. Empty means remove any keyboard."""

    def to_payload(self) -> dict:
        """Build the sendMessage request body."""
        payload: dict = {"chat_id": self.user_id, "text": self.text}
        if self.keyboard:
            payload["reply_markup"] = {
                "keyboard": [[{"text": label} for label in row] for row in self.keyboard],
                "one_time_keyboard": True,
                "resize_keyboard": True,
            }
        else:
            payload["reply_markup"] = {"remove_keyboard": True}
        return payload


class TelegramClient:
    """
    HTTP client for the Telegram Bot API.

    Exposes:
    - POST /bot{token}/sendMessage
    - POST /bot{token}/deleteMessage
    """

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
    ):
        settings = get_settings()
        self.token = token if token is not None else settings.telegram_bot_token
        self.base_url = base_url or settings.telegram_api_url
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.base_url}/bot{self.token}",
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, message: OutgoingMessage) -> Optional[int]:
        """Send a message.

        Returns:
            Telegram message_id, or None if delivery failed
        """
        client = await self._get_client()

        try:
            response = await client.post("/sendMessage", json=message.to_payload())
            response.raise_for_status()
            data = response.json()
            return data.get("result", {}).get("message_id")

        except httpx.HTTPError as e:
            logger.error(f"Failed to send message to {message.user_id}: {e}")
            return None

    async def delete_message(self, user_id: str, message_id: int) -> bool:
        """Delete a previously sent message. Best effort."""
        client = await self._get_client()

        try:
            response = await client.post(
                "/deleteMessage",
                json={"chat_id": user_id, "message_id": message_id},
            )
            return response.status_code == 200

        except httpx.HTTPError as e:
            logger.warning(f"Failed to delete message {message_id} for {user_id}: {e}")
            return False


# Singleton
_client: Optional[TelegramClient] = None


def get_telegram_client() -> TelegramClient:
    """Get singleton TelegramClient."""
    global _client
    if _client is None:
        _client = TelegramClient()
    return _client
