"""
Telegram webhook.

Each update is reduced to an InboundMessage and handed to the dialogue
engine, which sends its own replies. Telegram delivers one user's
updates in order, waiting for each response, so a user never has two
messages in flight.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Header, HTTPException, status

from counselbot.config import settings
from counselbot.core.dialogue import InboundMessage, get_dialogue_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["Webhook"])


def parse_update(update: dict[str, Any]) -> Optional[InboundMessage]:
    """Extract the sender and content of a text message or button press.

    Returns None for update kinds the bot ignores (edits, joins, media).
    """
    callback = update.get("callback_query")
    if callback:
        sender = callback.get("from") or {}
        if "id" not in sender:
            return None
        return InboundMessage(
            user_id=str(sender["id"]),
            text="",
            chosen_action_id=callback.get("data"),
            username=sender.get("username"),
        )

    message = update.get("message")
    if not message or not message.get("text"):
        return None

    chat = message.get("chat") or {}
    sender = message.get("from") or {}
    user_id = chat.get("id", sender.get("id"))
    if user_id is None:
        return None

    return InboundMessage(
        user_id=str(user_id),
        text=message["text"],
        username=sender.get("username"),
    )


@router.post(
    "/telegram",
    summary="Telegram update",
    description="Receives bot updates. Always answers 200 once the secret matches so Telegram does not redeliver.",
)
async def telegram_webhook(
    update: dict[str, Any],
    secret: Optional[str] = Header(default=None, alias="X-Telegram-Bot-Api-Secret-Token"),
) -> dict:
    if settings.telegram_webhook_secret and secret != settings.telegram_webhook_secret:
        logger.warning("Rejected webhook call with bad secret token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid secret token",
        )

    message = parse_update(update)
    if message is None:
        return {"ok": True, "handled": False}

    try:
        await get_dialogue_engine().receive(message)
    except Exception as e:
        # A failing update must not be redelivered forever
        logger.exception(f"Error handling update from {message.user_id}: {e}")
        return {"ok": True, "handled": False}

    return {"ok": True, "handled": True}
