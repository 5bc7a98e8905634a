"""Operator notifications over the Telegram Bot API.

Delivery is best-effort: missing credentials or transport errors are
logged and reported through the return value, never raised into the
decision path that produced the message.
"""

import os
from typing import Any, Mapping, Optional

import requests
from dotenv import load_dotenv

from log_utils import setup_logger

load_dotenv()

TELEGRAM_TOKEN = os.getenv("TELEGRAM_TOKEN")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID")
TELEGRAM_API = "https://api.telegram.org"
HTTP_TIMEOUT = 10

__all__ = ["send_telegram_message", "format_details", "format_number"]

logger = setup_logger(__name__)


# (magnitude floor, decimals) checked top-down; small prices keep more digits
_PRICE_DECIMALS = ((100.0, 2), (1.0, 4), (0.0, 6))


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", ""))
        except ValueError:
            return None
    return None


def format_number(value: Any) -> str:
    """Format prices and amounts for chat messages, trimming trailing zeros."""

    number = _as_float(value)
    if number is None:
        return "N/A" if value is None else str(value)
    decimals = next((d for floor, d in _PRICE_DECIMALS if abs(number) >= floor), 6)
    text = f"{number:,.{decimals}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_details(title: str, details: Mapping[str, Any]) -> str:
    """Render ``details`` as ``key: value`` lines under ``title``."""

    lines = [title]
    for key, value in details.items():
        if value is None:
            continue
        if isinstance(value, float):
            value = format_number(value)
        lines.append(f"{key}: {value}")
    return "\n".join(lines)


def send_telegram_message(
    text: str,
    *,
    token: Optional[str] = None,
    chat_id: Optional[str] = None,
    timeout: float = HTTP_TIMEOUT,
) -> bool:
    """Send ``text`` to the configured chat; return True on delivery."""

    bot_token = token or TELEGRAM_TOKEN
    target = chat_id or TELEGRAM_CHAT_ID
    if not bot_token or not target or not text:
        logger.warning("Telegram message not sent: token/chat id/text missing")
        return False
    url = f"{TELEGRAM_API}/bot{bot_token}/sendMessage"
    try:
        response = requests.post(
            url,
            json={"chat_id": target, "text": text},
            timeout=timeout,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("Telegram delivery failed: %s", exc)
        return False
    return True
