# autotrader/utils/telegram_notifications.py
import html
import logging
import re
from typing import Optional

from telegram import Bot
from telegram.error import TelegramError

from autotrader.trading.models import SweepSummary

logger = logging.getLogger(__name__)


async def send_telegram_message(bot_token: Optional[str], chat_id: Optional[str], message: str) -> bool:
    """Operator alert. Falls back to plain text if Telegram rejects the HTML."""
    if not bot_token or not chat_id:
        logger.debug("Telegram credentials not configured")
        return False

    bot = Bot(token=bot_token)
    try:
        await bot.send_message(chat_id=chat_id, text=html.escape(message), parse_mode="HTML")
        logger.info(f"Telegram message sent to {chat_id}")
        return True
    except TelegramError as e:
        logger.error(f"Failed to send telegram message: {e}")

    try:
        await bot.send_message(chat_id=chat_id, text=strip_html_tags(message))
        logger.info(f"Fallback plain message sent to {chat_id}")
        return True
    except TelegramError as e:
        logger.error(f"Failed to send fallback message: {e}")
        return False


def strip_html_tags(text: str) -> str:
    clean = re.sub("<[^<]+?>", "", text)
    return re.sub(r"\s+", " ", clean).strip()


def format_sweep_alert(summary: SweepSummary) -> Optional[str]:
    """Text for the operator when accounts failed in a sweep, None if all went fine."""
    failed = [r for r in summary.results if r.status in ("failed", "partial")]
    if not failed:
        return None
    lines = [f"⚠️ Sweep {summary.started_at:%Y-%m-%d %H:%M} UTC: {len(failed)} account(s) with errors"]
    for r in failed:
        lines.append(f"• {r.account_id}: {r.status} ({r.error or 'see logs'})")
    return "\n".join(lines)
