# autotrader/notifications.py
import asyncio
import json
import logging
from typing import Optional

import aiohttp
import asyncpg

from autotrader.config import Config
from autotrader.trading.models import AccountSettings, CycleOutcome

logger = logging.getLogger(__name__)

REPORT_TITLE = "Autonomous Trade Report"


def build_notification(account_id: str, outcome: CycleOutcome) -> dict:
    return {
        "user_id": account_id,
        "type": "SYSTEM",
        "title": REPORT_TITLE,
        "message": ", ".join(outcome.actions),
        "data": {
            "actions": outcome.actions,
            "ai_narrative": outcome.narrative,
            "trade_details": [t.as_dict() for t in outcome.executed],
        },
    }


class Notifier:
    """Stores the per-cycle report and pushes it to the account's device."""

    def __init__(self, pool: Optional[asyncpg.Pool], session: aiohttp.ClientSession, config: Config):
        self.pool = pool
        self.session = session
        self.config = config

    async def notify_cycle(self, settings: AccountSettings, outcome: CycleOutcome):
        record = build_notification(settings.account_id, outcome)
        if self.pool is not None:
            await self.pool.execute(
                "INSERT INTO notifications(user_id, type, title, message, data) VALUES($1, $2, $3, $4, $5)",
                record["user_id"],
                record["type"],
                record["title"],
                record["message"],
                json.dumps(record["data"], default=str),
            )
        else:
            logger.warning(f"No database pool, notification for {settings.account_id} not stored")

        if settings.push_token:
            await self.send_push(settings.push_token, REPORT_TITLE, "\n".join(outcome.actions))

    async def send_push(self, token: str, title: str, body: str) -> bool:
        payload = {"to": token, "title": title, "body": body, "sound": "default", "badge": 1}
        try:
            async with self.session.post(
                self.config.expo_push_url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=10),
            ) as resp:
                if resp.status >= 300:
                    logger.error(f"Push delivery failed ({resp.status}): {await resp.text()}")
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Push delivery error: {e}")
            return False
        logger.info("Push notification sent")
        return True
