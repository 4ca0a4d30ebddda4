# autotrader/trading/db_logger.py
import json
import logging
from datetime import datetime, timezone
from typing import Optional

import asyncpg

logger = logging.getLogger(__name__)


async def log_event(
    pool: Optional[asyncpg.Pool],
    event_type: str,
    account_id: Optional[str] = None,
    symbol: Optional[str] = None,
    details: Optional[dict] = None,
    message: str = "",
):
    """Writes an audit row to event_logs. Never raises: auditing must not break trading."""
    if pool is None:
        logger.debug(f"No database pool, skipping event {event_type}")
        return

    try:
        await pool.execute(
            """
            INSERT INTO event_logs(event_time, event_type, user_id, symbol, details, message)
            VALUES($1, $2, $3, $4, $5, $6)
            """,
            datetime.now(timezone.utc),
            event_type,
            account_id,
            symbol,
            json.dumps(details or {}, default=str),
            message,
        )
        logger.debug(f"Logged event: {event_type} - {message}")
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        logger.error(f"Failed to log event to database: {e}")
