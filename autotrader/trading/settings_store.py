# autotrader/trading/settings_store.py
import logging
from datetime import datetime
from typing import Any, List, Mapping, Optional

import asyncpg

from autotrader.errors import ConfigurationError
from autotrader.trading.models import AccountSettings

logger = logging.getLogger(__name__)

_SELECT = """
    SELECT user_id, binance_api_key, binance_secret_key, is_autonomous_enabled,
           autonomous_schedule_type, autonomous_interval, autonomous_daily_time,
           last_autonomous_run, expo_push_token
    FROM user_settings
"""


def row_to_settings(row: Mapping[str, Any]) -> AccountSettings:
    return AccountSettings(
        account_id=str(row["user_id"]),
        encrypted_api_key=row["binance_api_key"],
        encrypted_api_secret=row["binance_secret_key"],
        automation_enabled=bool(row["is_autonomous_enabled"]),
        schedule_type=row["autonomous_schedule_type"] or "interval",
        interval_minutes=row["autonomous_interval"],
        daily_time=row["autonomous_daily_time"],
        last_run_at=row["last_autonomous_run"],
        push_token=row["expo_push_token"],
    )


class PostgresSettingsStore:
    """Account settings and trade records in Postgres (asyncpg pool)."""

    def __init__(self, pool: Optional[asyncpg.Pool]):
        self._pool = pool

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise ConfigurationError("Settings store unavailable: DB_URL not configured")
        return self._pool

    async def list_automated_accounts(self) -> List[AccountSettings]:
        rows = await self.pool.fetch(_SELECT + " WHERE is_autonomous_enabled = true")
        logger.info(f"Found {len(rows)} accounts with automation enabled")
        return [row_to_settings(r) for r in rows]

    async def get_account(self, account_id: str) -> Optional[AccountSettings]:
        row = await self.pool.fetchrow(_SELECT + " WHERE user_id = $1", account_id)
        return row_to_settings(row) if row else None

    async def claim_run(self, account_id: str, expected: Optional[datetime], now: datetime) -> bool:
        """Stamp ``last_autonomous_run`` only if nobody else has since ``expected`` was read."""
        claimed = await self.pool.fetchval(
            """
            UPDATE user_settings SET last_autonomous_run = $2
            WHERE user_id = $1 AND last_autonomous_run IS NOT DISTINCT FROM $3
            RETURNING user_id
            """,
            account_id,
            now,
            expected,
        )
        return claimed is not None

    async def stamp_run(self, account_id: str, now: datetime):
        await self.pool.execute(
            "UPDATE user_settings SET last_autonomous_run = $2 WHERE user_id = $1",
            account_id,
            now,
        )

    async def record_trade(self, account_id: str, order_id: Any, symbol: str):
        await self.pool.execute(
            "INSERT INTO autonomous_trades(order_id, user_id, symbol) VALUES($1, $2, $3)",
            str(order_id),
            account_id,
            symbol,
        )
