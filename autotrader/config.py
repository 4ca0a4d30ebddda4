# autotrader/config.py
import os
from decimal import Decimal
from typing import Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from autotrader.errors import ConfigurationError

DEFAULT_QUERY = (
    "Evaluate my current positions and optimise the portfolio by executing "
    "the best 3 new opportunities you see profit in."
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config(BaseModel):
    """Process-wide settings, built once at startup and passed around explicitly."""

    model_config = ConfigDict(frozen=True)

    master_key: Optional[str] = None
    database_url: Optional[str] = None

    analyst_url: Optional[str] = None
    analyst_token: Optional[str] = None
    user_query: str = DEFAULT_QUERY

    binance_base_url: str = "https://testnet.binancefuture.com"
    recv_window_ms: int = Field(default=5000, gt=0)
    exchange_timeout: float = Field(default=10.0, gt=0)

    expo_push_url: str = "https://exp.host/--/api/v2/push/send"
    bot_token: Optional[str] = None
    tg_chat_id: Optional[str] = None
    trigger_secret: str = ""

    host: str = "0.0.0.0"
    port: int = 4000
    log_level: str = "INFO"

    # order notional floors, in quote currency
    min_notional: Decimal = Decimal("20")
    min_notional_major: Decimal = Decimal("5")
    major_symbols: Tuple[str, ...] = ("BTCUSDT", "ETHUSDT", "BNBUSDT", "SOLUSDT", "XRPUSDT")
    balance_safety_fraction: Decimal = Field(default=Decimal("0.9"), gt=0, le=1)
    quote_asset: str = "USDT"
    refetch_positions_per_trade: bool = True

    @classmethod
    def from_env(cls) -> "Config":
        load_dotenv()
        supabase_url = os.getenv("SUPABASE_URL")
        analyst_url = os.getenv("ANALYST_URL") or os.getenv("RENDER_ANALYST_URL")
        if not analyst_url and supabase_url:
            analyst_url = f"{supabase_url}/functions/v1/market-analyst"

        values = {
            "master_key": os.getenv("APP_SECRET_KEY") or None,
            "database_url": os.getenv("DB_URL") or None,
            "analyst_url": analyst_url,
            "analyst_token": os.getenv("ANALYST_TOKEN") or os.getenv("SUPABASE_SERVICE_ROLE_KEY"),
            "bot_token": os.getenv("BOT_TOKEN") or None,
            "tg_chat_id": os.getenv("TG_CHAT_ID") or None,
            "trigger_secret": os.getenv("TRIGGER_SECRET", ""),
            "host": os.getenv("WEBHOOK_HOST", "0.0.0.0"),
            "port": int(os.getenv("WEBHOOK_PORT") or os.getenv("PORT") or 4000),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "refetch_positions_per_trade": _env_bool("REFETCH_POSITIONS_PER_TRADE", True),
        }
        optional = {
            "user_query": "AUTONOMOUS_QUERY",
            "binance_base_url": "BINANCE_BASE_URL",
            "recv_window_ms": "RECV_WINDOW_MS",
            "exchange_timeout": "EXCHANGE_TIMEOUT",
            "expo_push_url": "EXPO_PUSH_URL",
            "min_notional": "MIN_NOTIONAL",
            "min_notional_major": "MIN_NOTIONAL_MAJOR",
            "balance_safety_fraction": "BALANCE_SAFETY_FRACTION",
            "quote_asset": "QUOTE_ASSET",
        }
        for field, var in optional.items():
            raw = os.getenv(var)
            if raw:
                values[field] = raw
        return cls(**values)

    def require_master_key(self) -> str:
        if not self.master_key:
            raise ConfigurationError("Server config error: encryption key missing")
        return self.master_key

    def min_notional_for(self, symbol: str) -> Decimal:
        if symbol in self.major_symbols:
            return self.min_notional_major
        return self.min_notional
