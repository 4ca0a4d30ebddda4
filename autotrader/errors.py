# autotrader/errors.py
import json
from typing import Any, Optional


class AutotraderError(Exception):
    pass


class ConfigurationError(AutotraderError):
    """Deployment is missing something every account needs (e.g. the master key)."""


class CredentialsMissing(AutotraderError):
    def __init__(self, account_id: str):
        super().__init__(f"API keys not configured for account {account_id}")
        self.account_id = account_id


class ExchangeRequestError(AutotraderError):
    """Non-success HTTP response from the exchange. Keeps the raw body."""

    def __init__(self, status: int, body: str, path: str = ""):
        self.status = status
        self.body = body
        self.path = path
        self.code: Optional[int] = None
        self.msg: Optional[str] = None
        try:
            payload: Any = json.loads(body)
            if isinstance(payload, dict):
                self.code = payload.get("code")
                self.msg = payload.get("msg")
        except (TypeError, ValueError):
            pass
        super().__init__(f"Binance API error {status} on {path or 'request'}: {self.msg or body} (Code: {self.code})")


class TradeError(AutotraderError):
    """A single trade was rejected before submission. The cycle continues."""


class NoPositionToClose(TradeError):
    def __init__(self, symbol: str):
        super().__init__(f"No open {symbol} position to close")
        self.symbol = symbol


class InvalidQuantity(TradeError):
    pass


class BelowMinimumNotional(TradeError):
    def __init__(self, symbol: str, notional, minimum):
        super().__init__(f"{symbol} order notional {notional} is below the minimum {minimum}")
        self.symbol = symbol
        self.notional = notional
        self.minimum = minimum


class InsufficientBalance(TradeError):
    def __init__(self, symbol: str, notional, available):
        super().__init__(f"{symbol} order notional {notional} exceeds the usable balance {available}")
        self.symbol = symbol
        self.notional = notional
        self.available = available


class LeverageChangeFailed(AutotraderError):
    pass


class DecisionServiceError(AutotraderError):
    def __init__(self, account_id: str, status: int, body: str):
        super().__init__(f"Analyst failed for {account_id}: {status} {body}")
        self.account_id = account_id
        self.status = status
        self.body = body
