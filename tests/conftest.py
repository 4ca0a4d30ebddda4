"""Shared fakes for the exchange, settings store, analyst and notifier."""

import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal
from itertools import count
from typing import Any, Dict, List, Optional

import pytest

from autotrader.config import Config
from autotrader.errors import DecisionServiceError, ExchangeRequestError
from autotrader.trading.credentials import encrypt
from autotrader.trading.models import AccountSettings, DecisionResult, OrderIntent, TradeProposal

MASTER_KEY = "test-master-key"
NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock():
    return NOW


@pytest.fixture
def config() -> Config:
    return Config(master_key=MASTER_KEY, analyst_url="http://analyst.local/analyze", analyst_token="svc")


def make_settings(account_id: str, **overrides) -> AccountSettings:
    values = dict(
        account_id=account_id,
        encrypted_api_key=encrypt(f"key-{account_id}", MASTER_KEY, bytes(12)),
        encrypted_api_secret=encrypt(f"secret-{account_id}", MASTER_KEY, bytes(range(12))),
        automation_enabled=True,
        schedule_type="interval",
        interval_minutes=60,
    )
    values.update(overrides)
    return AccountSettings(**values)


def raw_account(positions: Optional[List[dict]] = None, usdt: str = "1000") -> Dict[str, Any]:
    return {
        "assets": [
            {"asset": "USDT", "walletBalance": usdt, "marginBalance": usdt, "maintMargin": "0"},
            {"asset": "BNB", "walletBalance": "0", "marginBalance": "0", "maintMargin": "0"},
        ],
        "positions": positions or [],
    }


def raw_position(symbol: str, amount: str, leverage: str = "5") -> dict:
    return {
        "symbol": symbol,
        "positionAmt": amount,
        "entryPrice": "100",
        "markPrice": "101",
        "unrealizedProfit": "1",
        "leverage": leverage,
        "positionSide": "BOTH",
    }


class FakeExchange:
    """Stands in for BinanceFuturesClient; records every call."""

    def __init__(self, account: Optional[dict] = None, prices: Optional[Dict[str, str]] = None):
        self.account = account or raw_account()
        self.prices = {k: Decimal(v) for k, v in (prices or {"BTCUSDT": "50000", "DOGEUSDT": "0.1"}).items()}
        self.calls: List[tuple] = []
        self.orders: List[OrderIntent] = []
        self.conditional: List[tuple] = []
        self.account_error: Optional[Exception] = None
        self.leverage_error: Optional[Exception] = None
        self.order_errors: Dict[str, Exception] = {}
        self.fill_positions = False
        self._ids = count(1000)

    async def get_account(self):
        self.calls.append(("get_account",))
        if self.account_error:
            raise self.account_error
        return self.account

    async def change_leverage(self, symbol, leverage):
        self.calls.append(("change_leverage", symbol, leverage))
        if self.leverage_error:
            raise self.leverage_error
        return {"symbol": symbol, "leverage": leverage}

    async def place_market_order(self, intent):
        self.calls.append(("place_market_order", intent.symbol))
        if intent.symbol in self.order_errors:
            raise self.order_errors[intent.symbol]
        self.orders.append(intent)
        if self.fill_positions:
            self._apply_fill(intent)
        return {"orderId": next(self._ids), "status": "FILLED", "clientOrderId": intent.client_order_id}

    async def place_conditional_order(self, symbol, side, order_type, trigger_price, client_id):
        self.calls.append(("place_conditional_order", symbol))
        self.conditional.append((symbol, side, order_type, trigger_price, client_id))
        return {"algoId": next(self._ids)}

    async def get_exchange_info(self):
        self.calls.append(("get_exchange_info",))
        return {
            "symbols": [
                {
                    "symbol": "BTCUSDT",
                    "filters": [
                        {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                        {"filterType": "LOT_SIZE", "stepSize": "0.001"},
                    ],
                },
                {
                    "symbol": "DOGEUSDT",
                    "filters": [
                        {"filterType": "PRICE_FILTER", "tickSize": "0.00001"},
                        {"filterType": "LOT_SIZE", "stepSize": "1"},
                    ],
                },
            ]
        }

    async def get_price(self, symbol):
        self.calls.append(("get_price", symbol))
        return self.prices[symbol]

    def _apply_fill(self, intent):
        signed = Decimal(intent.quantity) * (1 if intent.side == "BUY" else -1)
        for p in self.account["positions"]:
            if p["symbol"] == intent.symbol:
                p["positionAmt"] = str(Decimal(p["positionAmt"]) + signed)
                return
        self.account["positions"].append(raw_position(intent.symbol, str(signed)))


class FakeStore:
    def __init__(self, accounts: List[AccountSettings]):
        self.accounts = {a.account_id: a for a in accounts}
        self.stamps: List[tuple] = []
        self.trades: List[tuple] = []

    async def list_automated_accounts(self):
        return [a.model_copy() for a in self.accounts.values() if a.automation_enabled]

    async def get_account(self, account_id):
        account = self.accounts.get(account_id)
        return account.model_copy() if account else None

    async def claim_run(self, account_id, expected, now):
        current = self.accounts[account_id]
        if current.last_run_at != expected:
            return False
        self.accounts[account_id] = current.model_copy(update={"last_run_at": now})
        self.stamps.append((account_id, now))
        return True

    async def stamp_run(self, account_id, now):
        self.accounts[account_id] = self.accounts[account_id].model_copy(update={"last_run_at": now})
        self.stamps.append((account_id, now))

    async def record_trade(self, account_id, order_id, symbol):
        self.trades.append((account_id, order_id, symbol))


class FakeAnalyst:
    def __init__(self, decisions: Optional[Dict[str, DecisionResult]] = None, delay: float = 0):
        self.decisions = decisions or {}
        self.delay = delay
        self.calls: List[str] = []
        self.fail_for: Dict[str, int] = {}

    async def analyze(self, account_id, context):
        self.calls.append(account_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if account_id in self.fail_for:
            raise DecisionServiceError(account_id, self.fail_for[account_id], "analyst down")
        return self.decisions.get(account_id, DecisionResult())


class FakeNotifier:
    def __init__(self):
        self.sent: List[tuple] = []

    async def notify_cycle(self, settings, outcome):
        self.sent.append((settings.account_id, outcome))


def decision(*proposals: dict, text: str = "narrative") -> DecisionResult:
    return DecisionResult(text=text, trade_recommendations=[TradeProposal.model_validate(p) for p in proposals])


def exchange_error(status: int = 400, code: int = -2019, msg: str = "Margin is insufficient.") -> ExchangeRequestError:
    return ExchangeRequestError(status, json.dumps({"code": code, "msg": msg}), "/fapi/v1/order")


class FakeResponse:
    def __init__(self, status: int, body: Any):
        self.status = status
        self._body = body if isinstance(body, str) else json.dumps(body)

    async def text(self):
        return self._body

    async def json(self, content_type=None):
        return json.loads(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Minimal aiohttp.ClientSession replacement returning queued responses."""

    def __init__(self, *responses: FakeResponse):
        self.responses = list(responses)
        self.requests: List[dict] = []

    def request(self, method, url, headers=None, timeout=None, json=None):
        self.requests.append({"method": method, "url": url, "headers": headers or {}, "timeout": timeout, "json": json})
        return self.responses.pop(0)

    def post(self, url, json=None, headers=None, timeout=None):
        return self.request("POST", url, headers=headers, timeout=timeout, json=json)
