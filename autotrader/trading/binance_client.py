# autotrader/trading/binance_client.py
import asyncio
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import aiohttp

from autotrader.config import Config
from autotrader.errors import ExchangeRequestError
from autotrader.trading.models import AccountCredential, InstrumentRule, OrderIntent
from autotrader.trading.signing import Params, epoch_ms, signed_query

logger = logging.getLogger(__name__)

ACCOUNT_PATH = "/fapi/v2/account"
LEVERAGE_PATH = "/fapi/v1/leverage"
ORDER_PATH = "/fapi/v1/order"
ALGO_ORDER_PATH = "/fapi/v1/algoOrder"
EXCHANGE_INFO_PATH = "/fapi/v1/exchangeInfo"
PRICE_PATH = "/fapi/v1/ticker/price"

DEFAULT_STEP_SIZE = Decimal("0.001")
DEFAULT_TICK_SIZE = Decimal("0.01")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BinanceFuturesClient:
    """Thin async wrapper over the USDⓈ-M futures REST endpoints the trader uses.

    One instance per account cycle: it holds the decrypted credential only for
    as long as the cycle runs.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        config: Config,
        credential: Optional[AccountCredential] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.config = config
        self.credential = credential
        self.clock = clock
        self._timeout = aiohttp.ClientTimeout(total=config.exchange_timeout)

    async def _request(self, method: str, path: str, query: str = "", headers: Optional[Dict[str, str]] = None) -> Any:
        url = f"{self.config.binance_base_url}{path}"
        if query:
            url = f"{url}?{query}"
        async with self.session.request(method, url, headers=headers, timeout=self._timeout) as resp:
            body = await resp.text()
            if resp.status < 200 or resp.status >= 300:
                logger.error(f"Binance {method} {path} failed ({resp.status}): {body}")
                raise ExchangeRequestError(resp.status, body, path)
            return json.loads(body) if body else {}

    async def _signed_request(self, method: str, path: str, params: Params) -> Any:
        if self.credential is None:
            raise RuntimeError("Signed request attempted without account credentials")
        ordered = list(params)
        ordered.append(("timestamp", epoch_ms(self.clock())))
        ordered.append(("recvWindow", self.config.recv_window_ms))
        query = signed_query(ordered, self.credential.api_secret)
        return await self._request(method, path, query, headers={"X-MBX-APIKEY": self.credential.api_key})

    async def get_account(self) -> Dict[str, Any]:
        return await self._signed_request("GET", ACCOUNT_PATH, [])

    async def change_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]:
        return await self._signed_request("POST", LEVERAGE_PATH, [("symbol", symbol), ("leverage", leverage)])

    async def place_market_order(self, intent: OrderIntent) -> Dict[str, Any]:
        return await self._signed_request(
            "POST",
            ORDER_PATH,
            [
                ("symbol", intent.symbol),
                ("side", intent.side),
                ("type", "MARKET"),
                ("quantity", intent.quantity),
                ("newClientOrderId", intent.client_order_id),
            ],
        )

    async def place_conditional_order(
        self, symbol: str, side: str, order_type: str, trigger_price: str, client_id: str
    ) -> Dict[str, Any]:
        return await self._signed_request(
            "POST",
            ALGO_ORDER_PATH,
            [
                ("symbol", symbol),
                ("side", side),
                ("algoType", "CONDITIONAL"),
                ("type", order_type),
                ("triggerPrice", trigger_price),
                ("closePosition", True),
                ("clientAlgoId", client_id),
            ],
        )

    async def get_exchange_info(self) -> Dict[str, Any]:
        return await self._request("GET", EXCHANGE_INFO_PATH)

    async def get_price(self, symbol: str) -> Decimal:
        data = await self._request("GET", PRICE_PATH, f"symbol={symbol}")
        return Decimal(str(data["price"]))


def parse_instrument_rules(exchange_info: Dict[str, Any]) -> Dict[str, InstrumentRule]:
    rules: Dict[str, InstrumentRule] = {}
    for item in exchange_info.get("symbols") or []:
        filters = {f.get("filterType"): f for f in item.get("filters") or []}
        step = filters.get("LOT_SIZE", {}).get("stepSize")
        tick = filters.get("PRICE_FILTER", {}).get("tickSize")
        rules[item["symbol"]] = InstrumentRule(
            symbol=item["symbol"],
            step_size=Decimal(str(step)) if step else DEFAULT_STEP_SIZE,
            tick_size=Decimal(str(tick)) if tick else DEFAULT_TICK_SIZE,
        )
    return rules


class RuleBook:
    """Step/tick sizes, loaded at most once per cycle."""

    def __init__(self, client: BinanceFuturesClient):
        self.client = client
        self._rules: Optional[Dict[str, InstrumentRule]] = None

    async def rule_for(self, symbol: str) -> InstrumentRule:
        if self._rules is None:
            try:
                self._rules = parse_instrument_rules(await self.client.get_exchange_info())
            except (aiohttp.ClientError, asyncio.TimeoutError, ExchangeRequestError, ValueError, KeyError) as e:
                logger.error(f"Failed to fetch exchangeInfo, using default precision: {e}")
                return InstrumentRule(symbol=symbol)
        rule = self._rules.get(symbol)
        if rule is None:
            logger.warning(f"No exchange rules for {symbol}, using default precision")
            return InstrumentRule(symbol=symbol)
        return rule
