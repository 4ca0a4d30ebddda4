# autotrader/trading/order_executor.py
import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, NamedTuple, Optional

import aiohttp

from autotrader.config import Config
from autotrader.errors import ExchangeRequestError, LeverageChangeFailed, NoPositionToClose
from autotrader.trading.binance_client import BinanceFuturesClient, RuleBook
from autotrader.trading.models import AccountContext, OrderIntent, OrderResult, Position, TradeProposal
from autotrader.trading.precision import clean_symbol, round_to_step
from autotrader.trading.risk_manager import validate_order
from autotrader.trading.signing import client_order_id

logger = logging.getLogger(__name__)


class Route(NamedTuple):
    side: str
    quantity: Decimal
    is_closing: bool


def opposite(side: str) -> str:
    return "SELL" if side == "BUY" else "BUY"


def route_action(proposal: TradeProposal, position_amt: Decimal) -> Route:
    """Decide side, raw quantity and whether the order reduces the current position.

    CLOSE takes the whole position off; BUY/SELL against an open position of
    the other direction is a reducing (closing) order. A flip is therefore a
    CLOSE followed by a separate opening proposal.
    """
    symbol = clean_symbol(proposal.symbol)
    if proposal.action == "CLOSE":
        if position_amt == 0:
            raise NoPositionToClose(symbol)
        side = "SELL" if position_amt > 0 else "BUY"
        logger.info(f"Explicit CLOSE for {symbol}: {position_amt} -> {side} {abs(position_amt)}")
        return Route(side, abs(position_amt), True)

    side = proposal.requested_side
    reducing = (side == "SELL" and position_amt > 0) or (side == "BUY" and position_amt < 0)
    if reducing:
        logger.info(f"{side} identified as CLOSING/REDUCING action for {symbol} (Current: {position_amt})")
    return Route(side, proposal.quantity, reducing)


class OrderExecutor:
    """Turns one trade proposal into exchange orders for a single account."""

    def __init__(self, client: BinanceFuturesClient, config: Config, rules: Optional[RuleBook] = None):
        self.client = client
        self.config = config
        self.rules = rules or RuleBook(client)

    async def execute_trade(
        self,
        proposal: TradeProposal,
        context: AccountContext,
        now: datetime,
        sequence: int = 0,
    ) -> OrderResult:
        symbol = clean_symbol(proposal.symbol)
        position = context.position_for(symbol)
        position_amt = position.position_amt if position else Decimal(0)

        if proposal.action != "CLOSE":
            try:
                await self._ensure_leverage(symbol, proposal.leverage or 1, position)
            except LeverageChangeFailed as e:
                logger.warning(f"Failed to set leverage, continuing at current leverage: {e}")

        route = route_action(proposal, position_amt)

        rule = await self.rules.rule_for(symbol)
        quantity = round_to_step(route.quantity, rule.step_size)
        logger.info(f"Order: {route.side} {quantity} {symbol} (Step: {rule.step_size})")

        price = await self.client.get_price(symbol)
        validate_order(
            self.config,
            symbol,
            Decimal(quantity),
            price,
            route.is_closing,
            context.free_balance(self.config.quote_asset),
        )

        intent = OrderIntent(
            symbol=symbol,
            side=route.side,
            quantity=quantity,
            is_closing=route.is_closing,
            client_order_id=client_order_id("CLOSE" if route.is_closing else "OPEN", now, sequence),
        )
        response = await self.client.place_market_order(intent)
        logger.info(f"Order Response for {symbol}: {response}")

        result = OrderResult(
            symbol=symbol,
            side=intent.side,
            quantity=intent.quantity,
            is_closing=intent.is_closing,
            client_order_id=intent.client_order_id,
            order_id=response.get("orderId"),
            raw=response,
        )

        wants_protection = (proposal.stop_loss or 0) > 0 or (proposal.take_profit or 0) > 0
        if not result.is_closing and result.success and wants_protection:
            result.protective_orders = await self._place_protective_orders(proposal, intent, rule.tick_size, now, sequence)
        return result

    async def _ensure_leverage(self, symbol: str, target: int, position: Optional[Position]):
        if position is not None and position.leverage == target:
            return
        logger.info(f"Setting Leverage for {symbol} to {target}x")
        try:
            data = await self.client.change_leverage(symbol, target)
        except (ExchangeRequestError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise LeverageChangeFailed(f"{symbol} -> {target}x: {e}") from e
        logger.info(f"Leverage set result: {data}")

    async def _place_protective_orders(
        self,
        proposal: TradeProposal,
        intent: OrderIntent,
        tick_size: Decimal,
        now: datetime,
        sequence: int,
    ) -> Dict[str, Any]:
        logger.info(f"Placing SL/TP orders for {intent.symbol}...")
        exit_side = opposite(intent.side)
        placed: Dict[str, Any] = {}
        legs = (
            ("stop_loss", "STOP_MARKET", "SL", proposal.stop_loss),
            ("take_profit", "TAKE_PROFIT_MARKET", "TP", proposal.take_profit),
        )
        for name, order_type, tag, price in legs:
            if not price or price <= 0:
                continue
            trigger = round_to_step(price, tick_size)
            try:
                resp = await self.client.place_conditional_order(
                    intent.symbol, exit_side, order_type, trigger, client_order_id(tag, now, sequence)
                )
                logger.info(f"{tag} Result: {resp}")
                placed[name] = {"triggerPrice": trigger, "response": resp}
            except (ExchangeRequestError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                # the position stays open without this leg
                logger.error(f"Failed to place {tag} order for {intent.symbol}: {e}")
                placed[name] = {"triggerPrice": trigger, "error": str(e)}
        return placed
