# autotrader/trading/context.py
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List

from autotrader.trading.binance_client import BinanceFuturesClient
from autotrader.trading.models import AccountContext, Balance, Position

logger = logging.getLogger(__name__)


def _dec(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value not in (None, "") else Decimal(0)
    except InvalidOperation:
        return Decimal(0)


def map_balances(assets: Iterable[Dict[str, Any]]) -> List[Balance]:
    balances = []
    for a in assets:
        wallet = _dec(a.get("walletBalance"))
        margin = _dec(a.get("marginBalance"))
        if wallet <= 0 and margin <= 0:
            continue
        # margin not tied up in positions or open orders
        available = a.get("availableBalance")
        free = _dec(available) if available not in (None, "") else wallet
        balances.append(Balance(asset=a["asset"], free=free, locked=_dec(a.get("maintMargin"))))
    return balances


def map_positions(raw_positions: Iterable[Dict[str, Any]]) -> List[Position]:
    positions = []
    for p in raw_positions:
        amount = _dec(p.get("positionAmt"))
        # flat entries are not positions
        if amount == 0:
            continue
        positions.append(Position(
            symbol=p["symbol"],
            position_amt=amount,
            entry_price=_dec(p.get("entryPrice")),
            mark_price=_dec(p.get("markPrice")),
            unrealized_profit=_dec(p.get("unrealizedProfit")),
            leverage=int(_dec(p.get("leverage")) or 1),
            position_side=p.get("positionSide") or "BOTH",
        ))
    return positions


async def fetch_context(client: BinanceFuturesClient) -> AccountContext:
    account = await client.get_account()
    context = AccountContext(
        balances=map_balances(account.get("assets") or []),
        positions=map_positions(account.get("positions") or []),
    )
    logger.debug(f"Account context: {len(context.balances)} balances, {len(context.positions)} positions")
    for pos in context.positions:
        logger.debug(f"  {pos.symbol}: {pos.position_amt} ({pos.direction}) x{pos.leverage}")
    return context
