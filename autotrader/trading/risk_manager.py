# autotrader/trading/risk_manager.py
import logging
from decimal import Decimal

from autotrader.config import Config
from autotrader.errors import BelowMinimumNotional, InsufficientBalance, InvalidQuantity

logger = logging.getLogger(__name__)


def validate_order(
    config: Config,
    symbol: str,
    quantity: Decimal,
    price: Decimal,
    is_closing: bool,
    available_balance: Decimal,
) -> Decimal:
    """Pre-submission checks for one order. Returns the notional on success.

    Closing orders skip the balance check: they release margin instead of using it.
    """
    if quantity <= 0:
        raise InvalidQuantity(f"{symbol} quantity must be positive after rounding, got {quantity}")

    notional = quantity * price
    minimum = config.min_notional_for(symbol)
    if notional < minimum:
        raise BelowMinimumNotional(symbol, notional, minimum)

    if not is_closing:
        usable = available_balance * config.balance_safety_fraction
        if notional > usable:
            raise InsufficientBalance(symbol, notional, usable)

    logger.info(f"Risk check passed for {symbol}: notional={notional}, closing={is_closing}")
    return notional
