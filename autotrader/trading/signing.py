# autotrader/trading/signing.py
"""Query-string signing for authenticated exchange calls.

Binance verifies the signature against the query string exactly as sent, so
parameters are kept as an ordered list of pairs and serialised in that order.
Every signed call in the package goes through :func:`signed_query`.
"""
import hashlib
import hmac
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Sequence, Tuple

Params = List[Tuple[str, Any]]


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return f"{value:f}"
    return str(value)


def build_query(params: Sequence[Tuple[str, Any]]) -> str:
    return "&".join(f"{key}={_format_value(value)}" for key, value in params)


def sign(secret: str, query: str) -> str:
    return hmac.new(secret.encode(), query.encode(), hashlib.sha256).hexdigest()


def signed_query(params: Sequence[Tuple[str, Any]], secret: str) -> str:
    query = build_query(params)
    return f"{query}&signature={sign(secret, query)}"


def epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def client_order_id(tag: str, now: datetime, sequence: int = 0) -> str:
    """``AI_OPEN_1700000000000_3`` - intent tag, cycle timestamp, per-cycle counter."""
    return f"AI_{tag.upper()}_{epoch_ms(now)}_{sequence}"
