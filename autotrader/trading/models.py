# autotrader/trading/models.py
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AccountCredential(BaseModel):
    model_config = ConfigDict(frozen=True)

    api_key: str
    api_secret: str

    def __repr__(self) -> str:
        return "AccountCredential(api_key='***', api_secret='***')"

    __str__ = __repr__


class Balance(BaseModel):
    asset: str
    free: Decimal
    locked: Decimal = Decimal(0)


class Position(BaseModel):
    symbol: str
    position_amt: Decimal
    entry_price: Decimal = Decimal(0)
    mark_price: Decimal = Decimal(0)
    unrealized_profit: Decimal = Decimal(0)
    leverage: int = 1
    position_side: str = "BOTH"

    @property
    def direction(self) -> str:
        return "long" if self.position_amt > 0 else "short"

    def as_payload(self) -> Dict[str, Any]:
        """Shape the analyst expects (exchange field names)."""
        return {
            "symbol": self.symbol,
            "positionAmt": str(self.position_amt),
            "entryPrice": str(self.entry_price),
            "markPrice": str(self.mark_price),
            "unrealizedProfit": str(self.unrealized_profit),
            "leverage": str(self.leverage),
            "positionSide": self.position_side,
        }


class AccountContext(BaseModel):
    balances: List[Balance] = []
    positions: List[Position] = []

    def position_for(self, symbol: str) -> Optional[Position]:
        return next((p for p in self.positions if p.symbol == symbol), None)

    def free_balance(self, asset: str) -> Decimal:
        return sum((b.free for b in self.balances if b.asset == asset), Decimal(0))


class TradeProposal(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    symbol: str
    action: str
    quantity: Decimal = Decimal(0)
    leverage: Optional[int] = None
    stop_loss: Optional[Decimal] = Field(default=None, alias="stopLoss")
    take_profit: Optional[Decimal] = Field(default=None, alias="takeProfit")
    reason: str = ""

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> str:
        action = str(value or "").strip().upper()
        if action.startswith("BUY"):
            return "BUY"
        if action.startswith("SELL"):
            return "SELL"
        if action == "CLOSE":
            return "CLOSE"
        raise ValueError(f"Unsupported action: {value!r}")

    @field_validator("quantity", mode="before")
    @classmethod
    def _default_quantity(cls, value: Any) -> Any:
        return 0 if value in (None, "") else value

    @field_validator("leverage", "stop_loss", "take_profit", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        return None if value in ("", 0, "0") else value

    @property
    def requested_side(self) -> str:
        return "BUY" if self.action == "BUY" else "SELL"


class DecisionResult(BaseModel):
    text: str = ""
    trade_recommendations: List[TradeProposal] = []


class OrderIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    side: str
    quantity: str
    is_closing: bool
    client_order_id: str


class InstrumentRule(BaseModel):
    symbol: str
    step_size: Decimal = Decimal("0.001")
    tick_size: Decimal = Decimal("0.01")


class ScheduleState(BaseModel):
    schedule_type: str = "interval"
    interval_minutes: int = 60
    daily_time: str = "09:00"
    last_run_at: Optional[datetime] = None


class AccountSettings(BaseModel):
    """One row of the settings store."""

    account_id: str
    encrypted_api_key: Optional[str] = None
    encrypted_api_secret: Optional[str] = None
    automation_enabled: bool = False
    schedule_type: str = "interval"
    interval_minutes: Optional[int] = None
    daily_time: Optional[str] = None
    last_run_at: Optional[datetime] = None
    push_token: Optional[str] = None

    @property
    def schedule(self) -> ScheduleState:
        return ScheduleState(
            schedule_type=(self.schedule_type or "interval").lower(),
            interval_minutes=self.interval_minutes or 60,
            daily_time=self.daily_time or "09:00",
            last_run_at=self.last_run_at,
        )


@dataclass
class OrderResult:
    symbol: str
    side: str
    quantity: str
    is_closing: bool
    client_order_id: str
    order_id: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    protective_orders: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.order_id is not None


@dataclass
class ExecutedTrade:
    symbol: str
    action: str
    order_id: int
    quantity: str
    reason: str = ""
    leverage: Optional[int] = None
    stop_loss: Optional[str] = None
    take_profit: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "reason": self.reason,
            "action": self.action,
            "orderId": self.order_id,
            "leverage": self.leverage,
            "stopLoss": self.stop_loss,
            "takeProfit": self.take_profit,
            "quantity": self.quantity,
        }


@dataclass
class CycleOutcome:
    narrative: str = ""
    executed: List[ExecutedTrade] = field(default_factory=list)
    actions: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    def add(self, trade: ExecutedTrade, is_closing: bool):
        self.executed.append(trade)
        self.actions.append(f"{trade.symbol} {'closed' if is_closing else 'opened'}")


@dataclass
class AccountCycleResult:
    account_id: str
    status: str  # skipped / idle / success / partial / failed
    orders: int = 0
    error: Optional[str] = None


@dataclass
class SweepSummary:
    started_at: datetime
    results: List[AccountCycleResult] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    def by_account(self) -> Dict[str, AccountCycleResult]:
        return {r.account_id: r for r in self.results}
