# autotrader/orchestrator.py
"""Per-account trade cycles and the sweep that runs them side by side.

A sweep starts one task per eligible account. Each cycle stamps the account's
last run time before any network call, so an overlapping sweep (cron tick
plus manual trigger, or two manual triggers) sees the stamp and backs off.
Failures stay inside the account's task and end up in the sweep summary.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Set

import aiohttp
import asyncpg

from autotrader.config import Config
from autotrader.errors import ConfigurationError, ExchangeRequestError, TradeError
from autotrader.notifications import Notifier
from autotrader.trading.analyst_client import AnalystClient
from autotrader.trading.binance_client import BinanceFuturesClient, utc_now
from autotrader.trading.context import fetch_context
from autotrader.trading.credentials import load_credential
from autotrader.trading.db_logger import log_event
from autotrader.trading.models import (
    AccountCredential,
    AccountCycleResult,
    AccountSettings,
    CycleOutcome,
    ExecutedTrade,
    OrderResult,
    SweepSummary,
    TradeProposal,
)
from autotrader.trading.order_executor import OrderExecutor
from autotrader.trading.schedule import is_due
from autotrader.trading.settings_store import PostgresSettingsStore
from autotrader.utils.telegram_notifications import format_sweep_alert, send_telegram_message

logger = logging.getLogger(__name__)

ClientFactory = Callable[[AccountCredential], BinanceFuturesClient]


class CycleOrchestrator:
    def __init__(
        self,
        config: Config,
        store: PostgresSettingsStore,
        analyst: AnalystClient,
        notifier: Notifier,
        client_factory: ClientFactory,
        pool: Optional[asyncpg.Pool] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.store = store
        self.analyst = analyst
        self.notifier = notifier
        self.client_factory = client_factory
        self.pool = pool
        self.clock = clock
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def create(
        cls,
        config: Config,
        session: aiohttp.ClientSession,
        pool: Optional[asyncpg.Pool],
        clock: Callable[[], datetime] = utc_now,
    ) -> "CycleOrchestrator":
        return cls(
            config=config,
            store=PostgresSettingsStore(pool),
            analyst=AnalystClient(session, config),
            notifier=Notifier(pool, session, config),
            client_factory=lambda credential: BinanceFuturesClient(session, config, credential, clock),
            pool=pool,
            clock=clock,
        )

    # ---------- sweep ----------

    async def run_sweep(self, account_id: Optional[str] = None, force: bool = False) -> SweepSummary:
        """Run every eligible account once. Only ConfigurationError escapes."""
        self.config.require_master_key()
        now = self.clock()
        summary = SweepSummary(started_at=now)

        if account_id:
            settings = await self.store.get_account(account_id)
            if settings is None:
                logger.warning(f"Trigger for unknown account {account_id}, nothing to do")
                return summary
            accounts: List[AccountSettings] = [settings]
        else:
            force = False
            accounts = await self.store.list_automated_accounts()

        logger.info(f"Sweep started for {len(accounts)} account(s), force={force}")
        outcomes = await asyncio.gather(
            *(self._guarded_cycle(s, force, now) for s in accounts),
            return_exceptions=True,
        )
        for settings, outcome in zip(accounts, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Cycle task for {settings.account_id} crashed: {outcome!r}")
                outcome = AccountCycleResult(settings.account_id, "failed", error=repr(outcome))
            summary.results.append(outcome)

        logger.info(
            f"Sweep finished: {summary.count('success')} success, {summary.count('partial')} partial, "
            f"{summary.count('failed')} failed, {summary.count('idle')} idle, {summary.count('skipped')} skipped"
        )
        return summary

    async def sweep_and_report(self, account_id: Optional[str] = None, force: bool = False) -> Optional[SweepSummary]:
        """Background entry point: runs a sweep and alerts the operator about failures."""
        try:
            summary = await self.run_sweep(account_id, force)
        except ConfigurationError as e:
            logger.error(f"Sweep aborted: {e}")
            await send_telegram_message(self.config.bot_token, self.config.tg_chat_id, f"❌ Sweep aborted: {e}")
            return None
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Sweep aborted, settings store unavailable: {e}", exc_info=True)
            await send_telegram_message(
                self.config.bot_token, self.config.tg_chat_id, f"❌ Sweep aborted, settings store unavailable: {e}"
            )
            return None

        alert = format_sweep_alert(summary)
        if alert:
            await send_telegram_message(self.config.bot_token, self.config.tg_chat_id, alert)
        return summary

    def dispatch(self, account_id: Optional[str] = None, force: bool = False) -> asyncio.Task:
        """Start a sweep without waiting for it."""
        task = asyncio.create_task(self.sweep_and_report(account_id, force))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def tick(self):
        """Timer entry point. Returns at once; overlapping sweeps are sorted out by the run claim."""
        self.dispatch()

    async def wait_background(self, timeout: Optional[float] = None):
        """Wait for dispatched sweeps, cancelling whatever is still running after ``timeout``."""
        if not self._background:
            return
        _, pending = await asyncio.wait(set(self._background), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} unfinished sweep(s)")
            await asyncio.gather(*pending, return_exceptions=True)

    # ---------- single account ----------

    async def _guarded_cycle(self, settings: AccountSettings, force: bool, now: datetime) -> AccountCycleResult:
        try:
            return await self.run_account_cycle(settings, force, now)
        except Exception as e:
            logger.error(f"Cycle for account {settings.account_id} aborted: {e}", exc_info=True)
            await log_event(
                self.pool,
                "error",
                account_id=settings.account_id,
                details={"exception": str(e), "type": type(e).__name__},
                message=f"Cycle aborted: {e}",
            )
            return AccountCycleResult(settings.account_id, "failed", error=str(e))

    async def _claim(self, settings: AccountSettings, force: bool, now: datetime) -> bool:
        if force:
            await self.store.stamp_run(settings.account_id, now)
            return True
        if not is_due(settings.schedule, now):
            return False
        return await self.store.claim_run(settings.account_id, settings.last_run_at, now)

    async def run_account_cycle(self, settings: AccountSettings, force: bool, now: datetime) -> AccountCycleResult:
        account_id = settings.account_id
        if not await self._claim(settings, force, now):
            logger.debug(f"Account {account_id} not due or already claimed")
            return AccountCycleResult(account_id, "skipped")

        logger.info(f">>> STARTING TRADE CYCLE for account {account_id}")
        await log_event(self.pool, "cycle_start", account_id=account_id, details={"forced": force}, message="Cycle started")

        credential = load_credential(settings, self.config.require_master_key())
        client = self.client_factory(credential)
        context = await fetch_context(client)
        decision = await self.analyst.analyze(account_id, context)

        outcome = CycleOutcome(narrative=decision.text)
        executor = OrderExecutor(client, self.config)
        for sequence, proposal in enumerate(decision.trade_recommendations):
            logger.info(f"[{account_id}] Attempting: {proposal.action} {proposal.symbol}")
            try:
                if sequence > 0 and self.config.refetch_positions_per_trade:
                    context = await fetch_context(client)
                result = await executor.execute_trade(proposal, context, self.clock(), sequence)
            except TradeError as e:
                logger.warning(f"[{account_id}] Skipped {proposal.symbol}: {e}")
                outcome.failures.append(f"{proposal.symbol}: {e}")
                continue
            except ExchangeRequestError as e:
                logger.error(f"[{account_id}] Exchange rejected {proposal.symbol}: {e.body}")
                outcome.failures.append(f"{proposal.symbol}: {e}")
                continue
            except Exception as e:
                logger.error(f"[{account_id}] Error executing {proposal.symbol}: {e}", exc_info=True)
                outcome.failures.append(f"{proposal.symbol}: {e}")
                continue

            if result.success:
                await self._record(account_id, proposal, result, outcome)
            else:
                logger.warning(f"[{account_id}] No orderId returned for {proposal.symbol}: {result.raw}")
                outcome.failures.append(f"{proposal.symbol}: no orderId")

        if outcome.actions:
            try:
                await self.notifier.notify_cycle(settings, outcome)
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
                logger.error(f"[{account_id}] Failed to store notification: {e}")
        else:
            logger.info(f"No trade actions took place for account {account_id}")

        await log_event(
            self.pool,
            "cycle_complete",
            account_id=account_id,
            details={"actions": outcome.actions, "failures": outcome.failures},
            message=f"Cycle completed: {len(outcome.executed)} order(s)",
        )
        return AccountCycleResult(
            account_id,
            _cycle_status(outcome),
            orders=len(outcome.executed),
            error="; ".join(outcome.failures) or None,
        )

    async def _record(self, account_id: str, proposal: TradeProposal, result: OrderResult, outcome: CycleOutcome):
        logger.info(f"[{account_id}] SUCCESS: {result.symbol} OrderId: {result.order_id}")
        try:
            await self.store.record_trade(account_id, result.order_id, result.symbol)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"[{account_id}] Failed to record order {result.order_id}: {e}")

        outcome.add(
            ExecutedTrade(
                symbol=result.symbol,
                action="CLOSE" if result.is_closing else proposal.action,
                order_id=result.order_id,
                quantity=result.quantity,
                reason=proposal.reason,
                leverage=proposal.leverage,
                stop_loss=str(proposal.stop_loss) if proposal.stop_loss else None,
                take_profit=str(proposal.take_profit) if proposal.take_profit else None,
            ),
            result.is_closing,
        )
        await log_event(
            self.pool,
            "trade",
            account_id=account_id,
            symbol=result.symbol,
            details={"orderId": result.order_id, "side": result.side, "quantity": result.quantity},
            message=f"{result.side} {result.symbol}: {result.quantity}",
        )


def _cycle_status(outcome: CycleOutcome) -> str:
    if outcome.failures and outcome.executed:
        return "partial"
    if outcome.failures:
        return "failed"
    if outcome.executed:
        return "success"
    return "idle"
