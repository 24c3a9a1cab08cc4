"""Per-minute scheduling decisions.

Scheduler.tick looks at the wall clock, walks every fund, and hands whatever
is due to the TaskSupervisor without waiting on it. FundActions is the work
itself: each method runs one action for one fund from start to finish.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import AsyncIterator, Callable

import structlog

from fundkeeper.engine.dispatch import TaskSupervisor
from fundkeeper.engine.executor import SessionExecutor
from fundkeeper.engine.reports import Reporter
from fundkeeper.engine.session import SessionRunner
from fundkeeper.engine.stoploss import StopLossGuard, apply_default_stop_losses
from fundkeeper.engine.sync import PortfolioSync
from fundkeeper.engine.triggers import check_special_sessions
from fundkeeper.shell.broker import BrokerAdapter, create_broker_adapter
from fundkeeper.shell.config import WEEKDAYS, Config
from fundkeeper.shell.contract import StopLossOutcome
from fundkeeper.shell.funds import FundConfig, SpecialSession, list_fund_names, load_fund_config
from fundkeeper.shell.paths import Workspace
from fundkeeper.shell.state import StateStore, run_io

log = structlog.get_logger()


class FundActions:
    """The dispatchable work items, one coroutine per action."""

    def __init__(
        self,
        config: Config,
        workspace: Workspace,
        executor: SessionExecutor,
        broker_factory: Callable[..., BrokerAdapter] = create_broker_adapter,
    ):
        self._config = config
        self._workspace = workspace
        self._broker_factory = broker_factory
        self.sessions = SessionRunner(config, workspace, executor)

    def _store(self, fund: FundConfig) -> StateStore:
        return StateStore(
            self._workspace.fund(fund.name), self._config.state.io_timeout_seconds, clock=self._config.now,
        )

    @asynccontextmanager
    async def _broker(self, fund: FundConfig) -> AsyncIterator[BrokerAdapter]:
        broker = self._broker_factory(self._config.broker, fund)
        try:
            yield broker
        finally:
            await broker.close()

    async def run_session(self, fund: FundConfig, kind: str) -> None:
        if fund.sessions[kind].parallel:
            await self.sessions.run_session_with_subtasks(fund, kind)
        else:
            await self.sessions.run_session(fund, kind)

    async def run_special(self, fund: FundConfig, special: SpecialSession) -> None:
        await self.sessions.run_session(
            fund,
            special.session_kind,
            focus=special.focus,
            max_duration_minutes=special.max_duration_minutes,
            model=special.model,
        )

    async def report(self, fund: FundConfig, period: str) -> None:
        reporter = Reporter(
            self._workspace.fund(fund.name), self._config.state.io_timeout_seconds, clock=self._config.now,
        )
        await reporter.generate(fund, period)

    async def sync(self, fund: FundConfig) -> None:
        store = self._store(fund)
        async with self._broker(fund) as broker:
            await PortfolioSync(fund.name, store, broker, clock=self._config.now).sync()
        # Positions opened at the broker arrive without a stop
        added = await apply_default_stop_losses(store, fund.risk.stop_loss_pct)
        if added:
            log.info("sync.default_stops", fund=fund.name, count=added)

    async def stoploss(self, fund: FundConfig) -> StopLossOutcome:
        async with self._broker(fund) as broker:
            guard = StopLossGuard(fund.name, self._store(fund), broker, clock=self._config.now)
            events = await guard.check()
            if not events:
                return StopLossOutcome()
            log.warning("stoploss.breached", fund=fund.name, symbols=[e.symbol for e in events])
            outcome = await guard.execute(events)
        if outcome.failed:
            log.error("stoploss.partial", fund=fund.name, failed=sorted(outcome.failed))
        return outcome


class Scheduler:
    def __init__(
        self,
        config: Config,
        workspace: Workspace,
        actions: FundActions,
        supervisor: TaskSupervisor,
    ):
        self._config = config
        self._workspace = workspace
        self._actions = actions
        self._supervisor = supervisor
        # (fund, action, kind, date, HH:MM) already dispatched today
        self._dispatched: set[tuple[str, str, str, str, str]] = set()
        self._ledger_day: date | None = None

    def _dispatch(self, now: datetime, fund: str, action: str, kind: str, coro_fn, *args) -> bool:
        key = (fund, action, kind, now.date().isoformat(), now.strftime("%H:%M"))
        if key in self._dispatched:
            log.debug("scheduler.duplicate", fund=fund, action=action, kind=kind)
            return False
        self._dispatched.add(key)
        self._supervisor.submit(coro_fn(*args), fund=fund, action=f"{action}:{kind}" if kind else action)
        return True

    def _roll_ledger(self, today: date) -> None:
        if self._ledger_day != today:
            self._dispatched.clear()
            self._ledger_day = today

    def in_market_hours(self, now: datetime) -> bool:
        hhmm = now.strftime("%H:%M")
        return self._config.daemon.market_open <= hhmm < self._config.daemon.market_close

    def _load_funds(self) -> list[FundConfig]:
        """Blocking; runs on a worker thread. Broken configs are logged and skipped."""
        funds = []
        for name in list_fund_names(self._workspace):
            try:
                funds.append(load_fund_config(self._workspace, name))
            except Exception as e:
                log.error("scheduler.fund_failed", fund=name, error=str(e), exc_info=True)
        return funds

    async def tick(self, now: datetime) -> list[tuple[str, str]]:
        """Dispatch everything due at `now`. Returns (fund, action) pairs submitted. Never raises."""
        dispatched: list[tuple[str, str]] = []
        try:
            self._roll_ledger(now.date())
            funds = await run_io(self._load_funds, timeout=self._config.state.io_timeout_seconds)
        except Exception as e:
            log.error("scheduler.tick_failed", error=str(e), exc_info=True)
            return dispatched

        log.debug("scheduler.tick", time=now.strftime("%Y-%m-%d %H:%M"), funds=len(funds))
        for fund in funds:
            try:
                dispatched += self._tick_fund(fund, now)
            except Exception as e:
                log.error("scheduler.fund_failed", fund=fund.name, error=str(e), exc_info=True)
        return dispatched

    def _tick_fund(self, fund: FundConfig, now: datetime) -> list[tuple[str, str]]:
        if not fund.is_active:
            return []
        if not fund.trades_on(WEEKDAYS[now.weekday()]):
            return []

        name = fund.name
        hhmm = now.strftime("%H:%M")
        day_code = WEEKDAYS[now.weekday()]
        out: list[tuple[str, str]] = []

        def fire(action: str, kind: str, coro_fn, *args) -> None:
            if self._dispatch(now, name, action, kind, coro_fn, *args):
                out.append((name, f"{action}:{kind}" if kind else action))

        for kind, session in fund.sessions.items():
            if session.enabled and session.time == hhmm:
                fire("session", kind, self._actions.run_session, fund, kind)

        for special in check_special_sessions(fund, now.date()):
            if special.time == hhmm:
                fire("session", special.session_kind, self._actions.run_special, fund, special)

        reports = self._config.reports
        if reports.daily and hhmm == reports.daily_time:
            fire("report", "daily", self._actions.report, fund, "daily")
        if reports.weekly and day_code == reports.weekly_day and hhmm == reports.weekly_time:
            fire("report", "weekly", self._actions.report, fund, "weekly")
        if reports.monthly and now.day == reports.monthly_day and hhmm == reports.monthly_time:
            fire("report", "monthly", self._actions.report, fund, "monthly")

        if fund.broker_provider == "manual":
            return out

        daemon = self._config.daemon
        if hhmm == daemon.sync_time:
            fire("sync", "", self._actions.sync, fund)

        if self.in_market_hours(now) and now.minute % daemon.stoploss_interval_minutes == 0:
            fire("stoploss", "", self._actions.stoploss, fund)

        return out
