"""Session runner: prompt a fund session, run it, record the outcome."""

from __future__ import annotations

from datetime import date

import structlog

from fundkeeper.engine.executor import SessionExecutor
from fundkeeper.engine.subtasks import SubTaskOrchestrator, default_subtasks, save_analysis
from fundkeeper.shell.config import Config
from fundkeeper.shell.contract import SessionLog, SubTaskStatus
from fundkeeper.shell.funds import FundConfig
from fundkeeper.shell.ledger import open_ledger
from fundkeeper.shell.paths import Workspace
from fundkeeper.shell.state import StateStore

log = structlog.get_logger()


class SessionRunner:
    def __init__(self, config: Config, workspace: Workspace, executor: SessionExecutor):
        self._config = config
        self._workspace = workspace
        self._executor = executor
        self._orchestrator = SubTaskOrchestrator(executor)

    def _model(self, fund: FundConfig, override: str | None = None) -> str:
        return override or fund.model or self._config.executor.default_model

    def build_prompt(self, fund: FundConfig, kind: str, focus: str, day: date, history: str = "") -> str:
        lines = [
            f"You are running a {kind} session for fund '{fund.name}'.",
            "",
            f"Focus: {focus}",
            "",
            "Start by reading your state files, then proceed with analysis",
            "and actions as appropriate. Remember to:",
            "1. Update state files after any changes",
            f"2. Write analysis to analysis/{day.isoformat()}_{kind}.md",
            "3. Update state/objective_tracker.json",
            "4. Log all trades in state/trade_journal.sqlite",
        ]
        if history:
            lines += ["", history]
        return "\n".join(lines)

    def build_synthesis_prompt(self, fund: FundConfig, kind: str, focus: str, day: date, merged: str) -> str:
        return "\n".join([
            f"You are running a {kind} session for fund '{fund.name}'.",
            "",
            f"Focus: {focus}",
            "",
            "## Sub-Agent Analysis",
            "Your analysis team has completed their research. Here is their combined output:",
            "",
            merged[: self._config.subtasks.synthesis_context_chars],
            "",
            "## Your Task",
            "Review the sub-agent analysis above and make trading decisions.",
            "Start by reading your state files, then:",
            "1. Synthesize the macro, technical, sentiment, and risk analysis",
            "2. Decide on trades that align with all signals and fund constraints",
            "3. Update state files after any changes",
            f"4. Write your synthesis to analysis/{day.isoformat()}_{kind}.md",
            "5. Update state/objective_tracker.json",
            "6. Log all trades in state/trade_journal.sqlite",
        ])

    async def _record(self, fund: FundConfig, session: SessionLog, duration: float, model: str) -> None:
        paths = self._workspace.fund(fund.name)
        await StateStore(paths, self._config.state.io_timeout_seconds, clock=self._config.now).write_session_log(session)
        async with open_ledger(paths.journal) as ledger:
            await ledger.record_session(session, int(duration), model)

    async def run_session(
        self,
        fund: FundConfig,
        kind: str,
        focus: str | None = None,
        max_duration_minutes: int | None = None,
        model: str | None = None,
    ) -> SessionLog:
        definition = fund.sessions.get(kind)
        focus = focus or (definition.focus if definition else None)
        if not focus:
            raise ValueError(f"Session type '{kind}' not found in fund '{fund.name}'")
        minutes = max_duration_minutes or (definition.max_duration_minutes if definition else 15)
        model = self._model(fund, model or (definition.model if definition else None))

        paths = self._workspace.fund(fund.name)
        started = self._config.now()
        today = started.date()
        async with open_ledger(paths.journal) as ledger:
            history = await ledger.context_summary(fund.name)
        prompt = self.build_prompt(fund, kind, focus, today, history)

        log.info("session.start", fund=fund.name, kind=kind, model=model, timeout_min=minutes)
        try:
            result = await self._executor.run(paths.root, prompt, model, minutes * 60)
        except Exception as e:
            failed = SessionLog(
                fund=fund.name,
                session_type=kind,
                started_at=started.isoformat(),
                ended_at=self._config.now().isoformat(),
                summary=f"Session failed: {e}",
            )
            await self._record(fund, failed, (self._config.now() - started).total_seconds(), model)
            raise

        session = SessionLog(
            fund=fund.name,
            session_type=kind,
            started_at=started.isoformat(),
            ended_at=self._config.now().isoformat(),
            summary=result.summary(self._config.executor.summary_chars),
        )
        await self._record(fund, session, result.duration_seconds, model)
        log.info("session.done", fund=fund.name, kind=kind, duration=round(result.duration_seconds, 1))
        return session

    async def run_session_with_subtasks(self, fund: FundConfig, kind: str) -> SessionLog:
        """Fan out to the default analysts, then run one synthesis session over their report."""
        definition = fund.sessions.get(kind)
        if definition is None:
            raise ValueError(f"Session type '{kind}' not found in fund '{fund.name}'")

        paths = self._workspace.fund(fund.name)
        model = self._model(fund, definition.model)
        started = self._config.now()
        today = started.date()
        sub = self._config.subtasks

        results = await self._orchestrator.run_all(
            paths.root,
            default_subtasks(fund.name, sub.max_turns),
            model,
            sub.timeout_minutes * 60,
        )
        analysis_path, merged = await save_analysis(
            paths.analysis, results, kind, today,
            generated_at=self._config.now(),
            io_timeout=self._config.state.io_timeout_seconds,
        )
        ok = sum(1 for r in results if r.status == SubTaskStatus.SUCCESS)
        tally = f"Sub-agents: {ok}/{len(results)} OK."

        prompt = self.build_synthesis_prompt(fund, kind, definition.focus, today, merged)
        log.info("session.synthesis_start", fund=fund.name, kind=kind)
        try:
            result = await self._executor.run(paths.root, prompt, model, definition.max_duration_minutes * 60)
        except Exception as e:
            failed = SessionLog(
                fund=fund.name,
                session_type=f"{kind}_parallel",
                started_at=started.isoformat(),
                ended_at=self._config.now().isoformat(),
                analysis_file=str(analysis_path),
                summary=f"Session failed: {e}. {tally}",
            )
            await self._record(fund, failed, (self._config.now() - started).total_seconds(), model)
            raise

        session = SessionLog(
            fund=fund.name,
            session_type=f"{kind}_parallel",
            started_at=started.isoformat(),
            ended_at=self._config.now().isoformat(),
            analysis_file=str(analysis_path),
            summary=f"{tally} {result.output[:300]}",
        )
        await self._record(fund, session, (self._config.now() - started).total_seconds(), model)
        log.info("session.done", fund=fund.name, kind=session.session_type, subtasks_ok=ok)
        return session
