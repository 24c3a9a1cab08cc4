"""Parallel analysis sub-tasks.

A session can fan out into several independent analysis runs (macro,
technical, sentiment, risk, or caller-defined), each its own executor
invocation with its own timeout. All of them settle before the results are
merged into one markdown report; one slow or failing task never cancels the
others.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path

import structlog

from fundkeeper.engine.executor import SessionExecutor, SessionTimeoutError
from fundkeeper.shell.contract import SubTaskKind, SubTaskResult, SubTaskStatus
from fundkeeper.shell.state import run_io, write_text_atomic

log = structlog.get_logger()

SIGNAL_PATTERN = re.compile(
    r"(?:MACRO_SIGNAL|TECHNICAL_SIGNAL|SENTIMENT_SIGNAL|RISK_LEVEL):\s*(\w+)",
    re.IGNORECASE,
)

_STATUS_LABEL = {
    SubTaskStatus.SUCCESS: "OK",
    SubTaskStatus.TIMEOUT: "TIMEOUT",
    SubTaskStatus.ERROR: "ERR",
}


@dataclass(frozen=True)
class SubTaskSpec:
    kind: SubTaskKind
    name: str
    prompt: str
    max_turns: int = 15
    model: str | None = None


def default_subtasks(fund_name: str, max_turns: int = 15) -> list[SubTaskSpec]:
    return [
        SubTaskSpec(
            kind=SubTaskKind.MACRO,
            name="Macro Analyst",
            max_turns=max_turns,
            prompt="\n".join([
                f"You are the macro analysis sub-agent for fund '{fund_name}'.",
                "",
                "Your job is to analyze macroeconomic conditions relevant to this fund's holdings and universe.",
                "Focus on:",
                "- Interest rates, Fed policy, and yield curve analysis",
                "- GDP, employment, inflation data and trends",
                "- Sector rotation and market regime (risk-on vs risk-off)",
                "- Geopolitical events affecting markets",
                "- Currency movements and correlations",
                "",
                "Output a concise analysis in markdown format with clear conclusions and actionable insights.",
                "End with a MACRO_SIGNAL: bullish | neutral | bearish",
            ]),
        ),
        SubTaskSpec(
            kind=SubTaskKind.TECHNICAL,
            name="Technical Analyst",
            max_turns=max_turns,
            prompt="\n".join([
                f"You are the technical analysis sub-agent for fund '{fund_name}'.",
                "",
                "Your job is to perform technical analysis on the fund's current holdings and watchlist.",
                "Focus on:",
                "- Price action and trend analysis (moving averages, support/resistance)",
                "- Volume patterns and momentum indicators",
                "- Chart patterns and breakout/breakdown levels",
                "- Relative strength vs. benchmarks (SPY)",
                "- Key price levels for entry/exit decisions",
                "",
                "Output a concise analysis in markdown format for each ticker.",
                "End with a TECHNICAL_SIGNAL: bullish | neutral | bearish for each symbol.",
            ]),
        ),
        SubTaskSpec(
            kind=SubTaskKind.SENTIMENT,
            name="Sentiment Analyst",
            max_turns=max_turns,
            prompt="\n".join([
                f"You are the sentiment analysis sub-agent for fund '{fund_name}'.",
                "",
                "Your job is to analyze market sentiment and news relevant to this fund.",
                "Focus on:",
                "- Recent news headlines affecting holdings and watchlist",
                "- Market breadth and volatility (VIX, put/call ratios)",
                "- Earnings surprises and guidance changes",
                "- Analyst upgrades/downgrades",
                "",
                "Output a concise sentiment report in markdown format.",
                "End with a SENTIMENT_SIGNAL: bullish | neutral | bearish",
            ]),
        ),
        SubTaskSpec(
            kind=SubTaskKind.RISK,
            name="Risk Manager",
            max_turns=max_turns,
            prompt="\n".join([
                f"You are the risk management sub-agent for fund '{fund_name}'.",
                "",
                "Your job is to assess portfolio risk and ensure compliance with fund constraints.",
                "Focus on:",
                "- Current portfolio exposure and concentration risk",
                "- Stop-loss levels and position sizing validation",
                "- Drawdown analysis vs. fund limits",
                "- Correlation between holdings and liquidity risk",
                "",
                "Read state/portfolio.json and state/objective_tracker.json.",
                "Output a risk report in markdown format.",
                "End with RISK_LEVEL: low | moderate | elevated | high",
            ]),
        ),
    ]


def custom_subtask(name: str, prompt: str, max_turns: int = 15, model: str | None = None) -> SubTaskSpec:
    return SubTaskSpec(kind=SubTaskKind.CUSTOM, name=name, prompt=prompt, max_turns=max_turns, model=model)


class SubTaskOrchestrator:
    def __init__(self, executor: SessionExecutor):
        self._executor = executor

    async def _run_one(
        self, project_dir: Path, task: SubTaskSpec, model: str, timeout: float,
    ) -> SubTaskResult:
        started = datetime.now()
        try:
            result = await asyncio.wait_for(
                self._executor.run(project_dir, task.prompt, task.model or model, timeout, task.max_turns),
                timeout=timeout,
            )
        except (SessionTimeoutError, asyncio.TimeoutError):
            log.warning("subtask.timeout", task=task.name, timeout=timeout)
            return SubTaskResult(
                kind=task.kind, name=task.name, started_at=started, ended_at=datetime.now(),
                status=SubTaskStatus.TIMEOUT, error=f"Timed out after {timeout:.0f}s",
            )
        except Exception as e:
            log.warning("subtask.failed", task=task.name, error=str(e))
            return SubTaskResult(
                kind=task.kind, name=task.name, started_at=started, ended_at=datetime.now(),
                status=SubTaskStatus.ERROR, error=str(e) or type(e).__name__,
            )
        return SubTaskResult(
            kind=task.kind, name=task.name, started_at=started, ended_at=datetime.now(),
            status=SubTaskStatus.SUCCESS, output=result.output,
        )

    async def run_all(
        self, project_dir: Path, tasks: list[SubTaskSpec], model: str, timeout: float,
    ) -> list[SubTaskResult]:
        """Run every task concurrently; one result per task, in task order."""
        if not tasks:
            return []
        log.info("subtask.launch", project=project_dir.name, count=len(tasks), timeout=timeout)
        settled = await asyncio.gather(
            *(self._run_one(project_dir, t, model, timeout) for t in tasks),
            return_exceptions=True,
        )

        results: list[SubTaskResult] = []
        for task, outcome in zip(tasks, settled):
            if isinstance(outcome, BaseException):
                now = datetime.now()
                results.append(SubTaskResult(
                    kind=task.kind, name=task.name, started_at=now, ended_at=now,
                    status=SubTaskStatus.ERROR, error=str(outcome) or type(outcome).__name__,
                ))
            else:
                results.append(outcome)

        ok = sum(1 for r in results if r.status == SubTaskStatus.SUCCESS)
        log.info("subtask.settled", project=project_dir.name, ok=ok, total=len(results))
        return results


def extract_signals(output: str) -> list[str]:
    return [m.group(0) for m in SIGNAL_PATTERN.finditer(output)]


def merge_results(results: list[SubTaskResult], generated_at: datetime | None = None) -> str:
    lines = [
        "# Combined Sub-Agent Analysis",
        "",
        f"Generated: {(generated_at or datetime.now()).isoformat()}",
        f"Agents: {len(results)}",
        "",
        "## Agent Summary\n",
        "| Agent | Status | Duration |",
        "|-------|--------|----------|",
    ]
    for r in results:
        lines.append(f"| {r.name} | {_STATUS_LABEL[r.status]} | {r.duration_seconds:.0f}s |")
    lines.append("")

    for r in results:
        lines.append("---")
        lines.append(f"## {r.name} ({r.kind.value})")
        lines.append(f"Status: {r.status.value}")
        lines.append("")
        if r.status == SubTaskStatus.SUCCESS:
            lines.append(r.output)
        else:
            lines.append(f"> **Error:** {r.error or 'Unknown error'}")
        lines.append("")

    lines.append("---")
    lines.append("## Consolidated Signals\n")
    for r in results:
        if r.status != SubTaskStatus.SUCCESS:
            continue
        for sig in extract_signals(r.output):
            lines.append(f"- {sig}")

    return "\n".join(lines)


async def save_analysis(
    analysis_dir: Path,
    results: list[SubTaskResult],
    session_kind: str,
    day: date,
    generated_at: datetime | None = None,
    io_timeout: float = 10.0,
) -> tuple[Path, str]:
    """Write the merged report to analysis/<date>_<kind>_subagents.md."""
    merged = merge_results(results, generated_at)
    path = analysis_dir / f"{day.isoformat()}_{session_kind}_subagents.md"
    await run_io(write_text_atomic, path, merged, timeout=io_timeout)
    log.info("subtask.saved", path=str(path))
    return path, merged


async def load_analysis(analysis_dir: Path, filename: str, io_timeout: float = 10.0) -> str:
    return await run_io((analysis_dir / filename).read_text, "utf-8", timeout=io_timeout)
