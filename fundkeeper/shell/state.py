"""Per-fund JSON state: portfolio, objective tracker and the last session log.

Writes go to a temp sibling and are moved into place with os.replace, so a
reader sees either the old document or the new one, never a partial file.
Nothing is cached; every read goes back to disk.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable

import structlog

from fundkeeper.shell.contract import ObjectiveTracker, Portfolio, SessionLog, TrackerStatus
from fundkeeper.shell.paths import FundPaths

log = structlog.get_logger()


async def run_io(fn, *args, timeout: float):
    """Run blocking file I/O on a worker thread, bounded by `timeout` seconds."""
    return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout)


def write_json_atomic(path: Path, data: dict) -> None:
    write_text_atomic(path, json.dumps(data, indent=2))


def write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def read_json(path: Path) -> dict:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


class StateStore:
    def __init__(
        self,
        paths: FundPaths,
        io_timeout: float = 10.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.paths = paths
        self._timeout = io_timeout
        self._clock = clock

    async def _read(self, path: Path) -> dict:
        return await run_io(read_json, path, timeout=self._timeout)

    async def _write(self, path: Path, data: dict) -> None:
        await run_io(write_json_atomic, path, data, timeout=self._timeout)

    async def read_portfolio(self) -> Portfolio:
        return Portfolio.from_dict(await self._read(self.paths.portfolio))

    async def write_portfolio(self, portfolio: Portfolio) -> Portfolio:
        """Recompute totals and weights, then persist."""
        portfolio.recompute(self._clock())
        await self._write(self.paths.portfolio, portfolio.to_dict())
        return portfolio

    async def read_tracker(self) -> ObjectiveTracker:
        return ObjectiveTracker.from_dict(await self._read(self.paths.tracker))

    async def write_tracker(self, tracker: ObjectiveTracker) -> None:
        await self._write(self.paths.tracker, tracker.to_dict())

    async def read_session_log(self) -> SessionLog | None:
        try:
            return SessionLog.from_dict(await self._read(self.paths.session_log))
        except FileNotFoundError:
            return None

    async def write_session_log(self, session: SessionLog) -> None:
        await self._write(self.paths.session_log, session.to_dict())


async def init_fund_state(
    paths: FundPaths, initial_capital: float, objective_type: str, io_timeout: float = 10.0,
) -> StateStore:
    """Create a fund's directory tree and its opening portfolio and tracker."""
    for d in (
        paths.state_dir,
        paths.analysis,
        paths.scripts,
        paths.reports / "daily",
        paths.reports / "weekly",
        paths.reports / "monthly",
    ):
        d.mkdir(parents=True, exist_ok=True)

    store = StateStore(paths, io_timeout)
    await store.write_portfolio(Portfolio.empty(initial_capital))
    await store.write_tracker(ObjectiveTracker(
        type=objective_type,
        initial_capital=initial_capital,
        current_value=initial_capital,
        progress_pct=0.0,
        status=TrackerStatus.ON_TRACK,
    ))
    log.info("state.initialized", fund=paths.root.name, capital=initial_capital)
    return store
