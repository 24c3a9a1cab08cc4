"""Workspace layout: where funds, state files and the daemon marker live."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class FundPaths:
    root: Path

    @property
    def config(self) -> Path:
        return self.root / "fund_config.toml"

    @property
    def state_dir(self) -> Path:
        return self.root / "state"

    @property
    def portfolio(self) -> Path:
        return self.state_dir / "portfolio.json"

    @property
    def tracker(self) -> Path:
        return self.state_dir / "objective_tracker.json"

    @property
    def session_log(self) -> Path:
        return self.state_dir / "session_log.json"

    @property
    def journal(self) -> Path:
        return self.state_dir / "trade_journal.sqlite"

    @property
    def analysis(self) -> Path:
        return self.root / "analysis"

    @property
    def scripts(self) -> Path:
        return self.root / "scripts"

    @property
    def reports(self) -> Path:
        return self.root / "reports"


class Workspace:
    """Root workspace: <home>/funds/<name>/..., plus daemon pid and log files."""

    def __init__(self, home: str | Path) -> None:
        self.home = Path(home).expanduser()

    @property
    def funds_dir(self) -> Path:
        return self.home / "funds"

    @property
    def daemon_pid(self) -> Path:
        return self.home / "daemon.pid"

    @property
    def daemon_log(self) -> Path:
        return self.home / "daemon.log"

    def fund(self, name: str) -> FundPaths:
        return FundPaths(self.funds_dir / name)
