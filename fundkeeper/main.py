"""fundkeeper daemon: one process that keeps every fund on schedule.

Startup: load config -> set up logging -> acquire instance lock -> start minute tick
Shutdown: stop scheduler -> short drain of in-flight work -> release lock
"""

from __future__ import annotations

import asyncio
import signal
import sys
from zoneinfo import ZoneInfo

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from fundkeeper.engine.dispatch import TaskSupervisor
from fundkeeper.engine.executor import ClaudeCliExecutor
from fundkeeper.engine.scheduler import FundActions, Scheduler
from fundkeeper.shell.config import Config, load_config
from fundkeeper.shell.lock import InstanceLock, LockHeldError
from fundkeeper.shell.paths import Workspace
from fundkeeper.utils.logging import setup_logging

log = structlog.get_logger()

SHUTDOWN_DRAIN_SECONDS = 5.0


class FundDaemon:
    """Wires the scheduler to the clock and owns its lifecycle."""

    def __init__(self, config: Config, actions: FundActions | None = None) -> None:
        self._config = config
        self._tz = ZoneInfo(config.timezone)
        self._workspace = Workspace(config.workspace_path)
        self._lock = InstanceLock(self._workspace.daemon_pid)
        self._supervisor = TaskSupervisor()
        self._actions = actions or FundActions(
            config, self._workspace, ClaudeCliExecutor(config.executor),
        )
        self._planner = Scheduler(config, self._workspace, self._actions, self._supervisor)
        self._scheduler: AsyncIOScheduler | None = None
        self._stopped = asyncio.Event()
        self._running = False

    @property
    def supervisor(self) -> TaskSupervisor:
        return self._supervisor

    async def _tick(self) -> None:
        await self._planner.tick(self._config.now())

    async def start(self) -> None:
        log.info("daemon.starting", workspace=str(self._workspace.home), timezone=self._config.timezone)
        self._workspace.funds_dir.mkdir(parents=True, exist_ok=True)
        self._lock.acquire()
        self._running = True

        try:
            self._scheduler = AsyncIOScheduler(timezone=self._tz)
            self._scheduler.add_job(
                self._tick, CronTrigger(minute="*", timezone=self._tz),
                id="tick", name="Minute Tick",
                coalesce=True,
                max_instances=3,
                misfire_grace_time=self._config.daemon.misfire_grace_seconds,
            )
            self._scheduler.start()
        except Exception:
            log.error("daemon.start_failed", exc_info=True)
            self._scheduler = None
            self._running = False
            self._lock.release()
            raise
        log.info("daemon.started")

    async def wait(self) -> None:
        await self._stopped.wait()

    async def stop(self) -> None:
        if not self._running:
            return
        log.info("daemon.stopping", in_flight=self._supervisor.pending)
        self._running = False
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        # In-flight sessions are bounded by their own timeouts; do not cancel them
        await self._supervisor.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
        self._lock.release()
        self._stopped.set()
        log.info("daemon.stopped")


async def main() -> None:
    try:
        config = load_config()
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    workspace = Workspace(config.workspace_path)
    setup_logging(config.log_level, workspace.daemon_log)

    daemon = FundDaemon(config)

    loop = asyncio.get_running_loop()
    _stop_task = None

    def signal_handler():
        nonlocal _stop_task
        if _stop_task is None:
            _stop_task = asyncio.create_task(daemon.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await daemon.start()
    except LockHeldError as e:
        log.error("daemon.lock_held", pid=e.pid)
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        await daemon.wait()
    finally:
        await daemon.stop()


def run() -> None:
    """Entry point for pyproject.toml script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
