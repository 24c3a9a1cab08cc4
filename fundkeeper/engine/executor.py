"""Session executor: runs one agent session as a subprocess under a timeout."""

from __future__ import annotations

import asyncio
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import structlog

from fundkeeper.shell.config import ExecutorConfig

log = structlog.get_logger()


class SessionTimeoutError(TimeoutError):
    def __init__(self, timeout: float):
        super().__init__(f"Session exceeded {timeout:.0f}s and was killed")
        self.timeout = timeout


class SessionExecutionError(RuntimeError):
    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


@dataclass(frozen=True)
class SessionResult:
    output: str
    duration_seconds: float

    def summary(self, limit: int) -> str:
        return self.output[:limit]


class SessionExecutor(ABC):
    """Interface the engines depend on; tests substitute their own."""

    @abstractmethod
    async def run(
        self,
        project_dir: Path,
        prompt: str,
        model: str,
        timeout: float,
        max_turns: int | None = None,
    ) -> SessionResult: ...


class ClaudeCliExecutor(SessionExecutor):
    """Spawns `claude --print` in the fund directory."""

    def __init__(self, config: ExecutorConfig):
        self._config = config

    def build_command(self, project_dir: Path, prompt: str, model: str, max_turns: int) -> list[str]:
        return [
            self._config.claude_path,
            "--print",
            "--project-dir", str(project_dir),
            "--model", model,
            "--max-turns", str(max_turns),
            prompt,
        ]

    async def run(
        self,
        project_dir: Path,
        prompt: str,
        model: str,
        timeout: float,
        max_turns: int | None = None,
    ) -> SessionResult:
        cmd = self.build_command(project_dir, prompt, model, max_turns or self._config.max_turns)
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(project_dir),
                env={**os.environ, "ANTHROPIC_MODEL": model},
            )
        except OSError as e:
            raise SessionExecutionError(f"Could not start {cmd[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            log.warning("executor.timeout", project=project_dir.name, timeout=timeout)
            raise SessionTimeoutError(timeout)
        except asyncio.CancelledError:
            proc.kill()
            raise

        duration = time.monotonic() - start
        if proc.returncode != 0:
            err = stderr.decode(errors="replace").strip()
            raise SessionExecutionError(
                f"{cmd[0]} exited with {proc.returncode}: {err[:300]}",
                returncode=proc.returncode,
                stderr=err,
            )

        log.debug("executor.done", project=project_dir.name, duration=round(duration, 1))
        return SessionResult(output=stdout.decode(errors="replace"), duration_seconds=duration)
