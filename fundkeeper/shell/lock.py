"""Single-instance lock over a PID file."""

from __future__ import annotations

import os
from pathlib import Path

import structlog

log = structlog.get_logger()


class LockHeldError(RuntimeError):
    def __init__(self, pid: int, path: Path):
        super().__init__(f"Another instance is running (PID {pid}, lock {path})")
        self.pid = pid


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)  # signal 0 = existence check
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


class InstanceLock:
    def __init__(self, path: Path):
        self.path = Path(path)

    def _read_pid(self) -> int | None:
        try:
            return int(self.path.read_text().strip())
        except FileNotFoundError:
            return None
        except (ValueError, OSError):
            log.warning("lockfile.corrupt", path=str(self.path))
            return None

    def acquire(self) -> None:
        """Write our PID, reclaiming a lock left behind by a dead process."""
        current_pid = os.getpid()
        old_pid = self._read_pid()
        if old_pid is not None and old_pid != current_pid:
            if _pid_alive(old_pid):
                raise LockHeldError(old_pid, self.path)
            log.warning("lockfile.stale", old_pid=old_pid)
        elif old_pid == current_pid:
            # Container restart reuses PID 1
            log.warning("lockfile.stale_same_pid", old_pid=old_pid)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.unlink(missing_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            # Lost a race with another starter
            raise LockHeldError(self._read_pid() or -1, self.path)
        with os.fdopen(fd, "w") as f:
            f.write(str(current_pid))
        log.info("lockfile.acquired", pid=current_pid, path=str(self.path))

    def release(self) -> None:
        """Remove the PID file if it is still ours."""
        try:
            if self.path.exists() and self.path.read_text().strip() == str(os.getpid()):
                self.path.unlink()
        except OSError as e:
            log.warning("lockfile.release_failed", error=str(e))

    def is_held(self) -> bool:
        """True if any live process (this one included) holds the lock."""
        pid = self._read_pid()
        return pid is not None and (pid == os.getpid() or _pid_alive(pid))

    def __enter__(self) -> InstanceLock:
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
