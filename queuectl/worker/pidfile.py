"""
Daemon marker.

A worker pool started as a daemon records its PID in a file so that
``queuectl worker stop`` can signal it from another process.
"""

import contextlib
import logging
import os
import signal
from pathlib import Path

logger = logging.getLogger(__name__)


class PidFile:
    """
    Scoped PID file: written on enter, removed on exit.

    Removal is best effort and never raises, so a clean shutdown cannot
    fail because the marker disappeared or became unwritable.
    """

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)

    def __enter__(self) -> "PidFile":
        self.path.write_text(f"{os.getpid()}\n")
        logger.info("Wrote worker PID file", extra={"pid_file": str(self.path)})
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def release(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except Exception:
            logger.debug("Could not remove PID file", extra={"pid_file": str(self.path)})


def read_pid(path: str | os.PathLike[str]) -> int | None:
    """
    Read the PID recorded in a daemon marker.

    Returns:
        The PID, or None if the file is missing or does not hold one.
    """
    try:
        first_line = Path(path).read_text().splitlines()[0]
    except (OSError, IndexError):
        return None
    with contextlib.suppress(ValueError):
        pid = int(first_line.strip())
        if pid > 0:
            return pid
    return None


def stop_daemon(path: str | os.PathLike[str]) -> int:
    """
    Ask a daemonized worker pool to shut down gracefully.

    Args:
        path: Location of the daemon marker.

    Returns:
        The PID that was signalled.

    Raises:
        FileNotFoundError: If no valid marker exists.
        ProcessLookupError: If the recorded process is gone.
    """
    pid = read_pid(path)
    if pid is None:
        raise FileNotFoundError(f"No worker PID file at {path}")
    os.kill(pid, signal.SIGTERM)
    logger.info("Sent SIGTERM to worker pool", extra={"pid": pid})
    return pid
