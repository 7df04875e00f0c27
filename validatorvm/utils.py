"""Shared utility functions."""

import logging
import shutil
import subprocess
import sys
import threading
import time
from typing import Callable, TypeVar

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("validatorvm")

T = TypeVar("T")


class LogStream:
    """File-like stream that routes output through the logger line by line.

    Use as out_stream/err_stream in fabric c.run() calls so remote SSH output
    goes through the logging system instead of directly to the terminal.
    """

    def __init__(self) -> None:
        self._buf = ""

    def write(self, text: str) -> None:
        self._buf += text
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            if line.strip():
                logger.info(line)

    def flush(self) -> None:
        if self._buf.strip():
            logger.info(self._buf)
            self._buf = ""


def setup_logging(level: int | str = logging.INFO) -> None:
    """Set up logging with Rich handler to stderr."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=True,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl, propagate in [
        ("boto3", logging.INFO, True),
        ("botocore", logging.WARNING, True),
        ("urllib3", logging.WARNING, True),
        ("paramiko", logging.WARNING, True),
        ("fabric", logging.WARNING, True),
        ("invoke", logging.WARNING, True),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = propagate


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)


def require_command(cmd: str, install_hint: str = "") -> None:
    """Fail fast if a required local tool is not on PATH.

    :param cmd: Executable name
    :param install_hint: How to install it, shown with the error
    """
    if shutil.which(cmd) is None:
        hint = f"\nInstall with: {install_hint}" if install_hint else ""
        error(f"Required command not found: '{cmd}'{hint}")


def run_cmd(*args, check: bool = True, cwd: str | None = None) -> str:
    """Execute local command and return stdout."""
    result = subprocess.run(args, capture_output=True, text=True, cwd=cwd)
    if check and result.returncode != 0:
        error(f"Command failed: {result.stderr}")
    return result.stdout.strip()


def _sleep(delay: float, cancel: threading.Event | None) -> bool:
    """Sleep for delay seconds. Returns True if cancelled while waiting."""
    if cancel is None:
        time.sleep(delay)
        return False
    return cancel.wait(delay)


def retry(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    delay: float = 2.0,
    backoff: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    cancel: threading.Event | None = None,
    describe: str = "operation",
) -> T:
    """Call fn, retrying on the given exceptions with exponential backoff.

    The last exception is re-raised once attempts are exhausted or the
    cancel event is set.

    :param fn: Zero-argument callable
    :param attempts: Maximum number of calls
    :param delay: Initial delay between calls in seconds
    :param backoff: Multiplier applied to the delay after each failure
    :param retry_on: Exception types that count as transient
    :param cancel: Optional event that aborts the wait between attempts
    :param describe: Label used in log messages
    """
    wait = delay
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt == attempts:
                warn(f"{describe} failed, tried {attempts} times: {e}")
                raise
            warn(
                f"{describe} failed ({attempt}/{attempts}): {e}, retrying in {wait:g}s..."
            )
            if _sleep(wait, cancel):
                raise
            wait *= backoff
    raise AssertionError("unreachable")


def poll_until(
    check: Callable[[], bool],
    *,
    attempts: int,
    delay: float,
    backoff: float = 1.0,
    cancel: threading.Event | None = None,
) -> bool:
    """Call check until it returns True.

    :param check: Zero-argument predicate, called at most attempts times
    :param attempts: Maximum number of checks
    :param delay: Delay between checks in seconds
    :param backoff: Multiplier applied to the delay after each check
    :param cancel: Optional event that stops polling early
    :return: True if check succeeded, False on exhaustion or cancellation
    """
    wait = delay
    for attempt in range(1, attempts + 1):
        if check():
            return True
        if attempt == attempts:
            break
        if _sleep(wait, cancel):
            return False
        wait *= backoff
    return False
