"""Thin wrapper around external tool invocation.

Every ``ffprobe`` / ``ffmpeg`` call goes through a :class:`CommandRunner` so
the pipeline can be exercised without the real executables.
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Protocol, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Exit status and fully drained output of one external command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    def __call__(self, args: Sequence[str]) -> CommandResult: ...


class SubprocessRunner:
    """Run commands with :func:`subprocess.run`, capturing stdout and stderr.

    A missing executable or an expired timeout is reported as a failed
    :class:`CommandResult` rather than raised; callers treat both like a
    non-zero exit.
    """

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout

    def __call__(self, args: Sequence[str]) -> CommandResult:
        args = [str(a) for a in args]
        logger.debug("Running: %s", " ".join(args))
        t0 = time.monotonic()
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            logger.warning("%s not found on PATH: %s", args[0], exc)
            return CommandResult(returncode=127, stderr=str(exc))
        except subprocess.TimeoutExpired:
            logger.warning("%s timed out after %.0f s", args[0], self.timeout)
            return CommandResult(returncode=-1, stderr="timeout")

        logger.debug(
            "%s exited with %d (%.2f s)",
            args[0],
            result.returncode,
            time.monotonic() - t0,
        )
        return CommandResult(
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
