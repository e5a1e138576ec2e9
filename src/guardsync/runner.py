"""Thin subprocess wrapper shared by every external control interface."""

from __future__ import annotations

import logging
import subprocess

from guardsync.errors import CommandError

logger = logging.getLogger(__name__)


class CommandRunner:
    """Runs control commands with a timeout and uniform error reporting."""

    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout

    def run(
        self,
        command: list[str],
        check: bool = True,
        input: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command*; raise CommandError if it is missing, hangs, or (with check) fails."""
        logger.debug("Running: %s", " ".join(command))
        try:
            proc = subprocess.run(
                command,
                input=input,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise CommandError(command, f"command not found ({e.filename})") from e
        except subprocess.TimeoutExpired as e:
            raise CommandError(command, f"timed out after {self.timeout:g}s") from e

        if check and proc.returncode != 0:
            message = (proc.stderr or proc.stdout).strip() or f"exit code {proc.returncode}"
            raise CommandError(command, message, returncode=proc.returncode)
        return proc
