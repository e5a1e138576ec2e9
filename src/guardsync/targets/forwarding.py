"""Ship the fail2ban log to rsyslog so it reaches the remote log destination.

Two files are kept in shape: ``fail2ban.local`` (daemon logs to a dedicated
file) and an rsyslog ``imfile`` drop-in that tails that file. Each is only
rewritten, and its service only reloaded, when the content differs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from guardsync.runner import CommandRunner
from guardsync.targets.base import DaemonControl
from guardsync.targets.fail2ban import write_atomic

logger = logging.getLogger(__name__)

FAIL2BAN_LOG = "/var/log/fail2ban.log"
DROP_IN_NAME = "22-guardsync-fail2ban.conf"

# Markers of an rsyslog rule that sends logs off-host
_REMOTE_MARKERS = ("@@", 'type="omfwd"', "papertrail")

FAIL2BAN_LOCAL = f"""\
# Managed by guardsync. Changes are overwritten on the next pass.
[Definition]
logtarget = {FAIL2BAN_LOG}
loglevel = INFO
"""

RSYSLOG_DROP_IN = f"""\
# Managed by guardsync. Changes are overwritten on the next pass.
module(load="imfile" mode="inotify")

input(type="imfile"
      File="{FAIL2BAN_LOG}"
      Tag="fail2ban"
      Severity="warning"
      StateFile="fail2ban-log-state")
"""


@dataclass
class ForwardingResult:
    """Which files changed and whether a remote destination exists."""

    changed: list[Path] = field(default_factory=list)
    remote_configured: bool = False


class LogForwarder:
    """Keeps fail2ban logging and its rsyslog pickup configured."""

    def __init__(
        self,
        daemon: DaemonControl,
        fail2ban_dir: str | Path = "/etc/fail2ban",
        rsyslog_dir: str | Path = "/etc/rsyslog.d",
        runner: CommandRunner | None = None,
    ) -> None:
        self._daemon = daemon
        self._fail2ban_local = Path(fail2ban_dir) / "fail2ban.local"
        self._rsyslog_dir = Path(rsyslog_dir)
        self._runner = runner or CommandRunner()

    @property
    def drop_in_path(self) -> Path:
        return self._rsyslog_dir / DROP_IN_NAME

    def ensure(self) -> ForwardingResult:
        result = ForwardingResult(remote_configured=self._remote_configured())
        if not result.remote_configured:
            logger.warning(
                "No remote log destination found in %s; fail2ban events stay local",
                self._rsyslog_dir,
            )

        if _ensure_content(self._fail2ban_local, FAIL2BAN_LOCAL):
            result.changed.append(self._fail2ban_local)
            self._daemon.reload()

        if _ensure_content(self.drop_in_path, RSYSLOG_DROP_IN):
            result.changed.append(self.drop_in_path)
            self._runner.run(["systemctl", "restart", "rsyslog"])

        return result

    def _remote_configured(self) -> bool:
        if not self._rsyslog_dir.is_dir():
            return False
        for path in sorted(self._rsyslog_dir.glob("*.conf")):
            if path.name == DROP_IN_NAME:
                continue
            text = path.read_text(encoding="utf-8", errors="replace")
            if "papertrail" in path.name or any(m in text for m in _REMOTE_MARKERS):
                return True
        return False


def _ensure_content(path: Path, content: str) -> bool:
    if path.is_file() and path.read_text(encoding="utf-8") == content:
        return False
    write_atomic(path, content)
    logger.info("Wrote %s", path)
    return True
