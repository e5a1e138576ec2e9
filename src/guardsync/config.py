"""Global configuration: XDG paths, env vars, defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_ALLOWLIST_URL = "https://api.uptimerobot.com/meta/ips"


def _default_data_dir() -> Path:
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "guardsync"
    return Path.home() / ".local" / "share" / "guardsync"


def _default_config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "guardsync"
    return Path.home() / ".config" / "guardsync"


def _parse_ports(raw: str) -> tuple[int, ...]:
    ports = tuple(sorted({int(p) for p in raw.replace(" ", "").split(",") if p}))
    if not ports:
        raise ValueError(f"GUARDSYNC_PORTS names no ports: {raw!r}")
    for port in ports:
        if not 1 <= port <= 65535:
            raise ValueError(f"Port out of range in GUARDSYNC_PORTS: {port}")
    return ports


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class GuardSyncConfig:
    """Application-wide configuration."""

    data_dir: Path = field(default_factory=_default_data_dir)
    config_dir: Path = field(default_factory=_default_config_dir)
    allowlist_url: str = DEFAULT_ALLOWLIST_URL
    allowlist_list_key: str = "prefixes"
    allowlist_prefix_field: str = "ip_prefix"
    allowed_ports: tuple[int, ...] = (80, 443)
    firewall_label: str = "guardsync"
    owner_prefix: str = "guardsync-"
    lock_path: Path | None = None
    fetch_timeout: float = 10.0
    command_timeout: float = 30.0
    fail2ban_dir: Path = Path("/etc/fail2ban")
    rsyslog_dir: Path = Path("/etc/rsyslog.d")
    firewall_backend: str = "ufw"
    service_checker: str = "systemd"
    ignore_ips: tuple[str, ...] = ("127.0.0.1/8", "::1")
    rules_path: Path | None = None
    forward_logs: bool = False
    interval: float = 3600.0
    verbose: bool = False

    @property
    def effective_lock_path(self) -> Path:
        return self.lock_path or self.data_dir / "guardsync.lock"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "guardsync.db"

    @classmethod
    def load(cls) -> GuardSyncConfig:
        """Load config from environment variables with XDG defaults."""
        config = cls()

        env = os.environ
        if url := env.get("GUARDSYNC_ALLOWLIST_URL"):
            config.allowlist_url = url
        if key := env.get("GUARDSYNC_ALLOWLIST_KEY"):
            config.allowlist_list_key = key
        if prefix_field := env.get("GUARDSYNC_ALLOWLIST_FIELD"):
            config.allowlist_prefix_field = prefix_field
        if ports := env.get("GUARDSYNC_PORTS"):
            config.allowed_ports = _parse_ports(ports)
        if label := env.get("GUARDSYNC_LABEL"):
            config.firewall_label = label
        if owner_prefix := env.get("GUARDSYNC_OWNER_PREFIX"):
            config.owner_prefix = owner_prefix
        if lock_file := env.get("GUARDSYNC_LOCK_FILE"):
            config.lock_path = Path(lock_file)
        if fetch_timeout := env.get("GUARDSYNC_FETCH_TIMEOUT"):
            config.fetch_timeout = float(fetch_timeout)
        if command_timeout := env.get("GUARDSYNC_COMMAND_TIMEOUT"):
            config.command_timeout = float(command_timeout)
        if fail2ban_dir := env.get("GUARDSYNC_FAIL2BAN_DIR"):
            config.fail2ban_dir = Path(fail2ban_dir)
        if rsyslog_dir := env.get("GUARDSYNC_RSYSLOG_DIR"):
            config.rsyslog_dir = Path(rsyslog_dir)
        if backend := env.get("GUARDSYNC_FIREWALL"):
            config.firewall_backend = backend
        if checker := env.get("GUARDSYNC_SERVICE_CHECKER"):
            config.service_checker = checker
        if ignore_ips := env.get("GUARDSYNC_IGNORE_IPS"):
            config.ignore_ips = tuple(ignore_ips.split())
        if forward := env.get("GUARDSYNC_FORWARD_LOGS"):
            config.forward_logs = _parse_bool(forward)
        if interval := env.get("GUARDSYNC_INTERVAL"):
            config.interval = float(interval)

        # A rules.yaml in the config dir replaces the built-in preset
        user_rules = config.config_dir / "rules.yaml"
        if user_rules.is_file():
            config.rules_path = user_rules

        return config
