"""fail2ban backend: one jail file (and optional filter file) per owned rule group.

Owned groups live in ``jail.d/<name>.local`` and, when they carry their own
regexes, ``filter.d/<name>.conf``. Files written by anyone else are read for
listing but never modified.
"""

from __future__ import annotations

import configparser
import logging
import os
import tempfile
from pathlib import Path

from guardsync.errors import GuardSyncError
from guardsync.policy.loader import parse_duration
from guardsync.policy.models import ActionScope, MatchSpec, RuleGroup, Threshold
from guardsync.runner import CommandRunner

logger = logging.getLogger(__name__)

_HEADER = "# Managed by guardsync. Changes are overwritten on the next pass.\n"
_SKIP_SECTIONS = {"DEFAULT", "INCLUDES", "Definition", "Init"}
# Continuation indent for multi-line ini values
_INDENT = " " * 12


class Fail2banControl:
    """Reads and writes fail2ban jail configuration under ``root``."""

    def __init__(
        self,
        root: str | Path = "/etc/fail2ban",
        owner_prefix: str = "guardsync-",
        ignore_ips: tuple[str, ...] = ("127.0.0.1/8", "::1"),
        runner: CommandRunner | None = None,
        service: str = "fail2ban",
    ) -> None:
        self._root = Path(root)
        self._owner_prefix = owner_prefix
        self._ignore_ips = ignore_ips
        self._runner = runner or CommandRunner()
        self._service = service

    @property
    def jail_dir(self) -> Path:
        return self._root / "jail.d"

    @property
    def filter_dir(self) -> Path:
        return self._root / "filter.d"

    def jail_path(self, name: str) -> Path:
        return self.jail_dir / f"{name}.local"

    def filter_path(self, name: str) -> Path:
        return self.filter_dir / f"{name}.conf"

    # -- listing --------------------------------------------------------

    def list_rule_groups(self) -> list[RuleGroup]:
        # fail2ban's own read order; later definitions win
        paths = sorted(self.jail_dir.glob("*.conf"))
        paths.append(self._root / "jail.local")
        paths.extend(sorted(self.jail_dir.glob("*.local")))

        groups: dict[str, RuleGroup] = {}
        for path in paths:
            if not path.is_file():
                continue
            parser = _new_parser()
            try:
                parser.read(path, encoding="utf-8")
            except (configparser.Error, UnicodeDecodeError) as e:
                logger.warning("Skipping unparseable jail file %s: %s", path, e)
                continue
            for section in parser.sections():
                if section in _SKIP_SECTIONS:
                    continue
                groups[section] = self._parse_jail(section, parser[section])
        return list(groups.values())

    def _parse_jail(self, name: str, section: configparser.SectionProxy) -> RuleGroup:
        filter_name = section.get("filter", "").strip()
        failregex: tuple[str, ...] = ()
        ignoreregex: tuple[str, ...] = ()
        if name.startswith(self._owner_prefix) and filter_name == name:
            failregex, ignoreregex = self._read_filter(name)
            if failregex:
                filter_name = ""

        match_spec = MatchSpec(
            filter=filter_name,
            failregex=failregex,
            ignoreregex=ignoreregex,
            logpath=_lines(section.get("logpath", "")),
            backend=section.get("backend", "").strip(),
            journalmatch=section.get("journalmatch", "").strip(),
        )
        max_time = _duration(section, "bantime.maxtime", 0)
        return RuleGroup(
            name=name,
            enabled=_boolean(section, "enabled", False),
            match_spec=match_spec,
            threshold=Threshold(
                max_attempts=max(1, _integer(section, "maxretry", 5)),
                window_seconds=max(1, _duration(section, "findtime", 600)),
            ),
            ban_duration_seconds=max(0, _duration(section, "bantime", 3600)),
            ban_duration_max_seconds=max(0, max_time),
            escalating=_boolean(section, "bantime.increment", False),
            action_scope=(
                ActionScope.ALL_PORTS
                if "allports" in section.get("action", "")
                else ActionScope.SINGLE_PORT
            ),
        )

    def _read_filter(self, name: str) -> tuple[tuple[str, ...], tuple[str, ...]]:
        path = self.filter_path(name)
        if not path.is_file():
            return (), ()
        parser = _new_parser()
        try:
            parser.read(path, encoding="utf-8")
        except (configparser.Error, UnicodeDecodeError) as e:
            # Treated as drifted; the next upsert rewrites it
            logger.warning("Skipping unparseable filter file %s: %s", path, e)
            return (), ()
        if not parser.has_section("Definition"):
            return (), ()
        definition = parser["Definition"]
        return _lines(definition.get("failregex", "")), _lines(
            definition.get("ignoreregex", "")
        )

    # -- mutation -------------------------------------------------------

    def upsert_rule_group(self, group: RuleGroup) -> None:
        self._require_owned(group.name)
        spec = group.match_spec
        # Filter first so the jail never references a missing filter
        if spec.has_custom_filter:
            write_atomic(self.filter_path(group.name), render_filter(spec))
        else:
            self.filter_path(group.name).unlink(missing_ok=True)
        write_atomic(
            self.jail_path(group.name), render_jail(group, ignore_ips=self._ignore_ips)
        )
        logger.info("Wrote fail2ban jail %s", group.name)

    def remove_rule_group(self, name: str) -> None:
        self._require_owned(name)
        jail = self.jail_path(name)
        if not jail.is_file():
            raise GuardSyncError(f"Rule group '{name}' is not defined in {jail}")
        jail.unlink()
        self.filter_path(name).unlink(missing_ok=True)
        logger.info("Removed fail2ban jail %s", name)

    def reload(self) -> None:
        self._runner.run(["fail2ban-client", "reload"])

    def is_active(self) -> bool:
        proc = self._runner.run(
            ["systemctl", "is-active", "--quiet", self._service], check=False
        )
        return proc.returncode == 0

    def _require_owned(self, name: str) -> None:
        if not name.startswith(self._owner_prefix):
            raise GuardSyncError(
                f"Refusing to modify rule group '{name}' not owned by guardsync"
            )


def render_jail(group: RuleGroup, ignore_ips: tuple[str, ...] = ()) -> str:
    """Render a rule group as a fail2ban jail section."""
    spec = group.match_spec
    lines = [_HEADER.rstrip("\n"), f"[{group.name}]"]
    lines.append(f"enabled = {'true' if group.enabled else 'false'}")

    filter_name = group.name if spec.has_custom_filter else spec.filter
    if filter_name:
        lines.append(f"filter = {filter_name}")
    if spec.logpath:
        lines.append(_multiline("logpath", spec.logpath))
    if spec.backend:
        lines.append(f"backend = {spec.backend}")
    if spec.journalmatch:
        lines.append(f"journalmatch = {spec.journalmatch}")

    lines.append(f"maxretry = {group.threshold.max_attempts}")
    lines.append(f"findtime = {group.threshold.window_seconds}")
    lines.append(f"bantime = {group.ban_duration_seconds}")
    if group.escalating:
        lines.append("bantime.increment = true")
    if group.ban_duration_max_seconds:
        lines.append(f"bantime.maxtime = {group.ban_duration_max_seconds}")
    if group.action_scope is ActionScope.ALL_PORTS:
        lines.append(f"action = iptables-allports[name={group.name}]")
    if ignore_ips:
        lines.append(f"ignoreip = {' '.join(ignore_ips)}")
    return "\n".join(lines) + "\n"


def render_filter(spec: MatchSpec) -> str:
    """Render a MatchSpec's regexes as a fail2ban filter definition."""
    lines = [_HEADER.rstrip("\n"), "[Definition]"]
    lines.append(_multiline("failregex", spec.failregex))
    if spec.ignoreregex:
        lines.append(_multiline("ignoreregex", spec.ignoreregex))
    else:
        lines.append("ignoreregex =")
    return "\n".join(lines) + "\n"


def _multiline(key: str, values: tuple[str, ...]) -> str:
    head = f"{key} = {values[0]}"
    return "\n".join([head, *(f"{_INDENT}{v}" for v in values[1:])])


def _new_parser() -> configparser.ConfigParser:
    parser = configparser.ConfigParser(interpolation=None, strict=False)
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    return parser


def _lines(value: str) -> tuple[str, ...]:
    return tuple(line.strip() for line in value.splitlines() if line.strip())


def _boolean(section: configparser.SectionProxy, key: str, default: bool) -> bool:
    try:
        return section.getboolean(key, fallback=default)
    except ValueError:
        logger.debug("Ignoring non-boolean %s in [%s]", key, section.name)
        return default


def _integer(section: configparser.SectionProxy, key: str, default: int) -> int:
    try:
        return section.getint(key, fallback=default)
    except ValueError:
        logger.debug("Ignoring non-integer %s in [%s]", key, section.name)
        return default


def _duration(section: configparser.SectionProxy, key: str, default: int) -> int:
    raw = section.get(key)
    if raw is None:
        return default
    try:
        return parse_duration(raw)
    except ValueError:
        # fail2ban also accepts expressions like "1h 30m" we don't model
        logger.debug("Ignoring unsupported duration %s=%r in [%s]", key, raw, section.name)
        return default


def write_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
