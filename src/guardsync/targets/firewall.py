"""Firewall backends: allow rules tagged with a label so they can be found again.

``UfwControl`` drives ufw and stores the label as the rule comment.
``IptablesControl`` inserts ACCEPT rules with ``-m comment --comment <label>``
into a chain, using ip6tables for IPv6 prefixes.
"""

from __future__ import annotations

import ipaddress
import logging
import re
import shlex

from guardsync.policy.models import FirewallRule
from guardsync.runner import CommandRunner

logger = logging.getLogger(__name__)

# "80/tcp (v6)    ALLOW IN    2001:db8::/32    # guardsync"
_UFW_RULE_RE = re.compile(
    r"^(?P<port>\d+)(?:/(?P<proto>tcp|udp))?(?:\s+\(v6\))?\s+"
    r"ALLOW(?:\s+IN)?\s+"
    r"(?P<source>\S+)(?:\s+\(v6\))?"
    r"(?:\s+#\s*(?P<comment>.*?))?\s*$"
)


class UfwControl:
    """Allow rules managed through the ``ufw`` CLI."""

    def __init__(self, runner: CommandRunner | None = None) -> None:
        self._runner = runner or CommandRunner()

    def list_rules(self) -> list[FirewallRule]:
        proc = self._runner.run(["ufw", "status"])
        return parse_ufw_status(proc.stdout)

    def add_rule(self, rule: FirewallRule) -> None:
        self._runner.run(
            [
                "ufw",
                "allow",
                "from",
                rule.network_prefix,
                "to",
                "any",
                "port",
                str(rule.port),
                "proto",
                "tcp",
                "comment",
                rule.label,
            ]
        )
        logger.info("ufw: allowed %s", rule)

    def remove_rule(self, rule: FirewallRule) -> None:
        self._runner.run(
            [
                "ufw",
                "--force",
                "delete",
                "allow",
                "from",
                rule.network_prefix,
                "to",
                "any",
                "port",
                str(rule.port),
                "proto",
                "tcp",
            ]
        )
        logger.info("ufw: removed %s", rule)


def parse_ufw_status(output: str) -> list[FirewallRule]:
    """Extract single-port allow-from-prefix rules from ``ufw status`` output."""
    rules: list[FirewallRule] = []
    seen: set[tuple[str, int, str]] = set()
    for line in output.splitlines():
        m = _UFW_RULE_RE.match(line.strip())
        if not m:
            continue
        source = m.group("source")
        if m.group("proto") == "udp" or source.startswith("Anywhere"):
            continue
        try:
            rule = FirewallRule(
                network_prefix=source,
                port=int(m.group("port")),
                label=(m.group("comment") or "").strip(),
            )
        except ValueError:
            continue
        if rule.key in seen:
            continue
        seen.add(rule.key)
        rules.append(rule)
    return rules


class IptablesControl:
    """Allow rules kept directly in an iptables/ip6tables chain."""

    def __init__(self, chain: str = "INPUT", runner: CommandRunner | None = None) -> None:
        self._chain = chain
        self._runner = runner or CommandRunner()

    def list_rules(self) -> list[FirewallRule]:
        rules: list[FirewallRule] = []
        for binary in ("iptables", "ip6tables"):
            proc = self._runner.run([binary, "-S", self._chain])
            rules.extend(parse_iptables_rules(proc.stdout, self._chain))
        return rules

    def add_rule(self, rule: FirewallRule) -> None:
        self._runner.run(self._command(rule, "-I"))
        logger.info("iptables: allowed %s", rule)

    def remove_rule(self, rule: FirewallRule) -> None:
        self._runner.run(self._command(rule, "-D"))
        logger.info("iptables: removed %s", rule)

    def _command(self, rule: FirewallRule, op: str) -> list[str]:
        network = ipaddress.ip_network(rule.network_prefix)
        binary = "ip6tables" if network.version == 6 else "iptables"
        return [
            binary,
            op,
            self._chain,
            "-s",
            rule.network_prefix,
            "-p",
            "tcp",
            "--dport",
            str(rule.port),
            "-m",
            "comment",
            "--comment",
            rule.label,
            "-j",
            "ACCEPT",
        ]


def parse_iptables_rules(output: str, chain: str = "INPUT") -> list[FirewallRule]:
    """Extract ACCEPT-from-source rules with a single dport from ``iptables -S``."""
    rules: list[FirewallRule] = []
    for line in output.splitlines():
        try:
            tokens = shlex.split(line)
        except ValueError:
            continue
        if tokens[:2] != ["-A", chain]:
            continue
        opts = _option_values(tokens[2:])
        if opts.get("-j") != "ACCEPT" or "-s" not in opts or "--dport" not in opts:
            continue
        try:
            rule = FirewallRule(
                network_prefix=opts["-s"],
                port=int(opts["--dport"]),
                label=opts.get("--comment", ""),
            )
        except ValueError:
            continue
        rules.append(rule)
    return rules


def _option_values(tokens: list[str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for flag, value in zip(tokens, tokens[1:]):
        if flag.startswith("-") and not value.startswith("-"):
            values.setdefault(flag, value)
    return values


def make_firewall(backend: str, runner: CommandRunner | None = None) -> UfwControl | IptablesControl:
    """Build the firewall backend named in config."""
    if backend == "ufw":
        return UfwControl(runner)
    if backend == "iptables":
        return IptablesControl(runner=runner)
    raise ValueError(f"Unknown firewall backend: {backend}")
