"""Load and resolve RuleCatalog objects from YAML files."""

from __future__ import annotations

import importlib.resources
import re
from pathlib import Path
from typing import Any

import yaml

from guardsync.policy.models import (
    ActionScope,
    MatchSpec,
    RuleCatalog,
    RuleGroup,
    Threshold,
)

_PRESET_PREFIX = "preset:"
DEFAULT_PRESET = "preset:default"

_DURATION_RE = re.compile(r"^(\d+)\s*([smhdw]?)$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def parse_duration(value: int | str) -> int:
    """Convert ``600``, ``"10m"``, ``"1h"`` or ``"7d"`` to seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int):
        return value
    m = _DURATION_RE.match(str(value).strip().lower())
    if not m:
        raise ValueError(f"Invalid duration: {value!r}")
    return int(m.group(1)) * _DURATION_UNITS[m.group(2)]


def load_catalog(path: str | Path, _resolved: set[str] | None = None) -> RuleCatalog:
    """Load a rule catalog from a YAML file path."""
    text = Path(path).read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError("Rule catalog YAML must be a mapping")
    return _build_catalog(data, _resolved=_resolved if _resolved is not None else set())


def load_catalog_from_string(text: str) -> RuleCatalog:
    """Parse a YAML string into a RuleCatalog, resolving inheritance."""
    data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError("Rule catalog YAML must be a mapping")
    return _build_catalog(data, _resolved=set())


def load_default_catalog() -> RuleCatalog:
    return _load_ref(DEFAULT_PRESET, set())


def _build_catalog(data: dict, _resolved: set[str]) -> RuleCatalog:
    name = data.get("name", "unnamed")

    if name in _resolved:
        raise ValueError(f"Circular rule catalog inheritance detected: {name}")
    _resolved.add(name)

    base: dict[str, RuleGroup] = {}
    services: dict[str, RuleGroup] = {}

    inherit_list = data.get("inherit", [])
    if isinstance(inherit_list, str):
        inherit_list = [inherit_list]

    for ref in inherit_list:
        parent = _load_ref(ref, _resolved)
        for group in parent.base:
            base[group.name] = group
        services.update(parent.services)

    # Own groups replace inherited ones of the same name, keeping their slot
    for group in _parse_groups(data.get("base", []), section="base"):
        base[group.name] = group
    for group in _parse_groups(data.get("services", []), section="services"):
        services[group.name] = group

    return RuleCatalog(base=tuple(base.values()), services=services, name=name)


def _parse_groups(groups_data: Any, section: str) -> list[RuleGroup]:
    if not isinstance(groups_data, list):
        raise ValueError(f"'{section}' must be a list of rule groups")
    groups: list[RuleGroup] = []
    seen: set[str] = set()
    for g in groups_data:
        if not isinstance(g, dict):
            continue
        group = _parse_group(g)
        if group.name in seen:
            raise ValueError(f"Duplicate rule group '{group.name}' in '{section}'")
        seen.add(group.name)
        groups.append(group)
    return groups


def _parse_group(g: dict) -> RuleGroup:
    if "name" not in g:
        raise ValueError("Rule group is missing 'name'")
    name = str(g["name"])

    failregex = _as_tuple(g.get("failregex"))
    match_spec = MatchSpec(
        # A group with its own regexes gets a filter named after itself
        filter="" if failregex else str(g.get("filter", "")),
        failregex=failregex,
        ignoreregex=_as_tuple(g.get("ignoreregex")),
        logpath=_as_tuple(g.get("logpath")),
        backend=str(g.get("backend", "")),
        journalmatch=str(g.get("journalmatch", "")),
    )

    escalate_to = g.get("escalate_to")
    escalating = escalate_to is not None
    return RuleGroup(
        name=name,
        enabled=bool(g.get("enabled", True)),
        match_spec=match_spec,
        threshold=Threshold(
            max_attempts=int(g.get("max_attempts", 5)),
            window_seconds=parse_duration(g.get("window", 600)),
        ),
        ban_duration_seconds=parse_duration(g.get("bantime", 3600)),
        ban_duration_max_seconds=parse_duration(escalate_to) if escalating else 0,
        escalating=escalating,
        action_scope=ActionScope(g.get("scope", ActionScope.SINGLE_PORT.value)),
    )


def _as_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _load_ref(ref: str, _resolved: set[str]) -> RuleCatalog:
    if ref.startswith(_PRESET_PREFIX):
        preset_name = ref[len(_PRESET_PREFIX) :]
        return _load_preset(preset_name, _resolved)
    return load_catalog(ref, _resolved=_resolved)


def _load_preset(name: str, _resolved: set[str]) -> RuleCatalog:
    filename = f"{name}.yaml"
    pkg = importlib.resources.files("guardsync.policy.presets")
    resource = pkg.joinpath(filename)
    text = resource.read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    return _build_catalog(data, _resolved)
