#!/usr/bin/env python3
"""Load the optional migrate.yaml configuration."""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc

from consolidate_migrations import DEFAULT_GROUP, GroupAssignment, GroupRule
from migration_gateway import DEFAULT_TRACKING_TABLE
from validate_migrations import RuleSettings


DEFAULT_CONFIG_PATH = Path("migrate.yaml")
TOP_LEVEL_KEYS = {"migrations_dir", "output_dir", "groups", "default_group", "rules", "tracking_table"}
GROUP_KEYS = {"name", "description", "objects", "files"}
RULE_KEYS = {"disabled", "drop_recreate_max_file_distance"}


@dataclasses.dataclass
class MigrateConfig:
    migrations_dir: Path = Path("migrations")
    output_dir: Path = Path("migrations_v2")
    groups: list[GroupRule] = dataclasses.field(default_factory=list)
    default_group: str = DEFAULT_GROUP
    rules: RuleSettings = dataclasses.field(default_factory=RuleSettings)
    tracking_table: str = DEFAULT_TRACKING_TABLE

    def group_assignment(self) -> GroupAssignment:
        if not self.groups:
            assignment = GroupAssignment.kind_heuristic()
            assignment.default_group = self.default_group
            return assignment
        return GroupAssignment(groups=list(self.groups), default_group=self.default_group)


def _string_list(value: Any, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{key}: expected a list of strings")
    return tuple(value)


def _string(value: Any, key: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{key}: expected a non-empty string")
    return value.strip()


def parse_groups(raw: Any) -> list[GroupRule]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("groups: expected a list")
    groups: list[GroupRule] = []
    seen: set[str] = set()
    for idx, item in enumerate(raw):
        key = f"groups[{idx}]"
        if not isinstance(item, dict):
            raise ValueError(f"{key}: expected a mapping")
        unknown = set(item) - GROUP_KEYS
        if unknown:
            raise ValueError(f"{key}: unknown keys {sorted(unknown)}")
        name = _string(item.get("name"), f"{key}.name")
        if name in seen:
            raise ValueError(f"{key}.name: duplicate group {name!r}")
        seen.add(name)
        groups.append(
            GroupRule(
                name=name,
                description=str(item.get("description") or ""),
                objects=tuple(p.lower() for p in _string_list(item.get("objects"), f"{key}.objects")),
                files=_string_list(item.get("files"), f"{key}.files"),
            )
        )
    return groups


def parse_rules(raw: Any) -> RuleSettings:
    if raw is None:
        return RuleSettings()
    if not isinstance(raw, dict):
        raise ValueError("rules: expected a mapping")
    unknown = set(raw) - RULE_KEYS
    if unknown:
        raise ValueError(f"rules: unknown keys {sorted(unknown)}")
    distance = raw.get("drop_recreate_max_file_distance")
    if distance is not None and (not isinstance(distance, int) or isinstance(distance, bool) or distance < 0):
        raise ValueError("rules.drop_recreate_max_file_distance: expected a non-negative integer")
    disabled = frozenset(code.upper() for code in _string_list(raw.get("disabled"), "rules.disabled"))
    return RuleSettings(disabled=disabled, drop_recreate_max_file_distance=distance)


def config_from_dict(data: dict) -> MigrateConfig:
    if not isinstance(data, dict):
        raise ValueError("config: expected a mapping at the top level")
    unknown = set(data) - TOP_LEVEL_KEYS
    if unknown:
        raise ValueError(f"config: unknown keys {sorted(unknown)}")
    config = MigrateConfig(
        groups=parse_groups(data.get("groups")),
        rules=parse_rules(data.get("rules")),
    )
    if "migrations_dir" in data:
        config.migrations_dir = Path(_string(data["migrations_dir"], "migrations_dir"))
    if "output_dir" in data:
        config.output_dir = Path(_string(data["output_dir"], "output_dir"))
    if "default_group" in data:
        config.default_group = _string(data["default_group"], "default_group")
    if "tracking_table" in data:
        config.tracking_table = _string(data["tracking_table"], "tracking_table")
    return config


def load_config(path: Path | None = None) -> MigrateConfig:
    """Read ``path``; without one, use ./migrate.yaml when present and defaults otherwise."""
    if path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return MigrateConfig()
        path = DEFAULT_CONFIG_PATH
    elif not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"{path}: invalid YAML: {exc}") from exc
    return config_from_dict(data)
