#!/usr/bin/env python3
"""Merge a migration history into a few idempotent, dependency-ordered group files."""

from __future__ import annotations

import dataclasses
import difflib
import fnmatch
import re
import sys
from collections import defaultdict
from pathlib import Path

from dependency_graph import TYPE_USAGE_TARGETS, CycleError, DependencyGraph
from schema_replay import ObjectState, diff_snapshots, replay_files
from sql_statements import (
    AlterOp,
    EdgeKind,
    MigrationFile,
    SourceLocation,
    SqlStatement,
    StatementKind,
    iter_statements,
    parse_migration,
)
from validate_migrations import Severity, ValidationIssue, check_circular_dependencies


DEFAULT_GROUP = "misc"
PREVIEW_LINES = 50
DIFF_PREVIEW_LINES = 200
RULE_LINE = "-- " + "=" * 77

HEURISTIC_KIND_GROUPS = {
    StatementKind.CREATE_EXTENSION: "foundation",
    StatementKind.CREATE_TYPE: "foundation",
    StatementKind.CREATE_FUNCTION: "functions",
    StatementKind.CREATE_TABLE: "tables",
    StatementKind.CREATE_INDEX: "tables",
    StatementKind.CREATE_TRIGGER: "tables",
    StatementKind.CREATE_VIEW: "views",
    StatementKind.CREATE_MATERIALIZED_VIEW: "views",
}


class ConsolidationError(Exception):
    def __init__(self, issues: list[ValidationIssue]):
        self.issues = list(issues)
        super().__init__("; ".join(f"{issue.code}: {issue.message}" for issue in self.issues))


@dataclasses.dataclass(frozen=True)
class GroupRule:
    name: str
    description: str = ""
    objects: tuple[str, ...] = ()
    files: tuple[str, ...] = ()

    def matches_object(self, *names: str) -> bool:
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in self.objects for name in names if name)

    def matches_file(self, file_name: str) -> bool:
        return any(file_name.startswith(prefix) for prefix in self.files)


@dataclasses.dataclass
class GroupAssignment:
    """Ordered group rules. With ``heuristic`` set, object kind picks the group."""

    groups: list[GroupRule] = dataclasses.field(default_factory=list)
    default_group: str = DEFAULT_GROUP
    heuristic: bool = False

    @classmethod
    def kind_heuristic(cls) -> "GroupAssignment":
        return cls(
            groups=[
                GroupRule("foundation", "Extensions and types"),
                GroupRule("functions", "Functions and procedures"),
                GroupRule("tables", "Tables with their indexes and triggers"),
                GroupRule("views", "Views and materialized views"),
            ],
            heuristic=True,
        )

    def resolve(
        self,
        names: tuple[str, ...],
        kind: StatementKind,
        file_name: str,
        owner_group: str | None = None,
    ) -> str:
        for group in self.groups:
            if group.matches_object(*names):
                return group.name
        if owner_group:
            return owner_group
        for group in self.groups:
            if group.matches_file(file_name):
                return group.name
        if self.heuristic:
            return HEURISTIC_KIND_GROUPS.get(kind, self.default_group)
        return self.default_group

    def rank(self, name: str) -> int:
        for idx, group in enumerate(self.groups):
            if group.name == name:
                return idx
        return len(self.groups) + (1 if name == self.default_group else 0)

    def description(self, name: str) -> str:
        for group in self.groups:
            if group.name == name:
                return group.description
        return "Statements without a matching group" if name == self.default_group else ""


@dataclasses.dataclass(frozen=True)
class PlannedStatement:
    sql: str
    source: SourceLocation
    object_name: str | None = None


@dataclasses.dataclass
class ConsolidationGroup:
    name: str
    description: str
    file_name: str
    statements: list[PlannedStatement]

    @property
    def identifier(self) -> str:
        return self.file_name[:-4] if self.file_name.endswith(".sql") else self.file_name

    @property
    def source_files(self) -> list[str]:
        seen = {(st.source.ordinal, st.source.file_name) for st in self.statements}
        return [name for _, name in sorted(seen)]

    def render(self) -> str:
        lines = [
            RULE_LINE,
            f"-- {self.identifier}",
        ]
        if self.description:
            lines.append(f"-- {self.description}")
        lines += [
            RULE_LINE,
            "-- Consolidated migration (generated, do not edit by hand)",
            "-- Sources: " + ", ".join(self.source_files),
            RULE_LINE,
            "",
        ]
        current = object()
        for planned in self.statements:
            if planned.object_name != current:
                current = planned.object_name
                lines.append(f"-- {planned.object_name or 'unattached'} ({planned.source})")
            lines.append(planned.sql)
            lines.append("")
        return "\n".join(lines)


@dataclasses.dataclass
class ConsolidationPlan:
    groups: list[ConsolidationGroup]
    source_files: list[str] = dataclasses.field(default_factory=list)
    original_lines: int = 0
    dropped_statements: int = 0

    @property
    def consolidated_lines(self) -> int:
        return sum(len(group.render().splitlines()) for group in self.groups)

    def reduction_percentage(self) -> float:
        if self.original_lines == 0:
            return 0.0
        return (1.0 - self.consolidated_lines / self.original_lines) * 100.0

    def statements(self) -> list[PlannedStatement]:
        return [st for group in self.groups for st in group.statements]

    def render_summary(self) -> str:
        lines = [
            "Consolidation plan",
            f"before: {len(self.source_files)} files, {self.original_lines} lines",
            f"after:  {len(self.groups)} files, {self.consolidated_lines} lines",
            f"reduction: {self.reduction_percentage():.1f}%",
            f"statements removed: {self.dropped_statements}",
            "",
        ]
        for idx, group in enumerate(self.groups, 1):
            suffix = f" - {group.description}" if group.description else ""
            lines.append(f"{idx}. {group.file_name}{suffix}")
            for source in group.source_files:
                lines.append(f"   <- {source}")
        return "\n".join(lines) + "\n"

    def render_dry_run(self) -> str:
        out = [self.render_summary(), f"Preview (first {PREVIEW_LINES} lines per file)"]
        for group in self.groups:
            content = group.render().splitlines()
            out.append("")
            out.append(f"### {group.file_name} ###")
            for idx, line in enumerate(content[:PREVIEW_LINES], 1):
                out.append(f"{idx:4} | {line}")
            if len(content) > PREVIEW_LINES:
                out.append("     ... (truncated)")
        return "\n".join(out) + "\n"


def _terminated(sql: str) -> str:
    sql = sql.strip()
    return sql if sql.endswith(";") else sql + ";"


def _add_if_not_exists(sql: str, keyword: str) -> str:
    return re.sub(
        rf"^(\s*CREATE\s+(?:[A-Za-z]+\s+)*?{keyword})(?=\s)",
        r"\1 IF NOT EXISTS",
        sql,
        count=1,
        flags=re.I,
    )


def _or_replace(sql: str) -> str:
    return re.sub(r"^(\s*CREATE)\s+", r"\1 OR REPLACE ", sql, count=1, flags=re.I)


def guard_type(sql: str, type_name: str) -> str:
    typname = type_name.rsplit(".", 1)[-1].replace("'", "''")
    body = sql.strip().rstrip(";").strip()
    return (
        "DO $$\n"
        "BEGIN\n"
        f"    IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = '{typname}') THEN\n"
        f"        {body};\n"
        "    END IF;\n"
        "END $$;"
    )


def make_idempotent(stmt: SqlStatement) -> str:
    """Rewrite a create so that replaying it against an existing schema is a no-op."""
    sql = _terminated(stmt.raw_text)
    kind = stmt.kind
    if kind is StatementKind.CREATE_INDEX:
        # Consolidated groups run inside a transaction.
        sql = re.sub(r"(\bINDEX\s+)CONCURRENTLY\s+", r"\1", sql, count=1, flags=re.I)
        return sql if stmt.is_idempotent_guarded else _add_if_not_exists(sql, "INDEX")
    if kind is StatementKind.CREATE_TABLE:
        return sql if stmt.is_idempotent_guarded else _add_if_not_exists(sql, "TABLE")
    if kind is StatementKind.CREATE_EXTENSION:
        return sql if stmt.is_idempotent_guarded else _add_if_not_exists(sql, "EXTENSION")
    if kind is StatementKind.CREATE_MATERIALIZED_VIEW:
        return sql if stmt.is_idempotent_guarded else _add_if_not_exists(sql, r"MATERIALIZED\s+VIEW")
    if kind in (StatementKind.CREATE_VIEW, StatementKind.CREATE_FUNCTION, StatementKind.CREATE_TRIGGER):
        return sql if stmt.or_replace else _or_replace(sql)
    if kind is StatementKind.CREATE_TYPE:
        return sql if stmt.is_idempotent_guarded else guard_type(sql, stmt.target_object)
    return sql


def _position(location: SourceLocation) -> tuple:
    return (location.ordinal, location.file_name, location.statement_index)


def _is_loose_create(stmt: SqlStatement) -> bool:
    return stmt.raw_text.lstrip()[:6].upper() == "CREATE"


# Statements that invalidate SQL written against the table before them.
BREAKING_OPS = frozenset({AlterOp.RENAME_TABLE, AlterOp.RENAME_COLUMN, AlterOp.DROP_COLUMN})


def _breaks_users(stmt: SqlStatement) -> bool:
    return stmt.kind.is_alter and any(action.op in BREAKING_OPS for action in stmt.actions)


def _unit_name(node: str, idx: int) -> str:
    return node if idx == 0 else f"{node}#{idx}"


def _object_names(states: dict[str, ObjectState]) -> dict[str, str]:
    """Every name a live object has had, mapped to its node."""
    names = {node: node for node in states}
    for node, state in states.items():
        for stmt in state.attached:
            for action in stmt.actions:
                if action.op is AlterOp.RENAME_TABLE and action.new_name:
                    names[action.new_name] = node
    return names


@dataclasses.dataclass
class _Unit:
    state: ObjectState
    stmt: SqlStatement

    def key(self) -> tuple:
        return (_position(self.state.create.location), _position(self.stmt.location))


def build_unit_graph(
    states: dict[str, ObjectState], names: dict[str, str]
) -> tuple[DependencyGraph, dict[str, _Unit]]:
    """Statement-level graph over the live objects.

    Each object's statements keep their source order. A rename or column drop
    waits for every statement written against the table before it, and every
    later statement using the table waits for it.
    """
    graph = DependencyGraph()
    units: dict[str, _Unit] = {}
    for node, state in states.items():
        for idx, stmt in enumerate(state.statements()):
            unit = _unit_name(node, idx)
            graph.add_node(unit)
            units[unit] = _Unit(state, stmt)
            if idx:
                graph.add_edge(unit, _unit_name(node, idx - 1), EdgeKind.TABLE_OWNER)

    users: dict[str, list[str]] = defaultdict(list)
    for unit, item in units.items():
        node = item.state.create.target_object
        for ref, kind in item.stmt.references.items():
            target = names.get(ref)
            if target is None or target == node:
                continue
            if kind is EdgeKind.TYPE_USAGE and states[target].kind not in TYPE_USAGE_TARGETS:
                continue
            graph.add_edge(unit, target, kind)
            users[target].append(unit)

    for unit, item in units.items():
        if not _breaks_users(item.stmt):
            continue
        cut = _position(item.stmt.location)
        for user in users[item.state.create.target_object]:
            if _position(units[user].stmt.location) < cut:
                graph.add_edge(unit, user, EdgeKind.TABLE_OWNER)
            else:
                graph.add_edge(user, unit, EdgeKind.TABLE_OWNER)
    return graph, units


class _Resolver:
    def __init__(self, assignment: GroupAssignment, states: dict[str, ObjectState], aliases: dict[str, str]):
        self.assignment = assignment
        self.states = states
        self.aliases = aliases
        self.cache: dict[str, str] = {}

    def owner_group(self, state: ObjectState) -> str | None:
        if not state.owner:
            return None
        owner = self.states.get(self.aliases.get(state.owner, state.owner))
        if owner is None or owner is state:
            return None
        return self.group(owner)

    def group(self, state: ObjectState, file_name: str | None = None) -> str:
        node = state.create.target_object
        if file_name is None and node in self.cache:
            return self.cache[node]
        group = self.assignment.resolve(
            (state.name, node),
            state.kind,
            file_name or state.create.location.file_name,
            self.owner_group(state),
        )
        if file_name is None:
            self.cache[node] = group
        return group

    def unit_groups(self, graph: DependencyGraph, units: dict[str, _Unit]) -> dict[str, str]:
        """Group per statement. A breaking ALTER, and everything after it on the same
        object, moves to the latest-ranked group among the statements it must follow."""
        groups: dict[str, str] = {}
        for node, state in self.states.items():
            group = self.group(state)
            for idx, stmt in enumerate(state.statements()):
                unit = _unit_name(node, idx)
                if _breaks_users(stmt):
                    earlier = [groups.get(dep) or self.group(units[dep].state) for dep in graph.dependencies(unit)]
                    group = max([group, *earlier], key=self.assignment.rank)
                groups[unit] = group
        return groups


def cross_group_duplicates(
    files: list[MigrationFile], states: dict[str, ObjectState], resolver: _Resolver
) -> list[ValidationIssue]:
    creates: dict[str, list[SourceLocation]] = defaultdict(list)
    for stmt in iter_statements(files):
        if stmt.kind.is_create and stmt.target_object:
            creates[stmt.target_object].append(stmt.location)
    issues = []
    for node, state in sorted(states.items()):
        by_group: dict[str, list[SourceLocation]] = defaultdict(list)
        for loc in creates.get(node, []):
            by_group[resolver.group(state, loc.file_name)].append(loc)
        if len(by_group) < 2:
            continue
        issues.append(
            ValidationIssue(
                code="DUP001",
                severity=Severity.CRITICAL,
                message=f"'{state.name}' is created in files assigned to different groups: "
                + ", ".join(sorted(by_group)),
                locations=tuple(sorted(loc for locs in by_group.values() for loc in locs)),
                object_name=state.name,
                suggestion="Assign the object to one group explicitly with an object pattern.",
            )
        )
    return issues


def consolidate(
    files: list[MigrationFile],
    graph: DependencyGraph,
    group_assignment: GroupAssignment | None = None,
    verify: bool = True,
) -> ConsolidationPlan:
    """Build the consolidation plan, or raise ConsolidationError with the blocking issues."""
    assignment = group_assignment or GroupAssignment.kind_heuristic()
    cycles = check_circular_dependencies(files, graph)
    if cycles:
        raise ConsolidationError(cycles)

    model = replay_files(files)
    ordered = sorted(model.objects.values(), key=lambda s: _position(s.create.location))
    states = {state.create.target_object: state for state in ordered}
    names = _object_names(states)
    unit_graph, units = build_unit_graph(states, names)

    resolver = _Resolver(assignment, states, names)
    duplicates = cross_group_duplicates(files, states, resolver)
    if duplicates:
        raise ConsolidationError(duplicates)

    unit_groups = resolver.unit_groups(unit_graph, units)
    members: dict[str, list[str]] = defaultdict(list)
    for unit, group in unit_groups.items():
        members[group].append(unit)
    loose_creates = [stmt for stmt in model.loose if _is_loose_create(stmt)]
    loose_rest = [stmt for stmt in model.loose if not _is_loose_create(stmt)]
    if loose_rest or (loose_creates and not members):
        members.setdefault(assignment.default_group, [])

    group_graph = DependencyGraph()
    for name in members:
        group_graph.add_node(name)
        group_graph.definitions[name] = sorted(
            (units[unit].stmt.location for unit in members[name]), key=_position
        )
    for src, dst, kind in unit_graph.edges():
        group_graph.add_edge(unit_groups[src], unit_groups[dst], kind)

    group_cycles = group_graph.strongly_connected_components()
    if group_cycles:
        raise ConsolidationError(
            [
                ValidationIssue(
                    code="GRP001",
                    severity=Severity.CRITICAL,
                    message="groups depend on each other: " + ", ".join(cycle),
                    object_name=cycle[0],
                    suggestion="Move the objects that link these groups into one group.",
                )
                for cycle in group_cycles
            ]
        )

    def group_key(name: str) -> tuple:
        first = group_graph.first_location(name)
        return (assignment.rank(name), _position(first) if first else (float("inf"), "", 0), name)

    def unit_key(unit: str) -> tuple:
        return (*units[unit].key(), unit)

    groups: list[ConsolidationGroup] = []
    order = group_graph.topological_order(key=group_key)
    for position, name in enumerate(order):
        planned: list[PlannedStatement] = []
        if position == 0:
            planned += [PlannedStatement(_terminated(stmt.raw_text), stmt.location) for stmt in loose_creates]
        try:
            group_units = unit_graph.topological_order(members[name], key=unit_key)
        except CycleError as exc:
            raise ConsolidationError([_ordering_issue(name, [units[unit] for unit in exc.members])]) from exc
        for unit in group_units:
            item = units[unit]
            sql = make_idempotent(item.stmt) if item.stmt is item.state.create else _terminated(item.stmt.raw_text)
            planned.append(PlannedStatement(sql, item.stmt.location, item.state.name))
        if name == assignment.default_group:
            planned += [PlannedStatement(_terminated(stmt.raw_text), stmt.location) for stmt in loose_rest]
        if planned:
            groups.append(
                ConsolidationGroup(
                    name=name,
                    description=assignment.description(name),
                    file_name="",
                    statements=planned,
                )
            )
    for idx, group in enumerate(groups, 1):
        group.file_name = f"{idx:02d}_{group.name}.sql"

    total = sum(len(f.statements) for f in files)
    plan = ConsolidationPlan(
        groups=groups,
        source_files=[f.name for f in files],
        original_lines=sum(f.line_count for f in files),
        dropped_statements=total - sum(len(g.statements) for g in groups),
    )
    if verify:
        mismatches = verify_equivalence(files, plan)
        if mismatches:
            raise ConsolidationError(mismatches)
    return plan


def _ordering_issue(group: str, stuck: list[_Unit]) -> ValidationIssue:
    stuck = sorted(stuck, key=_Unit.key)
    return ValidationIssue(
        code="CIRC001",
        severity=Severity.CRITICAL,
        message=f"statements in group {group} cannot be ordered: "
        + ", ".join(sorted({item.state.name for item in stuck})),
        locations=tuple(item.stmt.location for item in stuck),
        object_name=stuck[0].state.name,
        suggestion="Split the migration that renames or drops columns used by these objects.",
    )


def replay_plan(plan: ConsolidationPlan) -> list[MigrationFile]:
    return [parse_migration(group.file_name, group.render(), ordinal=idx) for idx, group in enumerate(plan.groups, 1)]


def verify_equivalence(files: list[MigrationFile], plan: ConsolidationPlan) -> list[ValidationIssue]:
    """Replay both histories from an empty schema and compare them structurally."""
    expected = replay_files(files).snapshot()
    actual = replay_files(replay_plan(plan)).snapshot()
    problems = diff_snapshots(expected, actual)
    if not problems:
        return []
    return [
        ValidationIssue(
            code="EQV001",
            severity=Severity.CRITICAL,
            message="consolidated schema differs from the original history: " + "; ".join(problems),
            suggestion="Assign the affected objects to groups explicitly or split the offending migration.",
        )
    ]


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def write_plan(plan: ConsolidationPlan, output_dir: Path) -> list[Path]:
    written = []
    for group in plan.groups:
        path = output_dir / group.file_name
        write_text(path, group.render())
        written.append(path)
    return written


def check_equal(path: Path, generated: str) -> bool:
    if not path.exists():
        print(f"[check] missing file: {path}", file=sys.stderr)
        return False

    existing = path.read_text(encoding="utf-8")
    if existing == generated:
        return True

    print(f"[check] drift detected: {path}", file=sys.stderr)
    diff = difflib.unified_diff(
        existing.splitlines(),
        generated.splitlines(),
        fromfile=str(path),
        tofile=f"generated:{path}",
        lineterm="",
    )
    for idx, line in enumerate(diff):
        if idx >= DIFF_PREVIEW_LINES:
            print("... (diff truncated)", file=sys.stderr)
            break
        print(line, file=sys.stderr)
    return False


def check_plan(plan: ConsolidationPlan, output_dir: Path) -> bool:
    ok = all([check_equal(output_dir / group.file_name, group.render()) for group in plan.groups])
    expected = {group.file_name for group in plan.groups}
    if output_dir.is_dir():
        for path in sorted(output_dir.glob("*.sql")):
            if path.name not in expected:
                print(f"[check] unexpected file: {path}", file=sys.stderr)
                ok = False
    return ok


def plan_from_files(files: list[MigrationFile]) -> ConsolidationPlan:
    """Treat every file as one group, in file order. Used to apply a consolidated directory."""
    groups = [
        ConsolidationGroup(
            name=migration.stem,
            description="",
            file_name=migration.name,
            statements=[
                PlannedStatement(_terminated(stmt.raw_text), stmt.location, stmt.subject)
                for stmt in migration.statements
            ],
        )
        for migration in files
    ]
    return ConsolidationPlan(
        groups=groups,
        source_files=[f.name for f in files],
        original_lines=sum(f.line_count for f in files),
    )
