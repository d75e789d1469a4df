#!/usr/bin/env python3
"""Rule-based structural checks over parsed migration files."""

from __future__ import annotations

import dataclasses
import enum
import functools
import re
from collections import defaultdict
from typing import Callable

from dependency_graph import DependencyGraph, build_graph
from schema_replay import SchemaModel
from sql_statements import (
    AlterOp,
    EdgeKind,
    MigrationFile,
    SourceLocation,
    StatementKind,
    iter_statements,
    normalize_type,
)


class Severity(enum.IntEnum):
    CRITICAL = 0
    WARNING = 1
    INFO = 2

    def __str__(self) -> str:
        return self.name


@dataclasses.dataclass(frozen=True)
class ValidationIssue:
    code: str
    severity: Severity
    message: str
    locations: tuple[SourceLocation, ...] = ()
    object_name: str | None = None
    suggestion: str | None = None

    def sort_key(self) -> tuple:
        first = self.locations[0] if self.locations else None
        loc_key = (first.ordinal, first.file_name, first.statement_index) if first else (-1, "", -1)
        return (int(self.severity), self.code, loc_key, self.message)

    def render(self) -> str:
        lines = [f"[{self.severity}] {self.code}: {self.message}"]
        if self.locations:
            lines.append("  at: " + ", ".join(str(loc) for loc in self.locations))
        if self.object_name:
            lines.append(f"  object: {self.object_name}")
        if self.suggestion:
            lines.append(f"  fix: {self.suggestion}")
        return "\n".join(lines)


Rule = Callable[[list[MigrationFile], DependencyGraph], list[ValidationIssue]]

RULES: dict[str, Rule] = {}


def rule(code: str) -> Callable[[Rule], Rule]:
    def register(func: Rule) -> Rule:
        if code in RULES:
            raise ValueError(f"duplicate rule code: {code}")
        RULES[code] = func
        return func

    return register


@dataclasses.dataclass(frozen=True)
class RuleSettings:
    disabled: frozenset[str] = frozenset()
    drop_recreate_max_file_distance: int | None = None


@rule("DUP001")
def check_duplicate_definitions(files: list[MigrationFile], graph: DependencyGraph) -> list[ValidationIssue]:
    creates: dict[str, list[SourceLocation]] = defaultdict(list)
    for stmt in iter_statements(files):
        if stmt.kind.is_create and stmt.target_object:
            creates[stmt.target_object].append(stmt.location)
    issues = []
    for name, locations in sorted(creates.items()):
        if len({loc.file_name for loc in locations}) < 2:
            continue
        issues.append(
            ValidationIssue(
                code="DUP001",
                severity=Severity.CRITICAL,
                message=f"'{name}' is created in {len(locations)} places",
                locations=tuple(locations),
                object_name=name,
                suggestion="Keep a single definition and express later changes as ALTER statements.",
            )
        )
    return issues


@rule("CASC001")
def check_cascade_usage(files: list[MigrationFile], graph: DependencyGraph) -> list[ValidationIssue]:
    issues = []
    for stmt in iter_statements(files):
        if stmt.has_cascade and (stmt.kind.is_drop or stmt.kind.is_alter):
            issues.append(
                ValidationIssue(
                    code="CASC001",
                    severity=Severity.WARNING,
                    message=f"{stmt.kind.value} {stmt.target_object} uses CASCADE; dependent objects may be dropped",
                    locations=(stmt.location,),
                    object_name=stmt.target_object,
                    suggestion="Drop dependents explicitly and remove CASCADE.",
                )
            )
    return issues


@rule("CIRC001")
def check_circular_dependencies(files: list[MigrationFile], graph: DependencyGraph) -> list[ValidationIssue]:
    issues = []
    for members in graph.strongly_connected_components():
        locations = tuple(sorted(loc for loc in (graph.first_location(m) for m in members) if loc is not None))
        issues.append(
            ValidationIssue(
                code="CIRC001",
                severity=Severity.CRITICAL,
                message="circular dependency between " + ", ".join(members),
                locations=locations,
                object_name=members[0],
                suggestion="Split one definition so the objects can be created in order.",
            )
        )
    return issues


@rule("IDEM001")
def check_missing_create_guard(files: list[MigrationFile], graph: DependencyGraph) -> list[ValidationIssue]:
    kinds = (StatementKind.CREATE_TABLE, StatementKind.CREATE_INDEX, StatementKind.CREATE_TYPE)
    return [
        ValidationIssue(
            code="IDEM001",
            severity=Severity.WARNING,
            message=f"{stmt.kind.value} {stmt.target_object} has no IF NOT EXISTS guard",
            locations=(stmt.location,),
            object_name=stmt.target_object,
            suggestion="Use CREATE ... IF NOT EXISTS (or a pg_type guard for types).",
        )
        for stmt in iter_statements(files)
        if stmt.kind in kinds and not stmt.is_idempotent_guarded
    ]


@rule("IDEM002")
def check_missing_drop_guard(files: list[MigrationFile], graph: DependencyGraph) -> list[ValidationIssue]:
    return [
        ValidationIssue(
            code="IDEM002",
            severity=Severity.WARNING,
            message=f"{stmt.kind.value} {stmt.target_object} has no IF EXISTS guard",
            locations=(stmt.location,),
            object_name=stmt.target_object,
            suggestion="Use DROP ... IF EXISTS.",
        )
        for stmt in iter_statements(files)
        if stmt.kind.is_drop and not stmt.is_idempotent_guarded
    ]


DROP_RECREATE_KINDS = {
    StatementKind.DROP_TABLE: StatementKind.CREATE_TABLE,
    StatementKind.DROP_MATERIALIZED_VIEW: StatementKind.CREATE_MATERIALIZED_VIEW,
}


@rule("DCPAT001")
def check_drop_recreate(
    files: list[MigrationFile],
    graph: DependencyGraph,
    max_file_distance: int | None = None,
) -> list[ValidationIssue]:
    """A dropped table or materialized view created again later loses its rows.

    ``max_file_distance`` limits how many files apart the pair may be (0 = same file).
    """
    pending: dict[tuple[StatementKind, str], tuple[int, SourceLocation]] = {}
    issues = []
    for position, migration in enumerate(files):
        for stmt in migration.statements:
            if stmt.kind in DROP_RECREATE_KINDS:
                for name in stmt.dropped_objects:
                    pending[(DROP_RECREATE_KINDS[stmt.kind], name)] = (position, stmt.location)
                continue
            key = (stmt.kind, stmt.target_object)
            if key not in pending:
                continue
            drop_position, drop_location = pending.pop(key)
            if max_file_distance is not None and position - drop_position > max_file_distance:
                continue
            issues.append(
                ValidationIssue(
                    code="DCPAT001",
                    severity=Severity.CRITICAL,
                    message=f"'{stmt.target_object}' is dropped and then recreated; existing rows are lost",
                    locations=(drop_location, stmt.location),
                    object_name=stmt.target_object,
                    suggestion="Use ALTER TABLE to evolve the object in place.",
                )
            )
    return issues


TYPE_RE = re.compile(r"^(?P<base>[A-Z ]+?)\s*(?:\((?P<p>\d+)(?:,\s*(?P<s>\d+))?\))?(?P<array>\[\])?$")
INTEGER_WIDTH = {"SMALLINT": 2, "INT2": 2, "INTEGER": 4, "INT": 4, "INT4": 4, "BIGINT": 8, "INT8": 8}
FLOAT_WIDTH = {"REAL": 4, "FLOAT4": 4, "DOUBLE PRECISION": 8, "FLOAT8": 8, "FLOAT": 8}
STRING_TYPES = {"TEXT", "VARCHAR", "CHARACTER VARYING", "CHAR", "CHARACTER", "BPCHAR", "CITEXT"}
TIMESTAMP_TYPES = {"TIMESTAMP", "TIMESTAMPTZ", "TIMESTAMP WITH TIME ZONE", "TIMESTAMP WITHOUT TIME ZONE"}


def _split_type(col_type: str) -> tuple[str, int | None, int | None, bool] | None:
    m = TYPE_RE.match(normalize_type(col_type))
    if not m:
        return None
    p = int(m.group("p")) if m.group("p") else None
    s = int(m.group("s")) if m.group("s") else None
    return m.group("base").strip(), p, s, bool(m.group("array"))


def is_narrowing(old: str, new: str) -> bool:
    """True when converting ``old`` to ``new`` can truncate or reject existing values."""
    a, b = _split_type(old), _split_type(new)
    if a is None or b is None or a[3] != b[3]:
        return False
    old_base, old_p, old_s, _ = a
    new_base, new_p, new_s, _ = b
    if old_base in STRING_TYPES and new_base in STRING_TYPES:
        if new_p is None:
            return new_base in ("CHAR", "CHARACTER", "BPCHAR")
        return old_p is None or new_p < old_p
    if old_base in INTEGER_WIDTH and new_base in INTEGER_WIDTH:
        return INTEGER_WIDTH[new_base] < INTEGER_WIDTH[old_base]
    if old_base in FLOAT_WIDTH and new_base in FLOAT_WIDTH:
        return FLOAT_WIDTH[new_base] < FLOAT_WIDTH[old_base]
    if old_base in ("NUMERIC", "DECIMAL") and new_base in ("NUMERIC", "DECIMAL"):
        if new_p is None:
            return False
        if old_p is None:
            return True
        return new_p < old_p or (new_s or 0) < (old_s or 0)
    if (old_base in FLOAT_WIDTH or old_base in ("NUMERIC", "DECIMAL")) and new_base in INTEGER_WIDTH:
        return True
    if old_base in TIMESTAMP_TYPES and new_base == "DATE":
        return True
    return False


@rule("DATA001")
def check_type_narrowing(files: list[MigrationFile], graph: DependencyGraph) -> list[ValidationIssue]:
    model = SchemaModel()
    issues = []
    for stmt in iter_statements(files):
        if stmt.kind.is_alter:
            for action in stmt.actions:
                if action.op is not AlterOp.ALTER_TYPE:
                    continue
                old = model.column_type(stmt.target_object, action.column)
                if old and is_narrowing(old, action.col_type or ""):
                    issues.append(
                        ValidationIssue(
                            code="DATA001",
                            severity=Severity.WARNING,
                            message=(
                                f"{stmt.target_object}.{action.column} narrows from {old} "
                                f"to {normalize_type(action.col_type or '')}"
                            ),
                            locations=(stmt.location,),
                            object_name=stmt.target_object,
                            suggestion="Check existing values fit, or add a USING clause.",
                        )
                    )
        model.apply(stmt)
    return issues


BACKFILL_RE = re.compile(r"^\s*(UPDATE|INSERT)\b", flags=re.I)


def _mentions(text: str, name: str) -> bool:
    return re.search(rf"(?<![\w.]){re.escape(name)}(?!\w)", text, flags=re.I) is not None


@rule("DATA002")
def check_drop_column_backfill(files: list[MigrationFile], graph: DependencyGraph) -> list[ValidationIssue]:
    issues = []
    backfills: list[str] = []
    for stmt in iter_statements(files):
        if stmt.kind is StatementKind.OTHER and BACKFILL_RE.match(stmt.raw_text):
            backfills.append(stmt.raw_text)
            continue
        if not stmt.kind.is_alter:
            continue
        table = stmt.target_object
        for action in stmt.actions:
            if action.op is not AlterOp.DROP_COLUMN or not action.column:
                continue
            if any(_mentions(text, table) and _mentions(text, action.column) for text in backfills):
                continue
            issues.append(
                ValidationIssue(
                    code="DATA002",
                    severity=Severity.WARNING,
                    message=f"column {table}.{action.column} is dropped without an earlier backfill",
                    locations=(stmt.location,),
                    object_name=table,
                    suggestion="Copy the data elsewhere (UPDATE/INSERT ... SELECT) before dropping the column.",
                )
            )
    return issues


@rule("DATA003")
def check_not_null_without_default(files: list[MigrationFile], graph: DependencyGraph) -> list[ValidationIssue]:
    issues = []
    for stmt in iter_statements(files):
        if not stmt.kind.is_alter:
            continue
        for action in stmt.actions:
            if action.op is not AlterOp.ADD_COLUMN:
                continue
            suffix = action.suffix
            if re.search(r"\bNOT\s+NULL\b", suffix, flags=re.I) and not re.search(
                r"\bDEFAULT\b|\bGENERATED\b", suffix, flags=re.I
            ):
                issues.append(
                    ValidationIssue(
                        code="DATA003",
                        severity=Severity.WARNING,
                        message=f"{stmt.target_object}.{action.column} is added NOT NULL without a DEFAULT",
                        locations=(stmt.location,),
                        object_name=stmt.target_object,
                        suggestion="Add a DEFAULT, or add the column nullable and backfill first.",
                    )
                )
    return issues


@rule("PARSE001")
def check_parse_warnings(files: list[MigrationFile], graph: DependencyGraph) -> list[ValidationIssue]:
    return [
        ValidationIssue(
            code="PARSE001",
            severity=Severity.INFO,
            message=f"statement could not be parsed: {warning.message}",
            locations=(warning.location,),
        )
        for migration in files
        for warning in migration.parse_warnings
    ]


@rule("VDEP001")
def check_view_forward_references(files: list[MigrationFile], graph: DependencyGraph) -> list[ValidationIssue]:
    issues = []
    view_kinds = (StatementKind.CREATE_VIEW, StatementKind.CREATE_MATERIALIZED_VIEW)
    for stmt in iter_statements(files):
        if stmt.kind not in view_kinds:
            continue
        for ref, kind in sorted(stmt.references.items()):
            if kind is EdgeKind.TYPE_USAGE:
                continue
            defined = graph.first_location(ref)
            if defined is None or (defined.ordinal, defined.file_name) <= (
                stmt.location.ordinal,
                stmt.location.file_name,
            ):
                continue
            issues.append(
                ValidationIssue(
                    code="VDEP001",
                    severity=Severity.WARNING,
                    message=f"view '{stmt.target_object}' references '{ref}', which is defined in a later file",
                    locations=(stmt.location, defined),
                    object_name=stmt.target_object,
                    suggestion=f"Define '{ref}' before the view or move the view later.",
                )
            )
    return issues


def configured_rules(settings: RuleSettings | None = None) -> list[Rule]:
    settings = settings or RuleSettings()
    unknown = settings.disabled - set(RULES)
    if unknown:
        raise ValueError(f"rules.disabled: unknown rule codes {sorted(unknown)}")
    rules: list[Rule] = []
    for code, func in RULES.items():
        if code in settings.disabled:
            continue
        if code == "DCPAT001":
            func = functools.partial(func, max_file_distance=settings.drop_recreate_max_file_distance)
        rules.append(func)
    return rules


def validate(
    files: list[MigrationFile],
    graph: DependencyGraph,
    rules: list[Rule] | None = None,
) -> list[ValidationIssue]:
    """Run every rule and return the combined issues in a stable order."""
    if rules is None:
        rules = configured_rules()
    issues: list[ValidationIssue] = []
    for check in rules:
        issues.extend(check(files, graph))
    return sorted(issues, key=ValidationIssue.sort_key)


@dataclasses.dataclass
class ValidationReport:
    issues: list[ValidationIssue]
    files_analyzed: int = 0
    total_statements: int = 0

    def count(self, severity: Severity) -> int:
        return sum(1 for issue in self.issues if issue.severity is severity)

    @property
    def has_critical(self) -> bool:
        return self.count(Severity.CRITICAL) > 0

    def by_code(self, code: str) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.code == code]

    def render(self, verbose: bool = False) -> str:
        lines = [
            "Migration validation report",
            f"files: {self.files_analyzed}  statements: {self.total_statements}",
            (
                f"critical: {self.count(Severity.CRITICAL)}  "
                f"warning: {self.count(Severity.WARNING)}  "
                f"info: {self.count(Severity.INFO)}"
            ),
        ]
        if not self.issues:
            lines.append("")
            lines.append("No issues found.")
            return "\n".join(lines) + "\n"
        for severity in Severity:
            selected = [issue for issue in self.issues if issue.severity is severity]
            if not selected or (severity is Severity.INFO and not verbose):
                continue
            lines.append("")
            lines.append(f"== {severity} ({len(selected)}) ==")
            for issue in selected:
                lines.append(issue.render() if verbose else f"{issue.code} {issue.message} [{_first(issue)}]")
        return "\n".join(lines) + "\n"


def _first(issue: ValidationIssue) -> str:
    return str(issue.locations[0]) if issue.locations else "-"


def build_report(
    files: list[MigrationFile],
    graph: DependencyGraph | None = None,
    settings: RuleSettings | None = None,
) -> ValidationReport:
    graph = graph if graph is not None else build_graph(files)
    issues = validate(files, graph, configured_rules(settings))
    return ValidationReport(
        issues=issues,
        files_analyzed=len(files),
        total_statements=sum(len(f.statements) for f in files),
    )


def render_safety_checklist(report: ValidationReport) -> str:
    lines = [
        "Safe migration checklist",
        "",
        "[ ] 1. Before running",
        "    [ ] database backup taken",
        "    [ ] migrations rehearsed on a staging copy",
        "    [ ] rollback plan written down",
    ]
    cascades = report.by_code("CASC001")
    if cascades:
        lines += [
            "",
            f"[ ] 2. CASCADE usage ({len(cascades)})",
            "    [ ] list the dependent objects CASCADE will remove",
            "    [ ] back up or migrate their data",
        ]
    data_issues = [issue for issue in report.issues if issue.code.startswith("DATA") or issue.code == "DCPAT001"]
    if data_issues:
        lines += ["", f"[ ] 3. Data safety ({len(data_issues)})"]
        for name in sorted({issue.object_name for issue in data_issues if issue.object_name}):
            lines.append(f"    [ ] back up '{name}'")
    lines += [
        "",
        "[ ] 4. After running",
        "    [ ] every table is reachable",
        "    [ ] key queries return expected results",
        "    [ ] application health checks pass",
    ]
    return "\n".join(lines) + "\n"
