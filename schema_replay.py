#!/usr/bin/env python3
"""Structural replay of parsed statements against an empty schema.

The model tracks objects, table columns and what each object references. It
also tracks sequences, schemas and policies by name. It is used to decide which
statements survive consolidation and to compare two replays structurally.
"""

from __future__ import annotations

import dataclasses
from typing import Iterable

from sql_statements import AlterOp, MigrationFile, SqlStatement, StatementKind, iter_statements, normalize_type


CASCADE_DEPENDENT_KINDS = frozenset(
    {
        StatementKind.CREATE_VIEW,
        StatementKind.CREATE_MATERIALIZED_VIEW,
        StatementKind.CREATE_TRIGGER,
        StatementKind.CREATE_INDEX,
    }
)

# Dropped by name only; their creates stay OTHER statements.
NAMED_DROP_KINDS = frozenset({StatementKind.DROP_SEQUENCE, StatementKind.DROP_SCHEMA, StatementKind.DROP_POLICY})

NamedKey = tuple[str, str, str | None]


@dataclasses.dataclass
class ObjectState:
    name: str
    kind: StatementKind
    create: SqlStatement
    origin: str
    columns: dict[str, str] = dataclasses.field(default_factory=dict)
    owner: str | None = None
    sources: set[str] = dataclasses.field(default_factory=set)
    attached: list[SqlStatement] = dataclasses.field(default_factory=list)

    @property
    def object_type(self) -> str:
        return self.kind.object_type

    def statements(self) -> list[SqlStatement]:
        return [self.create, *self.attached]


@dataclasses.dataclass
class SchemaModel:
    objects: dict[str, ObjectState] = dataclasses.field(default_factory=dict)
    loose: list[SqlStatement] = dataclasses.field(default_factory=list)
    named: dict[NamedKey, SqlStatement] = dataclasses.field(default_factory=dict)

    def apply(self, stmt: SqlStatement) -> None:
        if stmt.kind.is_create:
            self._create(stmt)
        elif stmt.kind in NAMED_DROP_KINDS:
            for name in stmt.dropped_objects:
                self._drop_named((stmt.kind.object_type, name, stmt.owner), stmt.has_cascade)
        elif stmt.kind.is_drop:
            for name in stmt.dropped_objects:
                self._drop(name, stmt.has_cascade)
        elif stmt.kind.is_alter:
            self._alter(stmt)
        else:
            if stmt.named_object is not None:
                if stmt.named_object in self.named:
                    return
                self.named[stmt.named_object] = stmt
            if stmt.anchor and stmt.anchor in self.objects:
                self.objects[stmt.anchor].attached.append(stmt)
            else:
                self.loose.append(stmt)

    def column_type(self, table: str, column: str) -> str | None:
        state = self.objects.get(table)
        if state is None:
            return None
        return state.columns.get(column)

    def _create(self, stmt: SqlStatement) -> None:
        name = stmt.target_object
        existing = self.objects.get(name)
        if existing is not None and not stmt.or_replace:
            return
        state = ObjectState(
            name=name,
            kind=stmt.kind,
            create=stmt,
            origin=name,
            columns={c.name: normalize_type(c.col_type) for c in stmt.columns},
            owner=stmt.owner,
            sources=set(stmt.references),
        )
        if existing is not None:
            state.origin = existing.origin
            state.attached = existing.attached
        self.objects[name] = state

    def _drop(self, name: str, cascade: bool) -> None:
        if name not in self.objects:
            return
        doomed = {name}
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for other in self.objects.values():
                if other.name in doomed:
                    continue
                owned = other.owner == current
                dependent = cascade and current in other.sources and other.kind in CASCADE_DEPENDENT_KINDS
                if owned or dependent:
                    doomed.add(other.name)
                    frontier.append(other.name)
        for victim in doomed:
            self._forget(self.objects.pop(victim).attached)

    def _drop_named(self, key: NamedKey, cascade: bool) -> None:
        stmt = self.named.pop(key, None)
        if stmt is not None:
            self._discard(stmt)
        if key[0] != "SCHEMA" or not cascade:
            return
        prefix = key[1] + "."
        for name in [name for name in self.objects if name.startswith(prefix)]:
            self._drop(name, True)
        for other in [other for other in self.named if other[1].startswith(prefix)]:
            self._discard(self.named.pop(other))

    def _discard(self, stmt: SqlStatement) -> None:
        for bucket in [self.loose, *(state.attached for state in self.objects.values())]:
            for idx, held in enumerate(bucket):
                if held is stmt:
                    del bucket[idx]
                    return

    def _forget(self, statements: list[SqlStatement]) -> None:
        held = {id(stmt) for stmt in statements}
        for key in [key for key, stmt in self.named.items() if id(stmt) in held]:
            del self.named[key]

    def _alter(self, stmt: SqlStatement) -> None:
        state = self.objects.get(stmt.target_object)
        if state is None:
            self.loose.append(stmt)
            return
        state.attached.append(stmt)
        for action in stmt.actions:
            if action.op is AlterOp.ADD_COLUMN:
                if action.guarded and action.column in state.columns:
                    continue
                state.columns[action.column] = normalize_type(action.col_type or "")
            elif action.op is AlterOp.DROP_COLUMN:
                state.columns.pop(action.column, None)
            elif action.op is AlterOp.ALTER_TYPE and action.column in state.columns:
                state.columns[action.column] = normalize_type(action.col_type or "")
            elif action.op is AlterOp.RENAME_COLUMN and action.column in state.columns:
                state.columns[action.new_name] = state.columns.pop(action.column)
            elif action.op is AlterOp.RENAME_TABLE and action.new_name:
                self._rename(state, action.new_name)

    def _rename(self, state: ObjectState, new_name: str) -> None:
        old_name = state.name
        del self.objects[old_name]
        state.name = new_name
        self.objects[new_name] = state
        for other in self.objects.values():
            if other.owner == old_name:
                other.owner = new_name
            if old_name in other.sources:
                other.sources.discard(old_name)
                other.sources.add(new_name)
        for key in [key for key in self.named if key[2] == old_name]:
            self.named[(key[0], key[1], new_name)] = self.named.pop(key)

    def snapshot(self) -> dict[str, tuple[str, tuple[tuple[str, str], ...], str | None, tuple[str, ...]]]:
        """Comparable view: object name -> (object type, sorted columns, owner, sorted references)."""
        shot = {
            name: (state.object_type, tuple(sorted(state.columns.items())), state.owner, tuple(sorted(state.sources)))
            for name, state in self.objects.items()
        }
        for obj, name, table in self.named:
            shot[f"{name} on {table}" if table else name] = (obj, (), table, ())
        return dict(sorted(shot.items()))


def replay(statements: Iterable[SqlStatement]) -> SchemaModel:
    model = SchemaModel()
    for stmt in statements:
        model.apply(stmt)
    return model


def replay_files(files: list[MigrationFile]) -> SchemaModel:
    return replay(iter_statements(files))


def diff_snapshots(expected: dict, actual: dict) -> list[str]:
    """Human-readable structural differences, empty when the schemas match."""
    problems: list[str] = []
    for name in sorted(set(expected) - set(actual)):
        problems.append(f"missing {expected[name][0].lower()} {name}")
    for name in sorted(set(actual) - set(expected)):
        problems.append(f"unexpected {actual[name][0].lower()} {name}")
    for name in sorted(set(expected) & set(actual)):
        old_type, old_cols, old_owner, old_refs = expected[name]
        new_type, new_cols, new_owner, new_refs = actual[name]
        if old_type != new_type:
            problems.append(f"{name}: kind {old_type} != {new_type}")
        old_map, new_map = dict(old_cols), dict(new_cols)
        for col in sorted(set(old_map) - set(new_map)):
            problems.append(f"{name}: missing column {col}")
        for col in sorted(set(new_map) - set(old_map)):
            problems.append(f"{name}: unexpected column {col}")
        for col in sorted(set(old_map) & set(new_map)):
            if old_map[col] != new_map[col]:
                problems.append(f"{name}.{col}: type {old_map[col]} != {new_map[col]}")
        if old_owner != new_owner:
            problems.append(f"{name}: owner {old_owner} != {new_owner}")
        if old_refs != new_refs:
            problems.append(f"{name}: references {', '.join(old_refs) or '-'} != {', '.join(new_refs) or '-'}")
    return problems
