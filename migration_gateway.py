#!/usr/bin/env python3
"""Apply consolidation plans to PostgreSQL and read the migration tracking table."""

from __future__ import annotations

import dataclasses
import datetime as dt
import hashlib
import re
import sys
from typing import Any, Callable

import psycopg

from consolidate_migrations import ConsolidationGroup, ConsolidationPlan


DEFAULT_TRACKING_TABLE = "_migrate_history"
IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclasses.dataclass(frozen=True)
class AppliedRecord:
    identifier: str
    applied_at: dt.datetime
    checksum: str


@dataclasses.dataclass
class AppliedSummary:
    applied: list[str] = dataclasses.field(default_factory=list)
    skipped: list[str] = dataclasses.field(default_factory=list)


class ApplyError(Exception):
    """A group failed; every group listed in ``committed`` is applied and recorded."""

    def __init__(self, message: str, committed: list[str], failed_group: str, skipped: list[str] | None = None):
        self.committed = list(committed)
        self.failed_group = failed_group
        self.skipped = list(skipped or [])
        super().__init__(message)


def group_checksum(group: ConsolidationGroup) -> str:
    content = "\n".join(planned.sql for planned in group.statements)
    return hashlib.sha384(content.encode("utf-8")).hexdigest()


def quote_table(name: str) -> str:
    parts = name.split(".")
    for part in parts:
        if not IDENT_RE.fullmatch(part):
            raise ValueError(f"tracking_table: invalid identifier {name!r}")
    return ".".join('"' + part + '"' for part in parts)


def redact_url(url: str) -> str:
    return re.sub(r":([^:@/]+)@", r":***@", url)


class PostgresGateway:
    def __init__(
        self,
        db_url: str,
        tracking_table: str = DEFAULT_TRACKING_TABLE,
        connect: Callable[..., Any] | None = None,
    ):
        self.db_url = db_url
        self.tracking_table = tracking_table
        self._table = quote_table(tracking_table)
        self._connect = connect or psycopg.connect

    def _connection(self):
        # Each group opens its own transaction block explicitly.
        return self._connect(self.db_url, autocommit=True)

    def _ensure_table(self, conn) -> None:
        conn.execute(
            f"CREATE TABLE IF NOT EXISTS {self._table} ("
            "id BIGSERIAL PRIMARY KEY, "
            "identifier TEXT NOT NULL, "
            "applied_at TIMESTAMPTZ NOT NULL DEFAULT now(), "
            "checksum TEXT NOT NULL)"
        )

    def _recorded(self, conn) -> dict[str, str]:
        rows = conn.execute(f"SELECT identifier, checksum FROM {self._table} ORDER BY id").fetchall()
        return {identifier: checksum for identifier, checksum in rows}

    def apply(self, plan: ConsolidationPlan) -> AppliedSummary:
        """Run groups in order, one transaction each, stopping at the first failure."""
        summary = AppliedSummary()
        with self._connection() as conn:
            self._ensure_table(conn)
            recorded = self._recorded(conn)
            for group in plan.groups:
                identifier = group.identifier
                checksum = group_checksum(group)
                if identifier in recorded:
                    if recorded[identifier] == checksum:
                        summary.skipped.append(identifier)
                        continue
                    raise ApplyError(
                        f"{identifier} was applied with a different checksum",
                        committed=summary.applied,
                        failed_group=identifier,
                        skipped=summary.skipped,
                    )
                try:
                    with conn.transaction():
                        for planned in group.statements:
                            conn.execute(planned.sql)
                        conn.execute(
                            f"INSERT INTO {self._table} (identifier, checksum) VALUES (%s, %s)",
                            (identifier, checksum),
                        )
                except psycopg.Error as exc:
                    raise ApplyError(
                        f"{identifier} failed: {exc}",
                        committed=summary.applied,
                        failed_group=identifier,
                        skipped=summary.skipped,
                    ) from exc
                print(f"[apply] applied {identifier}", file=sys.stderr)
                summary.applied.append(identifier)
        return summary

    def status(self) -> list[AppliedRecord]:
        with self._connection() as conn:
            (exists,) = conn.execute("SELECT to_regclass(%s)", (self._table,)).fetchone()
            if exists is None:
                return []
            rows = conn.execute(f"SELECT identifier, applied_at, checksum FROM {self._table} ORDER BY id").fetchall()
        return [AppliedRecord(identifier=row[0], applied_at=row[1], checksum=row[2]) for row in rows]
