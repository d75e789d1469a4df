#!/usr/bin/env python3
"""Analyse, consolidate and apply a directory of SQL migrations."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Callable

import psycopg

from consolidate_migrations import ConsolidationError, check_plan, consolidate, plan_from_files, write_plan, write_text
from dependency_graph import build_graph
from graph_export import export_graph, parse_format
from migrate_config import MigrateConfig, load_config
from migration_gateway import ApplyError, PostgresGateway, redact_url
from sql_statements import load_migrations
from validate_migrations import Severity, build_report, render_safety_checklist

GatewayFactory = Callable[[str, str], PostgresGateway]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="migrate", description=__doc__)
    parser.add_argument("--config", type=Path, help="YAML config (default: ./migrate.yaml when present)")
    sub = parser.add_subparsers(dest="command", required=True)

    verify = sub.add_parser("verify", help="Run structural checks over the migration history")
    verify.add_argument("--dir", type=Path, help="Migration directory")
    verify.add_argument("--verbose", action="store_true", help="Show locations, suggestions and info findings")

    cons = sub.add_parser("consolidate", help="Merge the history into group files")
    cons.add_argument("--dir", type=Path, help="Migration directory")
    cons.add_argument("--output", type=Path, help="Output directory for group files")
    cons.add_argument("--dry-run", action="store_true", help="Print the plan without writing")
    cons.add_argument("--check", action="store_true", help="Verify outputs are up-to-date without writing")

    graph = sub.add_parser("graph", help="Export the dependency graph")
    graph.add_argument("--dir", type=Path, help="Migration directory")
    graph.add_argument("--format", default="mermaid", help="text, dot or mermaid")
    graph.add_argument("--output", type=Path, help="Write to this file instead of stdout")

    apply = sub.add_parser("apply", help="Apply a migration directory to PostgreSQL")
    apply.add_argument("--db-url", help="Database URL (default: $DATABASE_URL)")
    apply.add_argument("--dir", type=Path, help="Directory to apply (default: output_dir)")

    status = sub.add_parser("status", help="List applied groups")
    status.add_argument("--db-url", help="Database URL (default: $DATABASE_URL)")
    return parser.parse_args(argv)


def _load(directory: Path, stage: str):
    try:
        return load_migrations(directory)
    except FileNotFoundError as exc:
        print(f"[{stage}] {exc}", file=sys.stderr)
        return None


def _print_issues(issues, stage: str) -> None:
    for issue in issues:
        print(f"[{stage}] {issue.render()}", file=sys.stderr)


def cmd_verify(args: argparse.Namespace, config: MigrateConfig) -> int:
    files = _load(args.dir or config.migrations_dir, "verify")
    if files is None:
        return 2
    report = build_report(files, settings=config.rules)
    print(report.render(verbose=args.verbose), end="")
    if report.count(Severity.CRITICAL) or report.count(Severity.WARNING):
        print()
        print(render_safety_checklist(report), end="")
    return 1 if report.has_critical else 0


def cmd_consolidate(args: argparse.Namespace, config: MigrateConfig) -> int:
    files = _load(args.dir or config.migrations_dir, "consolidate")
    if files is None:
        return 2
    try:
        plan = consolidate(files, build_graph(files), config.group_assignment())
    except ConsolidationError as exc:
        _print_issues(exc.issues, "consolidate")
        return 1

    output_dir = args.output or config.output_dir
    if args.dry_run:
        print(plan.render_dry_run(), end="")
        return 0
    if args.check:
        return 0 if check_plan(plan, output_dir) else 1
    for path in write_plan(plan, output_dir):
        print(f"Generated {path}")
    print(plan.render_summary(), end="")
    return 0


def cmd_graph(args: argparse.Namespace, config: MigrateConfig) -> int:
    try:
        fmt = parse_format(args.format)
    except ValueError as exc:
        print(f"[graph] {exc}", file=sys.stderr)
        return 2
    files = _load(args.dir or config.migrations_dir, "graph")
    if files is None:
        return 2
    output = export_graph(build_graph(files), files, fmt)
    if args.output:
        write_text(args.output, output)
        print(f"Generated {args.output}")
    else:
        print(output, end="")
    return 0


def _db_url(args: argparse.Namespace, stage: str) -> str | None:
    url = args.db_url or os.environ.get("DATABASE_URL")
    if not url:
        print(f"[{stage}] no database URL: pass --db-url or set DATABASE_URL", file=sys.stderr)
    return url


def cmd_apply(args: argparse.Namespace, config: MigrateConfig, gateway_factory: GatewayFactory) -> int:
    url = _db_url(args, "apply")
    if not url:
        return 2
    files = _load(args.dir or config.output_dir, "apply")
    if files is None:
        return 2
    report = build_report(files, settings=config.rules)
    if report.has_critical:
        _print_issues([i for i in report.issues if i.severity is Severity.CRITICAL], "apply")
        print("[apply] aborting: critical issues found", file=sys.stderr)
        return 1

    gateway = gateway_factory(url, config.tracking_table)
    try:
        summary = gateway.apply(plan_from_files(files))
    except ApplyError as exc:
        print(f"[apply] {exc}", file=sys.stderr)
        print(f"[apply] committed: {', '.join(exc.committed) or '(none)'}", file=sys.stderr)
        return 1
    print(f"Applied {len(summary.applied)} group(s), skipped {len(summary.skipped)} on {redact_url(url)}")
    return 0


def cmd_status(args: argparse.Namespace, config: MigrateConfig, gateway_factory: GatewayFactory) -> int:
    url = _db_url(args, "status")
    if not url:
        return 2
    records = gateway_factory(url, config.tracking_table).status()
    if not records:
        print(f"No migrations applied on {redact_url(url)}")
        return 0
    for record in records:
        print(f"{record.identifier}\t{record.applied_at.isoformat()}\t{record.checksum[:12]}")
    return 0


def main(argv: list[str] | None = None, gateway_factory: GatewayFactory | None = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config)
    except (OSError, ValueError) as exc:
        print(f"[config] {exc}", file=sys.stderr)
        return 2
    gateway_factory = gateway_factory or PostgresGateway

    if args.command == "verify":
        return cmd_verify(args, config)
    if args.command == "consolidate":
        return cmd_consolidate(args, config)
    if args.command == "graph":
        return cmd_graph(args, config)
    try:
        if args.command == "apply":
            return cmd_apply(args, config, gateway_factory)
        return cmd_status(args, config, gateway_factory)
    except ValueError as exc:
        print(f"[{args.command}] {exc}", file=sys.stderr)
        return 2
    except psycopg.Error as exc:
        print(f"[{args.command}] database error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
