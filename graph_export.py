#!/usr/bin/env python3
"""Render the dependency graph as text, Graphviz DOT or Mermaid."""

from __future__ import annotations

import re

from dependency_graph import DependencyGraph
from sql_statements import MigrationFile


MERMAID_EDGE_LIMIT = 50
FORMAT_ALIASES = {
    "mermaid": "mermaid",
    "md": "mermaid",
    "dot": "dot",
    "graphviz": "dot",
    "text": "text",
    "txt": "text",
}


def parse_format(value: str) -> str:
    fmt = FORMAT_ALIASES.get(value.strip().lower())
    if fmt is None:
        raise ValueError(f"Invalid format: {value}. Supported: mermaid, dot, text")
    return fmt


def mermaid_id(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_]", "_", name)


def _file_edges(graph: DependencyGraph, files: list[MigrationFile]) -> list[tuple[str, str]]:
    order = {f.name: idx for idx, f in enumerate(files)}
    edges = [(src, dst) for src, deps in graph.file_dependencies.items() for dst in deps]
    return sorted(edges, key=lambda e: (order.get(e[0], len(order)), e[0], order.get(e[1], len(order)), e[1]))


def render_text(graph: DependencyGraph, files: list[MigrationFile]) -> str:
    lines = ["Migration dependency graph", "", "File dependencies"]
    for migration in files:
        lines.append("")
        lines.append(f"{migration.name} (ordinal {migration.ordinal})")
        deps = sorted(graph.file_dependencies.get(migration.name, ()))
        if not deps:
            lines.append("  └── (no dependencies)")
        for dep in deps:
            lines.append(f"  └── {dep}")
    lines += ["", "Object definitions"]
    for name in sorted(graph.definitions):
        kind = graph.kinds[name].object_type.lower()
        locations = ", ".join(str(loc) for loc in graph.definitions[name])
        deps = graph.dependencies(name)
        lines.append(f"  {name} [{kind}] @ {locations}")
        if deps:
            lines.append(f"    depends on: {', '.join(deps)}")
    if graph.external_references:
        lines += ["", "External references"]
        for ref in sorted(graph.external_references):
            lines.append(f"  {ref} <- {', '.join(sorted(graph.external_references[ref]))}")
    return "\n".join(lines) + "\n"


def render_dot(graph: DependencyGraph, files: list[MigrationFile]) -> str:
    by_file: dict[str, list[str]] = {}
    for name in sorted(graph.definitions):
        by_file.setdefault(graph.definitions[name][0].file_name, []).append(name)

    lines = [
        "digraph MigrationDependencies {",
        "    rankdir=LR;",
        "    node [shape=box];",
    ]
    for idx, migration in enumerate(files):
        objects = by_file.get(migration.name)
        if not objects:
            continue
        lines.append("")
        lines.append(f"    subgraph cluster_{idx} {{")
        lines.append(f'        label="{migration.name}";')
        for name in objects:
            lines.append(f'        "{name}";')
        lines.append("    }")
    lines.append("")
    for src, dst, kind in graph.edges():
        lines.append(f'    "{src}" -> "{dst}" [label="{kind.value}"];')
    lines.append("}")
    return "\n".join(lines) + "\n"


def render_mermaid(graph: DependencyGraph, files: list[MigrationFile], limit: int = MERMAID_EDGE_LIMIT) -> str:
    lines = ["```mermaid", "graph TD", '    subgraph "Migration file dependencies"']
    for migration in files:
        lines.append(f'        {mermaid_id(migration.name)}["{migration.name}"]')
    for src, dst in _file_edges(graph, files):
        lines.append(f"        {mermaid_id(src)} --> {mermaid_id(dst)}")
    lines += ["    end", "```", ""]

    lines += ["```mermaid", "graph LR", '    subgraph "Object dependencies"']
    edges = graph.edges()
    for src, dst, _ in edges[:limit]:
        lines.append(f"        {mermaid_id(src)} --> {mermaid_id(dst)}")
    if len(edges) > limit:
        lines.append(f"        %% {len(edges) - limit} more edges not shown")
    lines += ["    end", "```"]
    return "\n".join(lines) + "\n"


RENDERERS = {
    "text": render_text,
    "dot": render_dot,
    "mermaid": render_mermaid,
}


def export_graph(graph: DependencyGraph, files: list[MigrationFile], fmt: str = "mermaid") -> str:
    return RENDERERS[parse_format(fmt)](graph, files)
