#!/usr/bin/env python3
"""Parse ordinal-prefixed SQL migration files into typed DDL statements.

Only the DDL subset needed to identify objects and what they reference is
understood. Anything else is kept verbatim as an OTHER statement.
"""

from __future__ import annotations

import dataclasses
import enum
import re
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterator, Mapping


MIGRATION_NAME_RE = re.compile(r"^(\d+)_.*\.sql$")
DOLLAR_TAG_RE = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")

TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<line_comment>--[^\n]*)
    | (?P<block_comment>/\*.*?\*/)
    | (?P<dollar>\$\$.*?\$\$|\$(?P<tag>[A-Za-z_][A-Za-z0-9_]*)\$.*?\$(?P=tag)\$)
    | (?P<string>[Ee]?'(?:[^']|'')*')
    | (?P<quoted>"(?:[^"]|"")*")
    | (?P<number>\d+(?:\.\d+)?)
    | (?P<word>[A-Za-z_][A-Za-z0-9_$]*)
    | (?P<punct>::|->>|->|<>|!=|>=|<=|\|\||\S)
    """,
    flags=re.S | re.X,
)

DEFAULT_SCHEMA = "public"

# Names never treated as references to migration-defined objects.
SYSTEM_OBJECTS = frozenset(
    """
    now current_timestamp current_date current_time localtimestamp gen_random_uuid uuid_generate_v4
    coalesce nullif greatest least count sum avg min max array_agg string_agg jsonb_agg json_agg
    row_number rank dense_rank lag lead first_value last_value ntile percentile_cont percentile_disc
    lower upper length trim btrim ltrim rtrim substring substr position replace concat concat_ws
    split_part regexp_replace regexp_matches round floor ceil ceiling abs sqrt power ln log exp sign
    mod extract date_part date_trunc to_char to_date to_timestamp to_number age make_interval
    jsonb_build_object json_build_object jsonb_build_array jsonb_array_elements jsonb_each
    jsonb_set jsonb_typeof array_length array_to_string unnest generate_series nextval currval
    setval cast exists any all some stddev variance bool_and bool_or every md5 encode decode
    time_bucket create_hypertable add_retention_policy add_compression_policy
    add_continuous_aggregate_policy set_chunk_time_interval first last locf interpolate
    uuid text varchar char character varying integer int int2 int4 int8 bigint smallint decimal
    numeric real double precision float float4 float8 boolean bool timestamp timestamptz date time
    timetz interval jsonb json bytea serial serial4 serial8 bigserial smallserial inet cidr macaddr
    money xml tsvector tsquery point citext oid regclass zone with without
    """.split()
)

KEYWORDS = frozenset(
    """
    select from where join inner left right full outer cross natural lateral on using and or not
    as in is null like ilike between case when then else end group by order having limit offset
    union intersect except distinct all into values insert update delete set returning default
    table view index function procedure trigger type extension exists if create alter drop
    primary key foreign references unique check constraint exclude collate generated always
    stored identity over partition filter within window rows range preceding following
    current row unbounded asc desc nulls last first cascade restrict only with recursive
    materialized concurrently add column rename to owner returns language begin declare
    execute for each statement before after instead of array interval row similar escape
    """.split()
)

COLUMN_CONSTRAINT_WORDS = frozenset(
    {
        "NOT", "NULL", "DEFAULT", "PRIMARY", "REFERENCES", "UNIQUE", "CHECK", "CONSTRAINT",
        "GENERATED", "COLLATE", "USING", "DEFERRABLE", "INITIALLY",
    }
)
TABLE_CONSTRAINT_WORDS = frozenset({"CONSTRAINT", "PRIMARY", "UNIQUE", "CHECK", "FOREIGN", "EXCLUDE", "LIKE"})
FROM_CALL_WORDS = frozenset({"EXTRACT", "SUBSTRING", "TRIM", "OVERLAY", "POSITION"})
CALL_EXCLUDING_PREV = frozenset(
    {
        "REFERENCES", "ON", "INTO", "TABLE", "VIEW", "INDEX", "FUNCTION", "PROCEDURE", "TYPE",
        "TRIGGER", "EXISTS", "KEY", "UNIQUE", "CHECK", "AS", "USING", "EXCLUDE", "INHERITS",
        "FROM", "JOIN", "UPDATE", "ONLY",
    }
)


class StatementKind(enum.Enum):
    CREATE_TABLE = "CREATE TABLE"
    CREATE_INDEX = "CREATE INDEX"
    CREATE_VIEW = "CREATE VIEW"
    CREATE_MATERIALIZED_VIEW = "CREATE MATERIALIZED VIEW"
    CREATE_FUNCTION = "CREATE FUNCTION"
    CREATE_TRIGGER = "CREATE TRIGGER"
    CREATE_TYPE = "CREATE TYPE"
    CREATE_EXTENSION = "CREATE EXTENSION"
    ALTER_TABLE = "ALTER TABLE"
    DROP_TABLE = "DROP TABLE"
    DROP_VIEW = "DROP VIEW"
    DROP_MATERIALIZED_VIEW = "DROP MATERIALIZED VIEW"
    DROP_INDEX = "DROP INDEX"
    DROP_FUNCTION = "DROP FUNCTION"
    DROP_TRIGGER = "DROP TRIGGER"
    DROP_TYPE = "DROP TYPE"
    DROP_EXTENSION = "DROP EXTENSION"
    DROP_SEQUENCE = "DROP SEQUENCE"
    DROP_SCHEMA = "DROP SCHEMA"
    DROP_POLICY = "DROP POLICY"
    OTHER = "OTHER"

    @property
    def is_create(self) -> bool:
        return self.name.startswith("CREATE_")

    @property
    def is_drop(self) -> bool:
        return self.name.startswith("DROP_")

    @property
    def is_alter(self) -> bool:
        return self is StatementKind.ALTER_TABLE

    @property
    def object_type(self) -> str:
        """Object category shared by the create and drop kinds, e.g. ``TABLE``."""
        if self is StatementKind.OTHER or self.is_alter:
            return "TABLE" if self.is_alter else ""
        return self.value.split(" ", 1)[1]


class EdgeKind(enum.Enum):
    FOREIGN_KEY = "foreign_key"
    VIEW_SOURCE = "view_source"
    FUNCTION_CALL = "function_call"
    TABLE_OWNER = "table_owner"
    TYPE_USAGE = "type_usage"


class AlterOp(enum.Enum):
    ADD_COLUMN = "add_column"
    DROP_COLUMN = "drop_column"
    ALTER_TYPE = "alter_type"
    RENAME_COLUMN = "rename_column"
    RENAME_TABLE = "rename_table"
    ADD_CONSTRAINT = "add_constraint"
    DROP_CONSTRAINT = "drop_constraint"
    OTHER = "other"


@dataclasses.dataclass(frozen=True, order=True)
class SourceLocation:
    ordinal: int
    file_name: str
    statement_index: int
    line: int = dataclasses.field(default=0, compare=False)

    def __str__(self) -> str:
        return f"{self.file_name}:{self.line}"


@dataclasses.dataclass(frozen=True)
class Column:
    name: str
    col_type: str
    suffix: str = ""

    @property
    def not_null(self) -> bool:
        return bool(re.search(r"\bNOT\s+NULL\b|\bPRIMARY\s+KEY\b", self.suffix, flags=re.I))

    @property
    def has_default(self) -> bool:
        return bool(re.search(r"\bDEFAULT\b|\bGENERATED\b", self.suffix, flags=re.I))


@dataclasses.dataclass(frozen=True)
class AlterAction:
    op: AlterOp
    column: str | None = None
    col_type: str | None = None
    suffix: str = ""
    new_name: str | None = None
    guarded: bool = False


@dataclasses.dataclass(frozen=True)
class SqlStatement:
    kind: StatementKind
    target_object: str | None
    raw_text: str
    location: SourceLocation
    references: Mapping[str, EdgeKind] = dataclasses.field(default_factory=dict)
    has_cascade: bool = False
    is_idempotent_guarded: bool = False
    or_replace: bool = False
    owner: str | None = None
    anchor: str | None = None
    dropped: tuple[str, ...] = ()
    columns: tuple[Column, ...] = ()
    actions: tuple[AlterAction, ...] = ()
    # (SEQUENCE|SCHEMA|POLICY, name, policy table) for creates kept as OTHER
    named_object: tuple[str, str, str | None] | None = None

    @property
    def subject(self) -> str | None:
        """Object this statement acts on, including anchors of OTHER statements."""
        return self.target_object or self.anchor

    @property
    def dropped_objects(self) -> tuple[str, ...]:
        if self.dropped:
            return self.dropped
        return (self.target_object,) if self.kind.is_drop and self.target_object else ()


@dataclasses.dataclass(frozen=True)
class ParseWarning:
    location: SourceLocation
    message: str


@dataclasses.dataclass(frozen=True)
class MigrationFile:
    ordinal: int
    name: str
    raw_text: str
    statements: tuple[SqlStatement, ...]
    parse_warnings: tuple[ParseWarning, ...] = ()
    path: str | None = None

    @property
    def stem(self) -> str:
        return self.name[:-4] if self.name.endswith(".sql") else self.name

    @property
    def line_count(self) -> int:
        return len(self.raw_text.splitlines())


@dataclasses.dataclass(frozen=True)
class Token:
    kind: str
    text: str
    start: int
    end: int

    @property
    def upper(self) -> str:
        return self.text.upper() if self.kind == "word" else self.text


class StatementParseError(ValueError):
    pass


def tokenize(sql: str) -> list[Token]:
    tokens: list[Token] = []
    for m in TOKEN_RE.finditer(sql):
        kind = m.lastgroup
        if kind in ("ws", "line_comment", "block_comment"):
            continue
        tokens.append(Token(kind=kind, text=m.group(0), start=m.start(), end=m.end()))
    return tokens


def split_statements(text: str) -> tuple[list[tuple[str, int]], list[tuple[int, str]]]:
    """Split SQL text on top-level semicolons.

    Returns ``(statements, problems)`` where each statement is ``(sql, start_line)``
    and each problem is ``(line, message)``.
    """
    statements: list[tuple[str, int]] = []
    problems: list[tuple[int, str]] = []
    n = len(text)
    i = 0
    line = 1
    start: int | None = None
    start_line = 1

    def skip_to(end: int | None, opener: int, what: str) -> int:
        nonlocal line
        if end is None:
            problems.append((line, f"unterminated {what}"))
            line += text.count("\n", opener)
            return n
        line += text.count("\n", opener, end)
        return end

    while i < n:
        ch = text[i]
        if ch == "\n":
            line += 1
            i += 1
            continue
        if text.startswith("--", i):
            j = text.find("\n", i)
            i = n if j < 0 else j
            continue
        if text.startswith("/*", i):
            j = text.find("*/", i + 2)
            i = skip_to(None if j < 0 else j + 2, i, "block comment")
            continue
        if start is None and not ch.isspace():
            start = i
            start_line = line
        if ch in ("'", '"'):
            j = i + 1
            while True:
                j = text.find(ch, j)
                if j < 0 or not text.startswith(ch * 2, j):
                    break
                j += 2
            i = skip_to(None if j < 0 else j + 1, i, "quoted literal")
            continue
        if ch == "$" and (i == 0 or not (text[i - 1].isalnum() or text[i - 1] == "_")):
            m = DOLLAR_TAG_RE.match(text, i)
            if m:
                j = text.find(m.group(0), m.end())
                i = skip_to(None if j < 0 else j + len(m.group(0)), i, "dollar-quoted body")
                continue
        if ch == ";":
            if start is not None:
                statements.append((text[start : i + 1], start_line))
            start = None
            i += 1
            continue
        i += 1

    if start is not None and text[start:].strip():
        statements.append((text[start:].rstrip(), start_line))
    return statements, problems


def normalize_name(raw: str) -> str:
    parts: list[str] = []
    for part in raw.split("."):
        part = part.strip()
        if part.startswith('"') and part.endswith('"') and len(part) >= 2:
            parts.append(part[1:-1].replace('""', '"'))
        else:
            parts.append(part.lower())
    if len(parts) > 1 and parts[0] == DEFAULT_SCHEMA:
        parts = parts[1:]
    return ".".join(parts)


def normalize_type(col_type: str) -> str:
    text = " ".join(col_type.upper().split())
    return re.sub(r"\s*([(),])\s*", r"\1", text).replace(",", ", ")


def _strip_string(text: str) -> str:
    if text[:1] in ("E", "e"):
        text = text[1:]
    return text[1:-1].replace("''", "'")


class _Cursor:
    """Forward-only reader over a statement's tokens."""

    def __init__(self, sql: str, tokens: list[Token]):
        self.sql = sql
        self.tokens = tokens
        self.pos = 0

    def peek(self, offset: int = 0) -> Token | None:
        idx = self.pos + offset
        return self.tokens[idx] if idx < len(self.tokens) else None

    def peek_upper(self, offset: int = 0) -> str:
        tok = self.peek(offset)
        return tok.upper if tok else ""

    def accept(self, *words: str) -> bool:
        for offset, word in enumerate(words):
            if self.peek_upper(offset) != word:
                return False
        self.pos += len(words)
        return True

    def accept_any(self, *words: str) -> str | None:
        word = self.peek_upper()
        if word in words:
            self.pos += 1
            return word
        return None

    def read_name(self) -> str | None:
        tok = self.peek()
        if tok is None or tok.kind not in ("word", "quoted"):
            return None
        parts = [tok.text]
        self.pos += 1
        while self.peek_upper() == "." and self.peek(1) is not None and self.peek(1).kind in ("word", "quoted"):
            parts.append(self.peek(1).text)
            self.pos += 2
        return normalize_name(".".join(parts))


def read_name_at(tokens: list[Token], idx: int) -> tuple[str | None, int]:
    cursor = _Cursor("", tokens)
    cursor.pos = idx
    name = cursor.read_name()
    return name, cursor.pos


def matching_paren(tokens: list[Token], open_idx: int) -> int:
    depth = 0
    for idx in range(open_idx, len(tokens)):
        text = tokens[idx].text
        if text == "(":
            depth += 1
        elif text == ")":
            depth -= 1
            if depth == 0:
                return idx
    return len(tokens) - 1


def split_top_level(tokens: list[Token], sep: str = ",") -> list[list[Token]]:
    """Split a token run on separators outside parentheses."""
    out: list[list[Token]] = []
    buf: list[Token] = []
    depth = 0
    for tok in tokens:
        if tok.text == "(":
            depth += 1
        elif tok.text == ")":
            depth = max(0, depth - 1)
        if tok.text == sep and depth == 0:
            if buf:
                out.append(buf)
            buf = []
            continue
        buf.append(tok)
    if buf:
        out.append(buf)
    return out


def slice_text(sql: str, tokens: list[Token]) -> str:
    if not tokens:
        return ""
    return sql[tokens[0].start : tokens[-1].end].strip()


def split_type_suffix(sql: str, tokens: list[Token]) -> tuple[str, str, list[Token]]:
    """Split column tokens after the name into ``(type, suffix, type_tokens)``."""
    depth = 0
    for idx, tok in enumerate(tokens):
        if tok.text == "(":
            depth += 1
        elif tok.text == ")":
            depth = max(0, depth - 1)
        elif depth == 0 and idx > 0 and tok.upper in COLUMN_CONSTRAINT_WORDS:
            return slice_text(sql, tokens[:idx]), slice_text(sql, tokens[idx:]), tokens[:idx]
    return slice_text(sql, tokens), "", tokens


def has_ddl_cascade(tokens: list[Token]) -> bool:
    for idx, tok in enumerate(tokens):
        if tok.upper != "CASCADE":
            continue
        prev = tokens[idx - 1].upper if idx > 0 else ""
        prev2 = tokens[idx - 2].upper if idx > 1 else ""
        if prev in ("DELETE", "UPDATE") and prev2 == "ON":
            continue
        return True
    return False


def foreign_key_refs(tokens: list[Token]) -> list[str]:
    refs: list[str] = []
    for idx, tok in enumerate(tokens):
        if tok.upper == "REFERENCES":
            name, _ = read_name_at(tokens, idx + 1)
            if name:
                refs.append(name)
    return refs


def function_call_refs(tokens: list[Token], exclude: set[str]) -> list[str]:
    refs: list[str] = []
    idx = 0
    while idx < len(tokens):
        tok = tokens[idx]
        if tok.kind not in ("word", "quoted"):
            idx += 1
            continue
        name, end = read_name_at(tokens, idx)
        prev = tokens[idx - 1].upper if idx > 0 else ""
        if (
            name
            and end < len(tokens)
            and tokens[end].text == "("
            and prev not in CALL_EXCLUDING_PREV
            and prev != "."
            and name.split(".")[-1] not in SYSTEM_OBJECTS
            and name.split(".")[-1] not in KEYWORDS
            and name not in exclude
        ):
            refs.append(name)
        idx = max(end, idx + 1)
    return refs


def view_source_refs(tokens: list[Token]) -> list[str]:
    """Relations named after FROM and JOIN, including comma-separated FROM lists."""
    refs: list[str] = []
    paren_words: list[str] = []
    idx = 0
    while idx < len(tokens):
        tok = tokens[idx]
        if tok.text == "(":
            paren_words.append(tokens[idx - 1].upper if idx > 0 else "")
        elif tok.text == ")" and paren_words:
            paren_words.pop()
        is_from = tok.upper == "FROM" and not (paren_words and paren_words[-1] in FROM_CALL_WORDS)
        if not (is_from or tok.upper == "JOIN"):
            idx += 1
            continue
        idx += 1
        while idx < len(tokens):
            while tokens[idx].upper in ("LATERAL", "ONLY") and idx + 1 < len(tokens):
                idx += 1
            name, end = read_name_at(tokens, idx)
            if not name or name in KEYWORDS:
                break
            if end < len(tokens) and tokens[end].text == "(":
                break
            refs.append(name)
            idx = end
            if idx < len(tokens) and tokens[idx].upper == "AS":
                idx += 1
            if idx < len(tokens) and tokens[idx].kind in ("word", "quoted") and tokens[idx].upper.lower() not in KEYWORDS:
                idx += 1
            if not is_from or idx >= len(tokens) or tokens[idx].text != ",":
                break
            idx += 1
    return refs


def _column_from_item(sql: str, item: list[Token]) -> tuple[Column, list[Token]] | None:
    if len(item) < 2 or item[0].upper in TABLE_CONSTRAINT_WORDS:
        return None
    name, end = read_name_at(item, 0)
    if not name or end >= len(item):
        return None
    col_type, suffix, type_tokens = split_type_suffix(sql, item[end:])
    return Column(name=name, col_type=col_type, suffix=suffix), type_tokens


def _type_names(type_tokens: list[Token]) -> list[str]:
    name, _ = read_name_at(type_tokens, 0)
    if not name or name.split(".")[-1] in SYSTEM_OBJECTS or name in KEYWORDS:
        return []
    return [name]


def _parameter_type_names(item: list[Token]) -> list[str]:
    while item and item[0].upper in ("IN", "OUT", "INOUT", "VARIADIC"):
        item = item[1:]
    cut = next((i for i, tok in enumerate(item) if tok.upper in ("DEFAULT", "=")), len(item))
    item = item[:cut]
    # "name type" vs a bare type
    _, end = read_name_at(item, 0)
    if end < len(item) and item[end].kind in ("word", "quoted"):
        item = item[end:]
    return _type_names(item)


class _StatementBuilder:
    def __init__(self, sql: str, tokens: list[Token]):
        self.sql = sql
        self.tokens = tokens
        self.refs: dict[str, EdgeKind] = {}

    def add_refs(self, names: Iterator[str] | list[str], kind: EdgeKind, target: str | None) -> None:
        for name in names:
            if name and name != target and name not in self.refs:
                self.refs[name] = kind


def _parse_create(cur: _Cursor, builder: _StatementBuilder) -> dict:
    tokens = cur.tokens
    or_replace = cur.accept("OR", "REPLACE")
    while cur.accept_any("GLOBAL", "LOCAL", "TEMP", "TEMPORARY", "UNLOGGED", "UNIQUE", "RECURSIVE", "CONSTRAINT"):
        pass
    if cur.accept("MATERIALIZED", "VIEW"):
        obj = "MATERIALIZED VIEW"
    else:
        obj = cur.accept_any("TABLE", "VIEW", "INDEX", "FUNCTION", "PROCEDURE", "TRIGGER", "TYPE", "EXTENSION")
    if obj is None:
        return _parse_other(cur, builder)
    if obj == "INDEX":
        cur.accept("CONCURRENTLY")
    guarded = cur.accept("IF", "NOT", "EXISTS") or or_replace

    if obj == "INDEX" and cur.peek_upper() == "ON":
        cur.accept("ON")
        cur.accept("ONLY")
        table = cur.read_name()
        return {"kind": StatementKind.OTHER, "target": None, "anchor": table}

    name = cur.read_name()
    if not name or name.lower() in ("as", "on", "("):
        raise StatementParseError(f"CREATE {obj} without an object name")

    fields: dict = {"target": name, "guarded": guarded, "or_replace": or_replace}
    body = tokens[cur.pos :]

    if obj == "TABLE":
        fields["kind"] = StatementKind.CREATE_TABLE
        builder.add_refs(foreign_key_refs(body), EdgeKind.FOREIGN_KEY, name)
        columns: list[Column] = []
        if cur.peek_upper() == "(":
            close = matching_paren(tokens, cur.pos)
            for item in split_top_level(tokens[cur.pos + 1 : close]):
                parsed = _column_from_item(cur.sql, item)
                if parsed is None:
                    continue
                column, type_tokens = parsed
                columns.append(column)
                builder.add_refs(_type_names(type_tokens), EdgeKind.TYPE_USAGE, name)
        fields["columns"] = tuple(columns)
        builder.add_refs(function_call_refs(body, {name}), EdgeKind.FUNCTION_CALL, name)
    elif obj in ("VIEW", "MATERIALIZED VIEW"):
        fields["kind"] = StatementKind.CREATE_VIEW if obj == "VIEW" else StatementKind.CREATE_MATERIALIZED_VIEW
        builder.add_refs(view_source_refs(body), EdgeKind.VIEW_SOURCE, name)
        builder.add_refs(function_call_refs(body, {name}), EdgeKind.FUNCTION_CALL, name)
    elif obj == "INDEX":
        fields["kind"] = StatementKind.CREATE_INDEX
        if not cur.accept("ON"):
            raise StatementParseError(f"CREATE INDEX {name} without ON clause")
        cur.accept("ONLY")
        table = cur.read_name()
        if not table:
            raise StatementParseError(f"CREATE INDEX {name} without a table")
        fields["owner"] = table
        builder.add_refs([table], EdgeKind.TABLE_OWNER, name)
        builder.add_refs(function_call_refs(tokens[cur.pos :], {name, table}), EdgeKind.FUNCTION_CALL, name)
    elif obj in ("FUNCTION", "PROCEDURE"):
        fields["kind"] = StatementKind.CREATE_FUNCTION
        # Argument and return types are checked at creation time; the body is late-bound.
        if cur.peek_upper() == "(":
            close = matching_paren(tokens, cur.pos)
            for item in split_top_level(tokens[cur.pos + 1 : close]):
                builder.add_refs(_parameter_type_names(item), EdgeKind.TYPE_USAGE, name)
            cur.pos = close + 1
        if cur.accept("RETURNS"):
            cur.accept("SETOF")
            if cur.accept("TABLE") and cur.peek_upper() == "(":
                close = matching_paren(tokens, cur.pos)
                for item in split_top_level(tokens[cur.pos + 1 : close]):
                    parsed = _column_from_item(cur.sql, item)
                    if parsed:
                        builder.add_refs(_type_names(parsed[1]), EdgeKind.TYPE_USAGE, name)
            else:
                builder.add_refs(_type_names(tokens[cur.pos :]), EdgeKind.TYPE_USAGE, name)
    elif obj == "TRIGGER":
        fields["kind"] = StatementKind.CREATE_TRIGGER
        for idx in range(cur.pos, len(tokens)):
            if tokens[idx].upper == "ON" and "owner" not in fields:
                table, _ = read_name_at(tokens, idx + 1)
                if table:
                    fields["owner"] = table
                    builder.add_refs([table], EdgeKind.TABLE_OWNER, name)
            if tokens[idx].upper == "EXECUTE" and idx + 1 < len(tokens):
                func, _ = read_name_at(tokens, idx + 2)
                if func:
                    builder.add_refs([func], EdgeKind.FUNCTION_CALL, name)
    elif obj == "TYPE":
        fields["kind"] = StatementKind.CREATE_TYPE
        if cur.accept("AS") and cur.peek_upper() == "(":
            close = matching_paren(tokens, cur.pos)
            for item in split_top_level(tokens[cur.pos + 1 : close]):
                parsed = _column_from_item(cur.sql, item)
                if parsed:
                    builder.add_refs(_type_names(parsed[1]), EdgeKind.TYPE_USAGE, name)
    else:
        fields["kind"] = StatementKind.CREATE_EXTENSION
    return fields


def _parse_alter_action(sql: str, item: list[Token], builder: _StatementBuilder, table: str) -> AlterAction:
    cur = _Cursor(sql, item)
    if cur.accept("ADD"):
        if cur.peek_upper() in TABLE_CONSTRAINT_WORDS:
            builder.add_refs(foreign_key_refs(item), EdgeKind.FOREIGN_KEY, table)
            return AlterAction(AlterOp.ADD_CONSTRAINT)
        cur.accept("COLUMN")
        guarded = cur.accept("IF", "NOT", "EXISTS")
        parsed = _column_from_item(sql, item[cur.pos :])
        if parsed is None:
            return AlterAction(AlterOp.OTHER, guarded=guarded)
        column, type_tokens = parsed
        builder.add_refs(foreign_key_refs(item), EdgeKind.FOREIGN_KEY, table)
        builder.add_refs(_type_names(type_tokens), EdgeKind.TYPE_USAGE, table)
        builder.add_refs(function_call_refs(item, {table}), EdgeKind.FUNCTION_CALL, table)
        return AlterAction(
            AlterOp.ADD_COLUMN, column=column.name, col_type=column.col_type, suffix=column.suffix, guarded=guarded
        )
    if cur.accept("DROP"):
        if cur.accept("CONSTRAINT"):
            guarded = cur.accept("IF", "EXISTS")
            return AlterAction(AlterOp.DROP_CONSTRAINT, column=cur.read_name(), guarded=guarded)
        cur.accept("COLUMN")
        guarded = cur.accept("IF", "EXISTS")
        return AlterAction(AlterOp.DROP_COLUMN, column=cur.read_name(), guarded=guarded)
    if cur.accept("ALTER"):
        cur.accept("COLUMN")
        column = cur.read_name()
        if cur.accept("SET", "DATA", "TYPE") or cur.accept("TYPE"):
            rest = item[cur.pos :]
            cut = next((i for i, tok in enumerate(rest) if tok.upper in ("USING", "COLLATE")), len(rest))
            type_tokens = rest[:cut]
            builder.add_refs(_type_names(type_tokens), EdgeKind.TYPE_USAGE, table)
            return AlterAction(AlterOp.ALTER_TYPE, column=column, col_type=slice_text(sql, type_tokens))
        return AlterAction(AlterOp.OTHER, column=column)
    if cur.accept("RENAME"):
        if cur.accept("TO"):
            return AlterAction(AlterOp.RENAME_TABLE, new_name=cur.read_name())
        if cur.accept("CONSTRAINT"):
            return AlterAction(AlterOp.OTHER)
        cur.accept("COLUMN")
        old = cur.read_name()
        cur.accept("TO")
        return AlterAction(AlterOp.RENAME_COLUMN, column=old, new_name=cur.read_name())
    return AlterAction(AlterOp.OTHER)


def _parse_alter(cur: _Cursor, builder: _StatementBuilder) -> dict:
    if not cur.accept("TABLE"):
        if cur.accept("MATERIALIZED", "VIEW") or cur.accept_any("TYPE", "VIEW", "INDEX", "FUNCTION", "SEQUENCE"):
            cur.accept("IF", "EXISTS")
            return {"kind": StatementKind.OTHER, "target": None, "anchor": cur.read_name()}
        return {"kind": StatementKind.OTHER, "target": None}
    guarded = cur.accept("IF", "EXISTS")
    cur.accept("ONLY")
    name = cur.read_name()
    if not name:
        raise StatementParseError("ALTER TABLE without a table name")
    actions = tuple(
        _parse_alter_action(cur.sql, item, builder, name) for item in split_top_level(cur.tokens[cur.pos :])
    )
    guarded = guarded or any(a.guarded for a in actions)
    return {"kind": StatementKind.ALTER_TABLE, "target": name, "guarded": guarded, "actions": actions}


DROP_KINDS = {
    "TABLE": StatementKind.DROP_TABLE,
    "VIEW": StatementKind.DROP_VIEW,
    "MATERIALIZED VIEW": StatementKind.DROP_MATERIALIZED_VIEW,
    "INDEX": StatementKind.DROP_INDEX,
    "FUNCTION": StatementKind.DROP_FUNCTION,
    "PROCEDURE": StatementKind.DROP_FUNCTION,
    "TRIGGER": StatementKind.DROP_TRIGGER,
    "TYPE": StatementKind.DROP_TYPE,
    "EXTENSION": StatementKind.DROP_EXTENSION,
    "SEQUENCE": StatementKind.DROP_SEQUENCE,
    "SCHEMA": StatementKind.DROP_SCHEMA,
    "POLICY": StatementKind.DROP_POLICY,
}


def _parse_drop(cur: _Cursor, builder: _StatementBuilder) -> dict:
    if cur.accept("MATERIALIZED", "VIEW"):
        obj = "MATERIALIZED VIEW"
    else:
        obj = cur.accept_any(*DROP_KINDS)
    if obj is None:
        return {"kind": StatementKind.OTHER, "target": None}
    if obj == "INDEX":
        cur.accept("CONCURRENTLY")
    guarded = cur.accept("IF", "EXISTS")
    names: list[str] = []
    owner = None
    for item in split_top_level(cur.tokens[cur.pos :]):
        name, end = read_name_at(item, 0)
        if name:
            names.append(name)
        if obj in ("TRIGGER", "POLICY") and end < len(item) and item[end].upper == "ON":
            owner, _ = read_name_at(item, end + 1)
    if not names:
        raise StatementParseError(f"DROP {obj} without an object name")
    return {
        "kind": DROP_KINDS[obj],
        "target": names[0],
        "guarded": guarded,
        "dropped": tuple(names),
        "owner": owner,
    }


TYPE_GUARD_RE = re.compile(
    r"IF\s+NOT\s+EXISTS\s*\(\s*SELECT\s+1\s+FROM\s+pg_type\s+WHERE\s+typname\s*=\s*'([^']+)'\s*\)\s*THEN\s*(CREATE\s+TYPE\b.*?;)",
    flags=re.I | re.S,
)
TYPE_EXCEPTION_RE = re.compile(r"(CREATE\s+TYPE\b.*?;).*?\bduplicate_object\b", flags=re.I | re.S)


def _parse_do_block(cur: _Cursor, builder: _StatementBuilder) -> dict:
    body = next((tok.text for tok in cur.tokens if tok.kind == "dollar"), "")
    m = TYPE_GUARD_RE.search(body)
    inner = m.group(2) if m else None
    if inner is None:
        m = TYPE_EXCEPTION_RE.search(body)
        inner = m.group(1) if m else None
    if inner is None:
        return {"kind": StatementKind.OTHER, "target": None}
    inner_tokens = tokenize(inner)
    inner_cur = _Cursor(inner, inner_tokens)
    inner_cur.accept("CREATE")
    inner_builder = _StatementBuilder(inner, inner_tokens)
    fields = _parse_create(inner_cur, inner_builder)
    if fields.get("kind") is not StatementKind.CREATE_TYPE:
        return {"kind": StatementKind.OTHER, "target": None}
    builder.refs.update(inner_builder.refs)
    fields["guarded"] = True
    return fields


def _first_string_argument(tokens: list[Token]) -> str | None:
    for idx in range(len(tokens) - 2):
        if tokens[idx].kind == "word" and tokens[idx + 1].text == "(" and tokens[idx + 2].kind == "string":
            return normalize_name(_strip_string(tokens[idx + 2].text))
    return None


def _parse_other(cur: _Cursor, builder: _StatementBuilder) -> dict:
    tokens = cur.tokens
    first = tokens[0].upper if tokens else ""
    anchor = None
    if first == "COMMENT" and cur.accept("COMMENT", "ON"):
        target_kind = cur.peek_upper()
        cur.accept("MATERIALIZED")
        cur.accept_any("TABLE", "VIEW", "INDEX", "FUNCTION", "TYPE", "COLUMN", "TRIGGER", "PROCEDURE", "EXTENSION")
        name = cur.read_name()
        if target_kind == "COLUMN" and name and "." in name:
            name = name.rsplit(".", 1)[0]
        if target_kind == "TRIGGER" and cur.accept("ON"):
            name = cur.read_name()
        anchor = name
    elif first == "INSERT" and cur.accept("INSERT", "INTO"):
        anchor = cur.read_name()
    elif first == "UPDATE":
        cur.accept("UPDATE")
        cur.accept("ONLY")
        anchor = cur.read_name()
    elif first == "DELETE" and cur.accept("DELETE", "FROM"):
        cur.accept("ONLY")
        anchor = cur.read_name()
    elif first == "REFRESH" and cur.accept("REFRESH", "MATERIALIZED", "VIEW"):
        cur.accept("CONCURRENTLY")
        anchor = cur.read_name()
    elif first in ("GRANT", "REVOKE"):
        for idx, tok in enumerate(tokens):
            if tok.upper == "ON":
                offset = 2 if idx + 1 < len(tokens) and tokens[idx + 1].upper in ("TABLE", "SEQUENCE") else 1
                anchor, _ = read_name_at(tokens, idx + offset)
                break
    elif first == "SELECT":
        anchor = _first_string_argument(tokens)
    elif first == "CREATE":
        named = _named_create(cur)
        # CREATE POLICY p ON t, CREATE RULE r AS ON INSERT TO t and the like
        for idx, tok in enumerate(tokens):
            if tok.upper in ("ON", "TO") and idx + 1 < len(tokens) and tokens[idx + 1].text.lower() not in KEYWORDS:
                anchor, _ = read_name_at(tokens, idx + 1)
                break
        return {"kind": StatementKind.OTHER, "target": None, "anchor": anchor, "named": named}
    return {"kind": StatementKind.OTHER, "target": None, "anchor": anchor}


def _named_create(cur: _Cursor) -> tuple[str, str, str | None] | None:
    """Identity of a CREATE SEQUENCE, SCHEMA or POLICY, which have no statement kind of their own."""
    obj = cur.accept_any("SEQUENCE", "SCHEMA", "POLICY")
    if obj is None:
        return None
    cur.accept("IF", "NOT", "EXISTS")
    if obj == "SCHEMA" and cur.accept("AUTHORIZATION"):
        name = cur.read_name()
        return (obj, name, None) if name else None
    name = cur.read_name()
    if not name:
        return None
    table = cur.read_name() if obj == "POLICY" and cur.accept("ON") else None
    return obj, name, table


def parse_statement(sql: str, location: SourceLocation) -> SqlStatement:
    """Classify one statement. Raises StatementParseError on a malformed recognised verb."""
    tokens = tokenize(sql)
    cur = _Cursor(sql, tokens)
    builder = _StatementBuilder(sql, tokens)
    verb = cur.accept_any("CREATE", "ALTER", "DROP", "DO")
    if verb == "CREATE":
        fields = _parse_create(cur, builder)
    elif verb == "ALTER":
        fields = _parse_alter(cur, builder)
    elif verb == "DROP":
        fields = _parse_drop(cur, builder)
    elif verb == "DO":
        fields = _parse_do_block(cur, builder)
    else:
        fields = _parse_other(cur, builder)

    kind: StatementKind = fields["kind"]
    target = fields.get("target")
    refs = {} if kind is StatementKind.OTHER else dict(builder.refs)
    return SqlStatement(
        kind=kind,
        target_object=target if kind is not StatementKind.OTHER else None,
        raw_text=sql.strip(),
        location=location,
        references=refs,
        has_cascade=has_ddl_cascade(tokens) if kind is not StatementKind.OTHER else False,
        is_idempotent_guarded=bool(fields.get("guarded", False)),
        or_replace=bool(fields.get("or_replace", False)),
        owner=fields.get("owner"),
        anchor=fields.get("anchor") or None,
        dropped=fields.get("dropped", ()),
        columns=fields.get("columns", ()),
        actions=fields.get("actions", ()),
        named_object=fields.get("named"),
    )


def extract_ordinal(file_name: str) -> int:
    m = MIGRATION_NAME_RE.match(file_name)
    if not m:
        raise ValueError(f"Migration file name has no ordinal prefix: {file_name}")
    return int(m.group(1))


def parse_migration(file_name: str, text: str, ordinal: int | None = None, path: str | None = None) -> MigrationFile:
    if ordinal is None:
        ordinal = extract_ordinal(file_name)
    chunks, problems = split_statements(text)
    statements: list[SqlStatement] = []
    warnings: list[ParseWarning] = [
        ParseWarning(SourceLocation(ordinal, file_name, len(chunks) - 1 if chunks else 0, line), message)
        for line, message in problems
    ]
    for index, (sql, line) in enumerate(chunks):
        location = SourceLocation(ordinal, file_name, index, line)
        try:
            stmt = parse_statement(sql, location)
        except StatementParseError as exc:
            warnings.append(ParseWarning(location, str(exc)))
            stmt = SqlStatement(kind=StatementKind.OTHER, target_object=None, raw_text=sql.strip(), location=location)
        statements.append(stmt)
    return MigrationFile(
        ordinal=ordinal,
        name=file_name,
        raw_text=text,
        statements=tuple(statements),
        parse_warnings=tuple(sorted(warnings, key=lambda w: w.location)),
        path=path,
    )


def parse_file(path: Path) -> MigrationFile:
    return parse_migration(path.name, path.read_text(encoding="utf-8"), path=str(path))


def list_migration_paths(directory: Path) -> list[Path]:
    if not directory.is_dir():
        raise FileNotFoundError(f"Migration directory not found: {directory}")
    paths: list[Path] = []
    for path in sorted(directory.glob("*.sql")):
        if not MIGRATION_NAME_RE.match(path.name):
            print(f"[parse] skipping {path.name}: no ordinal prefix", file=sys.stderr)
            continue
        paths.append(path)
    return paths


def load_migrations(directory: Path, workers: int | None = None) -> list[MigrationFile]:
    """Parse every ordinal-prefixed ``*.sql`` file in ``directory``.

    Files are parsed concurrently and returned ordered by ``(ordinal, name)``.
    """
    paths = list_migration_paths(directory)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        files = list(pool.map(parse_file, paths))
    files.sort(key=lambda f: (f.ordinal, f.name))
    return files


def iter_statements(files: list[MigrationFile]) -> Iterator[SqlStatement]:
    for migration in files:
        yield from migration.statements
