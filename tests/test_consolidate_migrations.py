import contextlib
import io
import tempfile
import unittest
from pathlib import Path

from consolidate_migrations import (
    ConsolidationError,
    GroupAssignment,
    GroupRule,
    check_plan,
    consolidate,
    make_idempotent,
    replay_plan,
    verify_equivalence,
    write_plan,
)
from dependency_graph import build_graph
from schema_replay import replay_files
from sql_statements import SourceLocation, StatementKind, parse_migration, parse_statement


HISTORY = [
    (
        "001_init.sql",
        "CREATE SCHEMA IF NOT EXISTS app;\n"
        "CREATE EXTENSION IF NOT EXISTS pgcrypto;\n"
        "CREATE TYPE order_status AS ENUM ('new', 'paid');\n"
        "CREATE TABLE users (id SERIAL PRIMARY KEY, email TEXT NOT NULL);\n",
    ),
    (
        "002_orders.sql",
        "CREATE TABLE orders (\n"
        "    id SERIAL PRIMARY KEY,\n"
        "    user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,\n"
        "    status order_status NOT NULL DEFAULT 'new'\n"
        ");\n"
        "CREATE INDEX idx_orders_user ON orders (user_id);\n",
    ),
    (
        "003_views.sql",
        "CREATE VIEW user_orders AS\n"
        "    SELECT u.id, count(o.id) AS n FROM users u LEFT JOIN orders o ON o.user_id = u.id GROUP BY u.id;\n"
        "ALTER TABLE users ADD COLUMN name TEXT;\n"
        "INSERT INTO users (email) VALUES ('admin@example.com');\n"
        "SELECT 1;\n",
    ),
    (
        "004_cleanup.sql",
        "CREATE TABLE scratch (id INT);\n"
        "DROP TABLE scratch;\n"
        "CREATE TABLE IF NOT EXISTS users (id SERIAL PRIMARY KEY);\n",
    ),
]


def load(history=HISTORY):
    return [parse_migration(name, text) for name, text in history]


def parse(sql: str):
    return parse_statement(sql, SourceLocation(1, "001_test.sql", 0, 1))


class TestMakeIdempotent(unittest.TestCase):
    def test_rewrite_forms(self) -> None:
        self.assertEqual(make_idempotent(parse("CREATE TABLE t (id INT)")), "CREATE TABLE IF NOT EXISTS t (id INT);")
        self.assertEqual(
            make_idempotent(parse("CREATE UNIQUE INDEX CONCURRENTLY idx_t ON t (id);")),
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_t ON t (id);",
        )
        self.assertEqual(
            make_idempotent(parse("CREATE VIEW v AS SELECT 1")),
            "CREATE OR REPLACE VIEW v AS SELECT 1;",
        )
        self.assertEqual(
            make_idempotent(parse("CREATE MATERIALIZED VIEW mv AS SELECT 1")),
            "CREATE MATERIALIZED VIEW IF NOT EXISTS mv AS SELECT 1;",
        )
        self.assertEqual(
            make_idempotent(parse("CREATE EXTENSION pgcrypto")),
            "CREATE EXTENSION IF NOT EXISTS pgcrypto;",
        )
        self.assertEqual(
            make_idempotent(parse("CREATE FUNCTION f() RETURNS int AS $$ SELECT 1 $$ LANGUAGE sql")),
            "CREATE OR REPLACE FUNCTION f() RETURNS int AS $$ SELECT 1 $$ LANGUAGE sql;",
        )

    def test_type_gets_pg_type_guard(self) -> None:
        sql = make_idempotent(parse("CREATE TYPE mood AS ENUM ('sad', 'ok')"))
        self.assertTrue(sql.startswith("DO $$"))
        self.assertIn("WHERE typname = 'mood'", sql)
        reparsed = parse(sql)
        self.assertIs(reparsed.kind, StatementKind.CREATE_TYPE)
        self.assertTrue(reparsed.is_idempotent_guarded)

    def test_guarded_statements_are_unchanged(self) -> None:
        sql = "CREATE TABLE IF NOT EXISTS t (id INT);"
        self.assertEqual(make_idempotent(parse(sql)), sql)
        sql = "CREATE OR REPLACE VIEW v AS SELECT 1;"
        self.assertEqual(make_idempotent(parse(sql)), sql)


class TestGroupAssignment(unittest.TestCase):
    def setUp(self) -> None:
        self.assignment = GroupAssignment(
            groups=[
                GroupRule("core", objects=("user*",)),
                GroupRule("legacy", files=("001_",)),
            ]
        )

    def test_object_pattern_beats_file_prefix(self) -> None:
        self.assertEqual(self.assignment.resolve(("users",), StatementKind.CREATE_TABLE, "001_init.sql"), "core")

    def test_owner_group_beats_file_prefix(self) -> None:
        group = self.assignment.resolve(("idx",), StatementKind.CREATE_INDEX, "001_init.sql", owner_group="core")
        self.assertEqual(group, "core")

    def test_file_prefix_then_default(self) -> None:
        self.assertEqual(self.assignment.resolve(("orders",), StatementKind.CREATE_TABLE, "001_init.sql"), "legacy")
        self.assertEqual(self.assignment.resolve(("orders",), StatementKind.CREATE_TABLE, "007_x.sql"), "misc")

    def test_heuristic_groups_by_kind(self) -> None:
        assignment = GroupAssignment.kind_heuristic()
        self.assertEqual(assignment.resolve(("f",), StatementKind.CREATE_FUNCTION, "001_a.sql"), "functions")
        self.assertEqual(assignment.resolve(("v",), StatementKind.CREATE_VIEW, "001_a.sql"), "views")
        self.assertLess(assignment.rank("foundation"), assignment.rank("tables"))
        self.assertLess(assignment.rank("views"), assignment.rank("misc"))


class TestConsolidate(unittest.TestCase):
    def test_heuristic_plan_layout(self) -> None:
        files = load()
        plan = consolidate(files, build_graph(files))
        self.assertEqual(
            [g.file_name for g in plan.groups],
            ["01_foundation.sql", "02_tables.sql", "03_views.sql", "04_misc.sql"],
        )
        foundation = plan.groups[0].render()
        self.assertIn("CREATE SCHEMA IF NOT EXISTS app;", foundation)
        self.assertIn("typname = 'order_status'", foundation)

        tables = [p.sql for p in plan.groups[1].statements]
        self.assertEqual(
            tables,
            [
                "CREATE TABLE IF NOT EXISTS users (id SERIAL PRIMARY KEY, email TEXT NOT NULL);",
                "ALTER TABLE users ADD COLUMN name TEXT;",
                "INSERT INTO users (email) VALUES ('admin@example.com');",
                "CREATE TABLE IF NOT EXISTS orders (\n"
                "    id SERIAL PRIMARY KEY,\n"
                "    user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,\n"
                "    status order_status NOT NULL DEFAULT 'new'\n"
                ");",
                "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders (user_id);",
            ],
        )
        self.assertTrue(plan.groups[2].statements[0].sql.startswith("CREATE OR REPLACE VIEW user_orders"))
        self.assertEqual([p.sql for p in plan.groups[3].statements], ["SELECT 1;"])
        # scratch is created and dropped; the repeated users create is a no-op
        self.assertEqual(plan.dropped_statements, 3)
        self.assertNotIn("scratch", "".join(g.render() for g in plan.groups))

    def test_replayed_plan_matches_history(self) -> None:
        files = load()
        plan = consolidate(files, build_graph(files))
        self.assertEqual(verify_equivalence(files, plan), [])
        self.assertEqual(replay_files(replay_plan(plan)).snapshot(), replay_files(files).snapshot())

    def test_plan_is_deterministic(self) -> None:
        files = load()
        first = consolidate(files, build_graph(files))
        second = consolidate(load(), build_graph(load()))
        self.assertEqual([g.render() for g in first.groups], [g.render() for g in second.groups])
        self.assertEqual(first.render_dry_run(), second.render_dry_run())

    def test_configured_groups(self) -> None:
        files = load()
        assignment = GroupAssignment(
            groups=[
                GroupRule("types", "Shared types", objects=("order_status", "pgcrypto")),
                GroupRule("accounts", "Users and orders", objects=("users", "orders")),
                GroupRule("reporting", objects=("user_*",)),
            ]
        )
        plan = consolidate(files, build_graph(files), assignment)
        self.assertEqual(
            [g.file_name for g in plan.groups],
            ["01_types.sql", "02_accounts.sql", "03_reporting.sql", "04_misc.sql"],
        )
        accounts = [p.object_name for p in plan.groups[1].statements]
        self.assertIn("idx_orders_user", accounts)
        self.assertTrue(plan.groups[1].render().startswith("-- " + "=" * 77 + "\n-- 02_accounts\n-- Users and orders"))

    def test_cycle_blocks_consolidation(self) -> None:
        files = load(
            [
                (
                    "001_a.sql",
                    "CREATE TABLE a (id INT PRIMARY KEY, b_id INT REFERENCES b(id));\n"
                    "CREATE TABLE b (id INT PRIMARY KEY, a_id INT REFERENCES a(id));\n",
                )
            ]
        )
        with self.assertRaises(ConsolidationError) as ctx:
            consolidate(files, build_graph(files))
        self.assertEqual([i.code for i in ctx.exception.issues], ["CIRC001"])

    def test_group_cycle_blocks_consolidation(self) -> None:
        files = load(
            [
                (
                    "001_a.sql",
                    "CREATE TABLE t1 (id INT);\n"
                    "CREATE VIEW v1 AS SELECT * FROM t1;\n"
                    "CREATE VIEW v2 AS SELECT * FROM v1;\n",
                )
            ]
        )
        assignment = GroupAssignment(groups=[GroupRule("a", objects=("t1", "v2")), GroupRule("b", objects=("v1",))])
        with self.assertRaises(ConsolidationError) as ctx:
            consolidate(files, build_graph(files), assignment)
        self.assertEqual([i.code for i in ctx.exception.issues], ["GRP001"])

    def test_duplicate_across_groups_blocks_consolidation(self) -> None:
        files = load(
            [
                ("001_a.sql", "CREATE TABLE IF NOT EXISTS t (id INT);\n"),
                ("002_b.sql", "CREATE TABLE IF NOT EXISTS t (id INT);\n"),
            ]
        )
        assignment = GroupAssignment(groups=[GroupRule("first", files=("001_",)), GroupRule("second", files=("002_",))])
        with self.assertRaises(ConsolidationError) as ctx:
            consolidate(files, build_graph(files), assignment)
        self.assertEqual([i.code for i in ctx.exception.issues], ["DUP001"])

    def test_renamed_table_keeps_its_dependents(self) -> None:
        files = load(
            [
                ("001_a.sql", "CREATE TABLE people (id INT PRIMARY KEY);\n"),
                ("002_b.sql", "ALTER TABLE people RENAME TO members;\nALTER TABLE members ADD COLUMN nick TEXT;\n"),
                ("003_c.sql", "CREATE TABLE posts (id INT, author INT REFERENCES members(id));\n"),
            ]
        )
        plan = consolidate(files, build_graph(files))
        sql = [p.sql for p in plan.statements()]
        self.assertLess(sql.index("ALTER TABLE members ADD COLUMN nick TEXT;"), len(sql))
        self.assertLess(
            sql.index("ALTER TABLE people RENAME TO members;"),
            next(i for i, s in enumerate(sql) if "posts" in s),
        )
        self.assertEqual(verify_equivalence(files, plan), [])

    def test_table_rename_waits_for_earlier_dependents(self) -> None:
        files = load(
            [
                ("001_a.sql", "CREATE TABLE people (id INT PRIMARY KEY);\n"),
                ("002_b.sql", "CREATE TABLE posts (id INT, author INT REFERENCES people(id));\n"),
                ("003_c.sql", "ALTER TABLE people RENAME TO members;\nCREATE INDEX idx_members ON members (id);\n"),
            ]
        )
        plan = consolidate(files, build_graph(files))
        self.assertEqual(
            [p.sql for p in plan.statements()],
            [
                "CREATE TABLE IF NOT EXISTS people (id INT PRIMARY KEY);",
                "CREATE TABLE IF NOT EXISTS posts (id INT, author INT REFERENCES people(id));",
                "ALTER TABLE people RENAME TO members;",
                "CREATE INDEX IF NOT EXISTS idx_members ON members (id);",
            ],
        )
        self.assertEqual(verify_equivalence(files, plan), [])

    def test_column_rename_waits_for_index(self) -> None:
        files = load(
            [
                ("001_a.sql", "CREATE TABLE t (x INT);\nCREATE INDEX idx_t_x ON t (x);\n"),
                ("002_b.sql", "ALTER TABLE t RENAME COLUMN x TO y;\n"),
            ]
        )
        plan = consolidate(files, build_graph(files))
        self.assertEqual(
            [p.sql for p in plan.statements()],
            [
                "CREATE TABLE IF NOT EXISTS t (x INT);",
                "CREATE INDEX IF NOT EXISTS idx_t_x ON t (x);",
                "ALTER TABLE t RENAME COLUMN x TO y;",
            ],
        )

    def test_column_rename_moves_after_view_group(self) -> None:
        files = load(
            [
                ("001_a.sql", "CREATE TABLE t (x INT);\nCREATE INDEX idx_t_x ON t (x);\n"),
                ("002_b.sql", "CREATE VIEW v_t AS SELECT x FROM t;\n"),
                ("003_c.sql", "ALTER TABLE t RENAME COLUMN x TO y;\n"),
            ]
        )
        plan = consolidate(files, build_graph(files))
        self.assertEqual([g.file_name for g in plan.groups], ["01_tables.sql", "02_views.sql"])
        self.assertEqual(
            [p.sql for p in plan.groups[1].statements],
            ["CREATE OR REPLACE VIEW v_t AS SELECT x FROM t;", "ALTER TABLE t RENAME COLUMN x TO y;"],
        )
        self.assertEqual(verify_equivalence(files, plan), [])

    def test_rename_that_cannot_be_placed_is_refused(self) -> None:
        files = load(
            [
                ("001_a.sql", "CREATE TABLE t (x INT PRIMARY KEY);\nCREATE VIEW v_t AS SELECT x FROM t;\n"),
                ("002_b.sql", "ALTER TABLE t RENAME COLUMN x TO y;\nCREATE TABLE u (t_y INT REFERENCES t(y));\n"),
            ]
        )
        with self.assertRaises(ConsolidationError) as ctx:
            consolidate(files, build_graph(files))
        self.assertEqual([i.code for i in ctx.exception.issues], ["GRP001"])

    def test_drop_and_recreate_keeps_only_the_last_incarnation(self) -> None:
        files = load(
            [
                ("001_a.sql", "CREATE TABLE t (id INT);\nCREATE VIEW v AS SELECT id FROM t;\n"),
                ("002_b.sql", "DROP TABLE t CASCADE;\nCREATE TABLE t (id INT, note TEXT);\n"),
            ]
        )
        plan = consolidate(files, build_graph(files))
        self.assertEqual([p.sql for p in plan.statements()], ["CREATE TABLE IF NOT EXISTS t (id INT, note TEXT);"])
        self.assertEqual(plan.dropped_statements, 3)
        self.assertEqual(verify_equivalence(files, plan), [])

    def test_dropped_sequence_is_created_once(self) -> None:
        files = load(
            [
                ("001_a.sql", "CREATE SEQUENCE s;\n"),
                ("002_b.sql", "DROP SEQUENCE s;\n"),
                ("003_c.sql", "CREATE SEQUENCE s;\nCREATE TABLE t (id INT DEFAULT nextval('s'));\n"),
            ]
        )
        plan = consolidate(files, build_graph(files))
        self.assertEqual(
            [p.sql for p in plan.statements()],
            ["CREATE SEQUENCE s;", "CREATE TABLE IF NOT EXISTS t (id INT DEFAULT nextval('s'));"],
        )
        self.assertEqual(verify_equivalence(files, plan), [])

    def test_loose_drops_are_left_out(self) -> None:
        files = load(
            [
                ("001_a.sql", "CREATE SCHEMA audit;\nCREATE TABLE audit.log (id INT);\nCREATE EXTENSION pgcrypto;\n"),
                ("002_b.sql", "DROP SCHEMA audit CASCADE;\nDROP EXTENSION pgcrypto;\nCREATE SCHEMA reporting;\n"),
            ]
        )
        plan = consolidate(files, build_graph(files))
        self.assertEqual([g.file_name for g in plan.groups], ["01_misc.sql"])
        self.assertEqual([p.sql for p in plan.statements()], ["CREATE SCHEMA reporting;"])
        self.assertNotIn("DROP", plan.groups[0].render())
        self.assertEqual(verify_equivalence(files, plan), [])

    def test_summary_counts(self) -> None:
        files = load()
        plan = consolidate(files, build_graph(files))
        summary = plan.render_summary()
        self.assertIn("before: 4 files", summary)
        self.assertIn("after:  4 files", summary)
        self.assertIn("1. 01_foundation.sql - Extensions and types", summary)


class TestWriteAndCheck(unittest.TestCase):
    def test_check_detects_drift_and_stray_files(self) -> None:
        files = load()
        plan = consolidate(files, build_graph(files))
        with tempfile.TemporaryDirectory() as td:
            out = Path(td) / "out"
            written = write_plan(plan, out)
            self.assertEqual([p.name for p in written], [g.file_name for g in plan.groups])
            with contextlib.redirect_stderr(io.StringIO()):
                self.assertTrue(check_plan(plan, out))

            (out / "02_tables.sql").write_text("-- edited\n", encoding="utf-8")
            with contextlib.redirect_stderr(io.StringIO()) as err:
                self.assertFalse(check_plan(plan, out))
            self.assertIn("[check] drift detected", err.getvalue())

            write_plan(plan, out)
            (out / "99_extra.sql").write_text("SELECT 1;\n", encoding="utf-8")
            with contextlib.redirect_stderr(io.StringIO()) as err:
                self.assertFalse(check_plan(plan, out))
            self.assertIn("[check] unexpected file", err.getvalue())
