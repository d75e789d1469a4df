import unittest

from schema_replay import diff_snapshots, replay_files
from sql_statements import parse_migration


def replay_text(text: str):
    return replay_files([parse_migration("001_m.sql", text)])


class TestSchemaReplay(unittest.TestCase):
    def test_columns_follow_alters(self) -> None:
        model = replay_text(
            "CREATE TABLE t (id INT, name TEXT, legacy TEXT);\n"
            "ALTER TABLE t ADD COLUMN age int, DROP COLUMN legacy;\n"
            "ALTER TABLE t ALTER COLUMN name TYPE varchar(40);\n"
            "ALTER TABLE t RENAME COLUMN age TO years;\n"
        )
        self.assertEqual(
            model.snapshot()["t"], ("TABLE", (("id", "INT"), ("name", "VARCHAR(40)"), ("years", "INT")), None, ())
        )

    def test_drop_removes_owned_objects(self) -> None:
        model = replay_text(
            "CREATE TABLE t (id INT);\n"
            "CREATE INDEX idx_t ON t (id);\n"
            "CREATE VIEW v AS SELECT id FROM t;\n"
            "DROP TABLE t;\n"
        )
        self.assertEqual(sorted(model.objects), ["v"])

    def test_cascade_drop_removes_dependent_views(self) -> None:
        model = replay_text(
            "CREATE TABLE t (id INT);\n"
            "CREATE VIEW v AS SELECT id FROM t;\n"
            "CREATE VIEW w AS SELECT id FROM v;\n"
            "DROP TABLE t CASCADE;\n"
        )
        self.assertEqual(model.objects, {})

    def test_rename_moves_owned_objects(self) -> None:
        model = replay_text(
            "CREATE TABLE people (id INT);\n"
            "CREATE INDEX idx_people ON people (id);\n"
            "ALTER TABLE people RENAME TO members;\n"
        )
        self.assertEqual(model.snapshot()["idx_people"], ("INDEX", (), "members", ("members",)))
        self.assertIn("members", model.objects)

    def test_repeated_create_is_ignored_unless_replaced(self) -> None:
        model = replay_text(
            "CREATE TABLE t (id INT);\n"
            "CREATE TABLE IF NOT EXISTS t (id INT, extra TEXT);\n"
            "CREATE VIEW v AS SELECT 1;\n"
            "CREATE OR REPLACE VIEW v AS SELECT 2;\n"
        )
        self.assertEqual(model.snapshot()["t"][1], (("id", "INT"),))
        self.assertEqual(model.objects["v"].create.raw_text, "CREATE OR REPLACE VIEW v AS SELECT 2;")

    def test_unanchored_statements_are_loose(self) -> None:
        model = replay_text("CREATE SCHEMA app;\nINSERT INTO missing VALUES (1);\nALTER TABLE ghost ADD COLUMN x INT;\n")
        self.assertEqual(len(model.loose), 3)

    def test_sequences_and_policies_are_tracked_by_name(self) -> None:
        model = replay_text(
            "CREATE SEQUENCE s;\n"
            "DROP SEQUENCE s;\n"
            "CREATE SEQUENCE s START 10;\n"
            "CREATE SEQUENCE IF NOT EXISTS s;\n"
            "CREATE TABLE accounts (id INT);\n"
            "CREATE POLICY p ON accounts USING (true);\n"
            "ALTER TABLE accounts RENAME TO members;\n"
            "DROP POLICY p ON members;\n"
        )
        self.assertEqual([stmt.raw_text for stmt in model.loose], ["CREATE SEQUENCE s START 10;"])
        self.assertEqual(model.objects["members"].attached[0].raw_text, "ALTER TABLE accounts RENAME TO members;")
        self.assertEqual(len(model.objects["members"].attached), 1)
        self.assertEqual(sorted(model.snapshot()), ["members", "s"])
        self.assertEqual(model.snapshot()["s"], ("SEQUENCE", (), None, ()))

    def test_dropped_table_forgets_its_policies(self) -> None:
        model = replay_text(
            "CREATE TABLE t (id INT);\n"
            "CREATE POLICY p ON t USING (true);\n"
            "DROP TABLE t;\n"
            "CREATE TABLE t (id INT);\n"
            "CREATE POLICY p ON t USING (true);\n"
        )
        self.assertEqual([stmt.raw_text for stmt in model.objects["t"].attached], ["CREATE POLICY p ON t USING (true);"])
        self.assertIn("p on t", model.snapshot())

    def test_schema_cascade_drops_qualified_objects(self) -> None:
        model = replay_text(
            "CREATE SCHEMA audit;\n"
            "CREATE SEQUENCE audit.ids;\n"
            "CREATE TABLE audit.events (id INT);\n"
            "CREATE TABLE users (id INT);\n"
            "DROP SCHEMA audit CASCADE;\n"
        )
        self.assertEqual(sorted(model.objects), ["users"])
        self.assertEqual(model.loose, [])
        self.assertEqual(model.named, {})

    def test_diff_reports_changed_references(self) -> None:
        expected = replay_text("CREATE TABLE a (id INT);\nCREATE VIEW v AS SELECT id FROM a;\n").snapshot()
        actual = replay_text("CREATE TABLE a (id INT);\nCREATE VIEW v AS SELECT 1 AS id;\n").snapshot()
        self.assertEqual(diff_snapshots(expected, actual), ["v: references a != -"])

    def test_diff_snapshots(self) -> None:
        expected = replay_text("CREATE TABLE t (id INT, name TEXT);\nCREATE TABLE gone (id INT);\n").snapshot()
        actual = replay_text("CREATE TABLE t (id BIGINT);\nCREATE VIEW extra AS SELECT 1;\n").snapshot()
        self.assertEqual(
            diff_snapshots(expected, actual),
            ["missing table gone", "unexpected view extra", "t: missing column name", "t.id: type INT != BIGINT"],
        )
        self.assertEqual(diff_snapshots(expected, expected), [])
