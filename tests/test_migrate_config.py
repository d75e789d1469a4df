import tempfile
import unittest
from pathlib import Path

from consolidate_migrations import GroupRule
from migrate_config import MigrateConfig, config_from_dict, load_config


class TestMigrateConfig(unittest.TestCase):
    def test_defaults(self) -> None:
        config = MigrateConfig()
        self.assertEqual(config.migrations_dir, Path("migrations"))
        self.assertEqual(config.output_dir, Path("migrations_v2"))
        self.assertEqual(config.tracking_table, "_migrate_history")
        assignment = config.group_assignment()
        self.assertTrue(assignment.heuristic)
        self.assertEqual(assignment.default_group, "misc")

    def test_full_document(self) -> None:
        config = config_from_dict(
            {
                "migrations_dir": "db/migrations",
                "output_dir": "db/consolidated",
                "default_group": "rest",
                "tracking_table": "ops.history",
                "groups": [
                    {"name": "core", "description": "Core tables", "objects": ["Users", "orders*"]},
                    {"name": "legacy", "files": "001_"},
                ],
                "rules": {"disabled": ["idem001"], "drop_recreate_max_file_distance": 3},
            }
        )
        self.assertEqual(config.migrations_dir, Path("db/migrations"))
        self.assertEqual(config.default_group, "rest")
        self.assertEqual(config.tracking_table, "ops.history")
        self.assertEqual(
            config.groups,
            [
                GroupRule("core", "Core tables", objects=("users", "orders*")),
                GroupRule("legacy", files=("001_",)),
            ],
        )
        self.assertEqual(config.rules.disabled, frozenset({"IDEM001"}))
        self.assertEqual(config.rules.drop_recreate_max_file_distance, 3)
        assignment = config.group_assignment()
        self.assertFalse(assignment.heuristic)
        self.assertEqual(assignment.default_group, "rest")

    def test_errors_name_the_key(self) -> None:
        cases = [
            ({"unknown": 1}, "config: unknown keys"),
            ({"groups": {"name": "x"}}, "groups: expected a list"),
            ({"groups": [{"description": "no name"}]}, "groups[0].name"),
            ({"groups": [{"name": "a"}, {"name": "a"}]}, "groups[1].name: duplicate"),
            ({"groups": [{"name": "a", "objects": [1]}]}, "groups[0].objects"),
            ({"rules": {"drop_recreate_max_file_distance": -1}}, "rules.drop_recreate_max_file_distance"),
            ({"rules": {"strict": True}}, "rules: unknown keys"),
            ({"output_dir": ""}, "output_dir"),
        ]
        for data, message in cases:
            with self.subTest(data=data):
                with self.assertRaises(ValueError) as ctx:
                    config_from_dict(data)
                self.assertIn(message, str(ctx.exception))

    def test_load_yaml_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "migrate.yaml"
            path.write_text(
                "migrations_dir: sql\n"
                "groups:\n"
                "  - name: core\n"
                "    objects: [users]\n",
                encoding="utf-8",
            )
            config = load_config(path)
            self.assertEqual(config.migrations_dir, Path("sql"))
            self.assertEqual([g.name for g in config.groups], ["core"])

            empty = Path(td) / "empty.yaml"
            empty.write_text("", encoding="utf-8")
            self.assertEqual(load_config(empty), MigrateConfig())

            broken = Path(td) / "broken.yaml"
            broken.write_text("groups: [\n", encoding="utf-8")
            with self.assertRaises(ValueError):
                load_config(broken)

    def test_missing_explicit_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(FileNotFoundError):
                load_config(Path(td) / "nope.yaml")
