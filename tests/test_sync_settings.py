import tempfile
import unittest
from pathlib import Path

import yaml

from sync_settings import (
    DISABLED,
    Enabled,
    SettingsError,
    bump_version,
    get_setting,
    load_settings,
    parse_category,
)


CONFIG = """
settings:
  - name: dev
    current_version: "1.0.0"
    eol: lf
    connection:
      server: dev.example.com\\sql,1435
      database: awesome-db
      user: example
      password: qwerty
    output:
      root: ./my-database
      procs: ./stored-procedures
      views: ./views
      functions: ./functions
      temps: temp_files
      tables: false
    idempotency:
      procs: if-exists-drop
      views: false
  - name: Prod
    currentVersion: 2.1
    connection:
      server: prod.example.com
      port: 1433
      database: awesome-db
    output:
      root: /srv/scripts
      procs: procs
"""


class TestSyncSettings(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.dir = Path(self._td.name)
        self.config = self.dir / "sqlsync.yaml"
        self.config.write_text(CONFIG, encoding="utf-8")

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_parse_category_variants(self) -> None:
        self.assertEqual(parse_category("./procs/"), Enabled("procs"))
        self.assertEqual(parse_category("nested\\procs"), Enabled("nested/procs"))
        self.assertIs(parse_category(False), DISABLED)
        self.assertIs(parse_category(None), DISABLED)
        self.assertIs(parse_category(""), DISABLED)
        with self.assertRaises(SettingsError):
            parse_category(3)

    def test_loads_settings(self) -> None:
        dev, prod = load_settings(self.config)

        self.assertEqual(dev.name, "dev")
        self.assertEqual(dev.root, self.dir.resolve() / "my-database")
        self.assertEqual(dev.category("procs"), Enabled("stored-procedures"))
        self.assertEqual(dev.subpath("temps"), "temp_files")
        self.assertFalse(dev.is_enabled("tables"))
        self.assertFalse(dev.is_enabled("jobs"))
        self.assertEqual(dev.idempotency_for("procs"), "if-exists-drop")
        self.assertIsNone(dev.idempotency_for("views"))
        self.assertEqual(dev.eol, "lf")
        self.assertEqual(dev.connection.server, "dev.example.com\\sql")
        self.assertEqual(dev.connection.port, 1435)

        self.assertEqual(prod.current_version, "2.1")
        self.assertEqual(prod.root, Path("/srv/scripts"))
        self.assertEqual(prod.eol, "auto")

    def test_odbc_string(self) -> None:
        _, prod = load_settings(self.config)
        conn = prod.connection.odbc_string()
        self.assertIn("SERVER=prod.example.com,1433;", conn)
        self.assertIn("DATABASE=awesome-db;", conn)
        self.assertIn("Trusted_Connection=yes;", conn)

    def test_get_setting_is_case_insensitive(self) -> None:
        settings = load_settings(self.config)
        self.assertEqual(get_setting(settings, "prod").name, "Prod")
        self.assertEqual(get_setting(settings).name, "dev")
        with self.assertRaises(SettingsError):
            get_setting(settings, "qa")

    def test_missing_config_is_an_error(self) -> None:
        with self.assertRaises(SettingsError):
            load_settings(self.dir / "absent.yaml")

    def test_invalid_idempotency_is_an_error(self) -> None:
        self.config.write_text(
            CONFIG.replace("procs: if-exists-drop", "procs: sometimes"),
            encoding="utf-8",
        )
        with self.assertRaises(SettingsError):
            load_settings(self.config)

    def test_bump_version(self) -> None:
        bump_version(self.config, "PROD", "3.0.0")

        data = yaml.safe_load(self.config.read_text(encoding="utf-8"))
        prod = data["settings"][1]
        self.assertEqual(prod["current_version"], "3.0.0")
        self.assertNotIn("currentVersion", prod)
        self.assertEqual(load_settings(self.config)[1].current_version, "3.0.0")

    def test_bump_unknown_setting(self) -> None:
        with self.assertRaises(SettingsError):
            bump_version(self.config, "qa", "3.0.0")

    def test_data_tables_and_options(self) -> None:
        text = (
            CONFIG.replace("    eol: lf\n", "    eol: lf\n    data: [dbo.Lookup*]\n    include_constraint_name: true\n")
            .replace("      views: false\n", "      views: false\n      data: delete-and-reseed\n")
            + "data:\n  - ref.*\n"
        )
        self.config.write_text(text, encoding="utf-8")
        dev, prod = load_settings(self.config)

        self.assertEqual(dev.data, ("dbo.Lookup*",))
        self.assertTrue(dev.includes_data("DBO", "LookupColors"))
        self.assertFalse(dev.includes_data("dbo", "Users"))
        self.assertTrue(dev.include_constraint_name)
        self.assertEqual(dev.idempotency_for("data"), "delete-and-reseed")
        self.assertEqual(prod.data, ("ref.*",))
        self.assertFalse(prod.include_constraint_name)

    def test_data_idempotency_tags_only_apply_to_data(self) -> None:
        self.config.write_text(
            CONFIG.replace("procs: if-exists-drop", "procs: truncate"),
            encoding="utf-8",
        )
        with self.assertRaises(SettingsError):
            load_settings(self.config)


if __name__ == "__main__":
    unittest.main()
