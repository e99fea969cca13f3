import tempfile
import unittest
from pathlib import Path

from mssql_catalog import ObjectNotFoundError
from output_sync import CACHE_FILE
from pull_objects import batch_reconciler, pull, pull_single, write_single
from sync_settings import DISABLED, Connection, Enabled, Settings


OBJECTS = [
    {"type": "P", "schema": "dbo", "name": "usp_GetUser", "text": "CREATE PROCEDURE dbo.usp_GetUser AS SELECT 1"},
    {"type": "V", "schema": "sales", "name": "vw_Orders", "text": "CREATE VIEW sales.vw_Orders AS SELECT 1"},
    {"type": "FN", "schema": "dbo", "name": "fn_Total", "text": "CREATE FUNCTION dbo.fn_Total() RETURNS INT AS BEGIN RETURN 1 END"},
    {"type": "TR", "schema": "dbo", "name": "tr_Audit", "text": "CREATE TRIGGER dbo.tr_Audit ON dbo.Users AFTER INSERT AS SELECT 1"},
    {"type": "P", "schema": "dbo", "name": "usp_Encrypted", "text": None},
]
SCHEMAS = [{"name": "dbo"}, {"name": "sales"}]
TABLES = [{"object_id": 10, "schema": "dbo", "name": "Status"}]
COLUMNS = [
    {"object_id": 10, "name": "Id", "datatype": "int", "is_nullable": False, "is_identity": True, "seed_value": 1, "increment_value": 1},
    {"object_id": 10, "name": "Label", "datatype": "nvarchar", "max_length": 40, "is_nullable": False},
    {"object_id": 20, "name": "Id", "datatype": "int", "is_nullable": False},
]
TYPES = [
    {"schema": "dbo", "name": "Email", "datatype": "varchar", "max_length": 320, "is_nullable": True, "object_id": None, "type": None},
    {"schema": "dbo", "name": "IdList", "datatype": "table type", "object_id": 20, "type": "TT"},
]
JOBS = [{"job_id": "A1", "name": "Nightly cleanup", "enabled": True, "description": ""}]
JOB_STEPS = [{"job_id": "A1", "step_id": 1, "step_name": "purge", "subsystem": "TSQL", "command": "EXEC dbo.usp_Purge"}]
STATUS_ROWS = [{"Id": 1, "Label": "Open"}, {"Id": 2, "Label": "Closed"}]


def make_settings(root: Path, **output) -> Settings:
    categories = {
        "schemas": Enabled("schemas"),
        "procs": Enabled("stored-procedures"),
        "views": Enabled("views"),
        "functions": Enabled("functions"),
        "triggers": DISABLED,
    }
    categories.update(output)
    return Settings(
        name="dev",
        connection=Connection(server="localhost", database="app"),
        root=root,
        output=categories,
        idempotency={"procs": "if-exists-drop"},
        current_version="1.0.0",
        eol="lf",
        data=("dbo.Stat*",),
    )


class CatalogSession:
    def __init__(self, objects, permissions=(), schemas=(), tables=(), columns=(), types=(), jobs=(), job_steps=()):
        self.objects = list(objects)
        self.permissions = list(permissions)
        self.schemas = list(schemas)
        self.tables = list(tables)
        self.columns = list(columns)
        self.types = list(types)
        self.jobs = list(jobs)
        self.job_steps = list(job_steps)
        self.opened = 0
        self.data_reads: list[tuple[str, str]] = []

    def __call__(self, connection):
        self.opened += 1
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def fetch_objects(self):
        return self.objects

    async def fetch_object(self, object_type, name):
        return [o for o in self.objects if o["type"] == object_type and o["name"] == name]

    async def fetch_permissions(self):
        return self.permissions

    async def fetch_schemas(self):
        return self.schemas

    async def fetch_tables(self):
        return self.tables

    async def fetch_columns(self):
        return self.columns

    async def fetch_primary_keys(self):
        return []

    async def fetch_foreign_keys(self):
        return []

    async def fetch_indexes(self):
        return []

    async def fetch_types(self):
        return self.types

    async def fetch_jobs(self):
        return self.jobs

    async def fetch_job_steps(self):
        return self.job_steps

    async def fetch_job_schedules(self):
        return []

    async def fetch_table_data(self, schema, name):
        self.data_reads.append((schema, name))
        return STATUS_ROWS


class TestPull(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.settings = make_settings(self.root)

    def tearDown(self) -> None:
        self._td.cleanup()

    async def test_pull_writes_enabled_categories(self) -> None:
        session = CatalogSession(OBJECTS, schemas=SCHEMAS, tables=TABLES, columns=COLUMNS, types=TYPES)
        with self.assertLogs("pull_objects", level="WARNING"):
            summary = await pull(self.settings, session)

        self.assertEqual(session.opened, 1)
        self.assertEqual(summary, "Successfully added 5, updated 0, and removed 0 files.")
        self.assertTrue((self.root / "schemas" / "sales.sql").exists())
        self.assertTrue((self.root / "stored-procedures" / "usp_GetUser.sql").exists())
        self.assertTrue((self.root / "views" / "sales.vw_Orders.sql").exists())
        self.assertTrue((self.root / "functions" / "dbo.fn_Total.sql").exists())
        self.assertFalse((self.root / "triggers").exists())
        self.assertFalse((self.root / "tables").exists())
        self.assertFalse((self.root / "stored-procedures" / "usp_Encrypted.sql").exists())
        self.assertEqual(session.data_reads, [])
        self.assertTrue((self.root / CACHE_FILE).exists())

    async def test_pull_writes_tables_types_data_and_jobs(self) -> None:
        sett = make_settings(
            self.root,
            tables=Enabled("tables"),
            types=Enabled("types"),
            data=Enabled("data"),
            jobs=Enabled("jobs"),
        )
        session = CatalogSession(
            [], tables=TABLES, columns=COLUMNS, types=TYPES, jobs=JOBS, job_steps=JOB_STEPS
        )
        summary = await pull(sett, session)

        self.assertEqual(summary, "Successfully added 5, updated 0, and removed 0 files.")
        self.assertEqual(session.data_reads, [("dbo", "Status")])

        table = (self.root / "tables" / "dbo.Status.sql").read_text(encoding="utf-8")
        self.assertIn("CREATE TABLE [dbo].[Status]", table)
        self.assertIn("[Label] nvarchar(20) NOT NULL", table)

        self.assertIn(
            "CREATE TYPE [dbo].[Email] FROM varchar(320) NULL",
            (self.root / "types" / "dbo.Email.sql").read_text(encoding="utf-8"),
        )
        table_type = (self.root / "types" / "dbo.IdList.sql").read_text(encoding="utf-8")
        self.assertIn("CREATE TYPE [dbo].[IdList] AS TABLE", table_type)
        self.assertIn("[Id] int NOT NULL", table_type)

        rows = (self.root / "data" / "dbo.Status.sql").read_text(encoding="utf-8")
        self.assertIn("INSERT INTO [dbo].[Status] ([Id], [Label]) VALUES (2, N'Closed')", rows)

        self.assertIn(
            "@job_name = N'Nightly cleanup'",
            (self.root / "jobs" / "Nightly cleanup.sql").read_text(encoding="utf-8"),
        )

    async def test_second_pull_removes_dropped_objects(self) -> None:
        with self.assertLogs("pull_objects", level="WARNING"):
            await pull(self.settings, CatalogSession(OBJECTS, schemas=SCHEMAS))

        table = self.root / "tables" / "dbo.Users.sql"
        table.parent.mkdir(parents=True)
        table.write_text("CREATE TABLE dbo.Users (Id INT)", encoding="utf-8")

        remaining = [o for o in OBJECTS if o["name"] not in ("vw_Orders", "usp_Encrypted")]
        summary = await pull(self.settings, CatalogSession(remaining, schemas=SCHEMAS))

        self.assertEqual(summary, "Successfully added 0, updated 0, and removed 1 files.")
        self.assertFalse((self.root / "views" / "sales.vw_Orders.sql").exists())
        # Tables output is disabled for this setting, so that tree is not touched.
        self.assertTrue(table.exists())

    async def test_pull_single_keeps_rest_of_tree(self) -> None:
        with self.assertLogs("pull_objects", level="WARNING"):
            await pull(self.settings, CatalogSession(OBJECTS, schemas=SCHEMAS))

        changed = [dict(OBJECTS[0], text="CREATE PROCEDURE dbo.usp_GetUser AS SELECT 2")]
        summary = await pull_single(self.settings, "p", "usp_GetUser", CatalogSession(changed))

        self.assertEqual(summary, "Successfully added 1, updated 1, and removed 0 files.")
        flat = self.root / "stored-procedures" / "usp_GetUser.sql"
        self.assertIn("SELECT 2", flat.read_text(encoding="utf-8"))
        self.assertEqual(flat.read_bytes(), (self.root / "1.0.0" / "stored-procedures" / "usp_GetUser.sql").read_bytes())
        self.assertTrue((self.root / "views" / "sales.vw_Orders.sql").exists())

    async def test_single_and_batch_pulls_share_cache_without_losing_entries(self) -> None:
        session = CatalogSession(OBJECTS[:1], schemas=SCHEMAS[:1])

        await pull_single(self.settings, "P", "usp_GetUser", session)
        self.assertEqual(
            await pull_single(self.settings, "P", "usp_GetUser", session),
            "Successfully added 0, updated 0, and removed 0 files.",
        )
        self.assertEqual(await pull(self.settings, session), "Successfully added 1, updated 0, and removed 0 files.")
        self.assertEqual(
            await pull_single(self.settings, "P", "usp_GetUser", session),
            "Successfully added 0, updated 0, and removed 0 files.",
        )
        self.assertEqual(await pull(self.settings, session), "Successfully added 0, updated 0, and removed 0 files.")

    async def test_pull_single_rejects_unknown_type(self) -> None:
        session = CatalogSession(OBJECTS)
        with self.assertRaises(ValueError):
            await pull_single(self.settings, "U", "Users", session)
        self.assertEqual(session.opened, 0)


class TestWriteSingle(unittest.TestCase):
    def test_missing_object_raises(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            sett = make_settings(Path(td))
            with self.assertRaises(ObjectNotFoundError):
                write_single(sett, batch_reconciler(sett), "P", "usp_Missing", [], [])


if __name__ == "__main__":
    unittest.main()
