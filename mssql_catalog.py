"""Read object metadata from SQL Server catalog views over pyodbc.

Every session owns one connection and one worker thread. Queries are awaited
from the event loop while the blocking driver calls stay on that thread.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Sequence

from render_ddl import bracket_ident
from sync_settings import Connection

logger = logging.getLogger(__name__)

MODULE_TYPES = ("P", "V", "TF", "IF", "FN", "TR")

OBJECTS_READ = """
SELECT
    RTRIM(o.type) AS type,
    SCHEMA_NAME(o.schema_id) AS [schema],
    o.name AS name,
    COALESCE(m.definition, OBJECT_DEFINITION(o.object_id)) AS text
FROM sys.objects o
LEFT JOIN sys.sql_modules m ON o.object_id = m.object_id
WHERE o.is_ms_shipped = 0
  AND RTRIM(o.type) IN ('P', 'V', 'TF', 'IF', 'FN', 'TR')
ORDER BY [schema], name
"""

OBJECT_READ = """
SELECT
    RTRIM(o.type) AS type,
    SCHEMA_NAME(o.schema_id) AS [schema],
    o.name AS name,
    COALESCE(m.definition, OBJECT_DEFINITION(o.object_id)) AS text
FROM sys.objects o
LEFT JOIN sys.sql_modules m ON o.object_id = m.object_id
WHERE RTRIM(o.type) = ?
  AND o.name = ?
ORDER BY [schema]
"""

PERMISSIONS_READ = """
SELECT
    SCHEMA_NAME(o.schema_id) AS [schema],
    o.name AS name,
    p.permission_name AS permission,
    pr.name AS grantee,
    p.state_desc AS state
FROM sys.database_permissions p
JOIN sys.objects o ON p.major_id = o.object_id
JOIN sys.database_principals pr ON p.grantee_principal_id = pr.principal_id
WHERE p.class = 1
ORDER BY [schema], name, grantee, permission
"""

SCHEMAS_READ = """
SELECT DISTINCT SCHEMA_NAME(o.schema_id) AS name
FROM sys.objects o
WHERE o.is_ms_shipped = 0
ORDER BY name
"""

TABLES_READ = """
SELECT
    t.object_id AS object_id,
    SCHEMA_NAME(t.schema_id) AS [schema],
    t.name AS name
FROM sys.tables t
WHERE t.is_ms_shipped = 0
ORDER BY [schema], name
"""

# Covers table columns and table type columns alike, keyed by object_id.
COLUMNS_READ = """
SELECT
    c.object_id AS object_id,
    c.name AS name,
    tp.name AS datatype,
    SCHEMA_NAME(tp.schema_id) AS type_schema,
    tp.is_user_defined AS is_user_defined,
    c.max_length AS max_length,
    c.precision AS precision,
    c.scale AS scale,
    c.is_nullable AS is_nullable,
    c.is_computed AS is_computed,
    cc.definition AS formula,
    c.is_identity AS is_identity,
    CAST(ic.seed_value AS BIGINT) AS seed_value,
    CAST(ic.increment_value AS BIGINT) AS increment_value,
    dc.name AS default_name,
    dc.definition AS default_value
FROM sys.columns c
JOIN sys.types tp ON c.user_type_id = tp.user_type_id
LEFT JOIN sys.computed_columns cc ON c.object_id = cc.object_id AND c.column_id = cc.column_id
LEFT JOIN sys.identity_columns ic ON c.object_id = ic.object_id AND c.column_id = ic.column_id
LEFT JOIN sys.default_constraints dc ON c.default_object_id = dc.object_id
WHERE OBJECTPROPERTY(c.object_id, 'IsMSShipped') = 0
ORDER BY c.object_id, c.column_id
"""

PRIMARY_KEYS_READ = """
SELECT
    k.parent_object_id AS object_id,
    k.name AS name,
    i.type_desc AS type_desc,
    COL_NAME(ic.object_id, ic.column_id) AS column_name,
    ic.is_descending_key AS is_descending_key
FROM sys.key_constraints k
JOIN sys.indexes i ON i.object_id = k.parent_object_id AND i.index_id = k.unique_index_id
JOIN sys.index_columns ic ON ic.object_id = i.object_id AND ic.index_id = i.index_id
WHERE k.type = 'PK'
ORDER BY k.parent_object_id, ic.key_ordinal
"""

FOREIGN_KEYS_READ = """
SELECT
    fk.parent_object_id AS object_id,
    fk.name AS name,
    COL_NAME(fkc.parent_object_id, fkc.parent_column_id) AS column_name,
    SCHEMA_NAME(rt.schema_id) AS ref_schema,
    rt.name AS ref_table,
    COL_NAME(fkc.referenced_object_id, fkc.referenced_column_id) AS ref_column,
    fk.delete_referential_action_desc AS on_delete,
    fk.update_referential_action_desc AS on_update
FROM sys.foreign_keys fk
JOIN sys.foreign_key_columns fkc ON fk.object_id = fkc.constraint_object_id
JOIN sys.tables rt ON rt.object_id = fk.referenced_object_id
ORDER BY fk.parent_object_id, fk.name, fkc.constraint_column_id
"""

INDEXES_READ = """
SELECT
    i.object_id AS object_id,
    i.name AS name,
    i.type_desc AS type_desc,
    i.is_unique AS is_unique,
    COL_NAME(ic.object_id, ic.column_id) AS column_name,
    ic.is_descending_key AS is_descending_key,
    ic.is_included_column AS is_included_column
FROM sys.indexes i
JOIN sys.index_columns ic ON ic.object_id = i.object_id AND ic.index_id = i.index_id
WHERE i.is_primary_key = 0
  AND i.is_unique_constraint = 0
  AND i.type > 0
  AND OBJECTPROPERTY(i.object_id, 'IsMSShipped') = 0
  AND OBJECTPROPERTY(i.object_id, 'IsUserTable') = 1
ORDER BY i.object_id, i.name, ic.is_included_column, ic.key_ordinal, ic.index_column_id
"""

TYPES_READ = """
SELECT
    SCHEMA_NAME(t.schema_id) AS [schema],
    t.name AS name,
    TYPE_NAME(t.system_type_id) AS datatype,
    t.max_length AS max_length,
    t.precision AS precision,
    t.scale AS scale,
    t.is_nullable AS is_nullable,
    tt.type_table_object_id AS object_id,
    CASE WHEN t.is_table_type = 1 THEN 'TT' END AS [type]
FROM sys.types t
LEFT JOIN sys.table_types tt ON t.user_type_id = tt.user_type_id
WHERE t.is_user_defined = 1
ORDER BY [schema], name
"""

# Jobs are scoped to the ones with at least one step in the synced database.
JOBS_READ = """
SELECT
    CONVERT(NVARCHAR(36), j.job_id) AS job_id,
    j.name AS name,
    j.enabled AS enabled,
    j.description AS description
FROM msdb.dbo.sysjobs j
WHERE j.job_id IN (SELECT s.job_id FROM msdb.dbo.sysjobsteps s WHERE s.database_name = ?)
ORDER BY j.name
"""

JOB_STEPS_READ = """
SELECT
    CONVERT(NVARCHAR(36), s.job_id) AS job_id,
    s.step_id AS step_id,
    s.step_name AS step_name,
    s.subsystem AS subsystem,
    s.command AS command,
    s.database_name AS database_name,
    s.on_success_action AS on_success_action,
    s.on_fail_action AS on_fail_action,
    s.retry_attempts AS retry_attempts,
    s.retry_interval AS retry_interval
FROM msdb.dbo.sysjobsteps s
WHERE s.job_id IN (SELECT x.job_id FROM msdb.dbo.sysjobsteps x WHERE x.database_name = ?)
ORDER BY s.job_id, s.step_id
"""

JOB_SCHEDULES_READ = """
SELECT
    CONVERT(NVARCHAR(36), js.job_id) AS job_id,
    s.name AS name,
    s.enabled AS enabled,
    s.freq_type AS freq_type,
    s.freq_interval AS freq_interval,
    s.freq_subday_type AS freq_subday_type,
    s.freq_subday_interval AS freq_subday_interval,
    s.freq_relative_interval AS freq_relative_interval,
    s.freq_recurrence_factor AS freq_recurrence_factor,
    s.active_start_date AS active_start_date,
    s.active_end_date AS active_end_date,
    s.active_start_time AS active_start_time,
    s.active_end_time AS active_end_time
FROM msdb.dbo.sysjobschedules js
JOIN msdb.dbo.sysschedules s ON js.schedule_id = s.schedule_id
ORDER BY js.job_id, s.name
"""


class RemoteQueryError(RuntimeError):
    pass


class ObjectNotFoundError(LookupError):
    pass


def load_driver() -> Any:
    # pyodbc needs the unixODBC driver manager at import time.
    try:
        import pyodbc
    except ImportError as exc:
        raise RemoteQueryError(f"pyodbc could not be loaded: {exc}") from exc
    return pyodbc


def rows_from_cursor(cursor: Any) -> list[dict[str, Any]]:
    if cursor.description is None:
        return []
    columns = [col[0] for col in cursor.description]
    rows: list[dict[str, Any]] = []
    for record in cursor.fetchall():
        row = dict(zip(columns, record))
        if isinstance(row.get("type"), str):
            row["type"] = row["type"].strip()
        rows.append(row)
    return rows


class RemoteSession:
    def __init__(self, connection: Connection):
        self.connection = connection
        self._conn: Any = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mssql-session")

    async def _run(self, fn, *args):
        pyodbc = load_driver()
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, fn, *args)
        except pyodbc.Error as exc:
            raise RemoteQueryError(f"{self.connection.server}/{self.connection.database}: {exc}") from exc

    def _connect(self) -> None:
        conn = load_driver().connect(
            self.connection.odbc_string(),
            timeout=self.connection.timeout,
            autocommit=True,
        )
        conn.timeout = self.connection.timeout
        self._conn = conn

    def _query(self, sql: str, params: Sequence[Any]) -> list[dict[str, Any]]:
        if self._conn is None:
            raise RemoteQueryError("Session is not open")
        cursor = self._conn.cursor()
        try:
            cursor.execute(sql, *params)
            return rows_from_cursor(cursor)
        finally:
            cursor.close()

    def _close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            conn.close()

    async def open(self) -> "RemoteSession":
        logger.debug("Connecting to %s/%s", self.connection.server, self.connection.database)
        await self._run(self._connect)
        return self

    async def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return await self._run(self._query, sql, tuple(params))

    async def close(self) -> None:
        try:
            await self._run(self._close)
        finally:
            self._executor.shutdown(wait=False)

    async def __aenter__(self) -> "RemoteSession":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def fetch_object(self, object_type: str, name: str) -> list[dict[str, Any]]:
        return await self.query(OBJECT_READ, (object_type.strip().upper(), name))

    async def fetch_objects(self) -> list[dict[str, Any]]:
        return await self.query(OBJECTS_READ)

    async def fetch_permissions(self) -> list[dict[str, Any]]:
        return await self.query(PERMISSIONS_READ)

    async def fetch_schemas(self) -> list[dict[str, Any]]:
        return await self.query(SCHEMAS_READ)

    async def fetch_tables(self) -> list[dict[str, Any]]:
        return await self.query(TABLES_READ)

    async def fetch_columns(self) -> list[dict[str, Any]]:
        return await self.query(COLUMNS_READ)

    async def fetch_primary_keys(self) -> list[dict[str, Any]]:
        return await self.query(PRIMARY_KEYS_READ)

    async def fetch_foreign_keys(self) -> list[dict[str, Any]]:
        return await self.query(FOREIGN_KEYS_READ)

    async def fetch_indexes(self) -> list[dict[str, Any]]:
        return await self.query(INDEXES_READ)

    async def fetch_types(self) -> list[dict[str, Any]]:
        return await self.query(TYPES_READ)

    async def fetch_jobs(self) -> list[dict[str, Any]]:
        return await self.query(JOBS_READ, (self.connection.database,))

    async def fetch_job_steps(self) -> list[dict[str, Any]]:
        return await self.query(JOB_STEPS_READ, (self.connection.database,))

    async def fetch_job_schedules(self) -> list[dict[str, Any]]:
        return await self.query(JOB_SCHEDULES_READ)

    async def fetch_table_data(self, schema: str, name: str) -> list[dict[str, Any]]:
        return await self.query(f"SELECT * FROM {bracket_ident(schema)}.{bracket_ident(name)}")


def open_session(connection: Connection) -> RemoteSession:
    return RemoteSession(connection)
