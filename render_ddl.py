"""Render SQL Server object definitions as re-runnable scripts."""

from __future__ import annotations

import datetime
import decimal
from typing import Any, Iterable

from sync_settings import Settings

BATCH_SEPARATOR = "GO"

OBJECT_TYPES = {
    "P": "procs",
    "V": "views",
    "TF": "functions",
    "IF": "functions",
    "FN": "functions",
    "TR": "triggers",
}

DROP_KEYWORDS = {
    "procs": "PROCEDURE",
    "views": "VIEW",
    "functions": "FUNCTION",
    "triggers": "TRIGGER",
}


def bracket_ident(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def quote_literal(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def qualified_name(row: dict[str, Any]) -> str:
    return f"{bracket_ident(str(row['schema']))}.{bracket_ident(str(row['name']))}"


def category_for_type(object_type: str) -> str:
    try:
        return OBJECT_TYPES[object_type.strip().upper()]
    except KeyError:
        raise ValueError(f"Unsupported object type: {object_type!r}") from None


def artifact_name(category: str, row: dict[str, Any]) -> str:
    if category in ("procs", "schemas", "jobs"):
        return f"{row['name']}.sql"
    return f"{row['schema']}.{row['name']}.sql"


def object_definition(row: dict[str, Any]) -> str:
    text = row.get("text")
    if text is None:
        raise ValueError(f"No definition returned for {row.get('schema')}.{row.get('name')} (encrypted?)")
    return str(text).strip()


def exists_guard(row: dict[str, Any], negate: bool = False) -> str:
    keyword = "IF NOT EXISTS" if negate else "IF EXISTS"
    object_id = f"OBJECT_ID({quote_literal(qualified_name(row))})"
    object_type = quote_literal(str(row["type"]).strip())
    return f"{keyword} (SELECT * FROM sys.objects WHERE object_id = {object_id} AND type = {object_type})"


def module_script(category: str, row: dict[str, Any], settings: Settings) -> str:
    lines: list[str] = []
    idempotency = settings.idempotency_for(category)
    definition = object_definition(row)

    if idempotency == "if-exists-drop":
        lines.append(exists_guard(row))
        lines.append(f"DROP {DROP_KEYWORDS[category]} {qualified_name(row)}")
        lines.append(BATCH_SEPARATOR)
        lines.append(definition)
    elif idempotency == "if-not-exists":
        # CREATE must be first in its batch, so run it through sp_executesql.
        lines.append(exists_guard(row, negate=True))
        lines.append(f"EXEC sp_executesql N{quote_literal(definition)}")
    else:
        lines.append(definition)

    lines.append(BATCH_SEPARATOR)
    return "\n".join(lines) + "\n"


def stored_procedure(row: dict[str, Any], settings: Settings) -> str:
    return module_script("procs", row, settings)


def view(row: dict[str, Any], settings: Settings) -> str:
    return module_script("views", row, settings)


def function(row: dict[str, Any], settings: Settings) -> str:
    return module_script("functions", row, settings)


def trigger(row: dict[str, Any], settings: Settings) -> str:
    return module_script("triggers", row, settings)


def schema(row: dict[str, Any]) -> str:
    name = str(row["name"])
    return "\n".join(
        [
            f"IF NOT EXISTS (SELECT * FROM sys.schemas WHERE name = {quote_literal(name)})",
            f"EXEC({quote_literal('CREATE SCHEMA ' + bracket_ident(name))})",
            BATCH_SEPARATOR,
        ]
    ) + "\n"


def permissions(rows: Iterable[dict[str, Any]], row: dict[str, Any]) -> str:
    grants: list[str] = []
    for perm in rows:
        if str(perm.get("name", "")).lower() != str(row["name"]).lower():
            continue
        if str(perm.get("schema", row["schema"])).lower() != str(row["schema"]).lower():
            continue
        state = str(perm.get("state", "GRANT")).strip().upper() or "GRANT"
        if state == "GRANT_WITH_GRANT_OPTION":
            grants.append(
                f"GRANT {perm['permission']} ON {qualified_name(row)} TO {bracket_ident(str(perm['grantee']))} WITH GRANT OPTION"
            )
        else:
            grants.append(f"{state} {perm['permission']} ON {qualified_name(row)} TO {bracket_ident(str(perm['grantee']))}")

    if not grants:
        return ""
    grants.sort()
    return "\n" + "\n".join(grants) + "\n" + BATCH_SEPARATOR + "\n"


def render(kind: str, row: dict[str, Any], settings: Settings, perms: Iterable[dict[str, Any]] = ()) -> str:
    """Render one object; ``kind`` is an object type code such as ``P`` or ``FN``."""
    category = category_for_type(kind)
    if category == "procs":
        return stored_procedure(row, settings) + permissions(perms, row)
    if category == "views":
        return view(row, settings)
    if category == "functions":
        return function(row, settings)
    return trigger(row, settings)


SIZED_TYPES = {"char", "varchar", "binary", "varbinary", "nchar", "nvarchar"}
UNICODE_TYPES = {"nchar", "nvarchar"}
PRECISION_TYPES = {"decimal", "numeric"}
SCALE_TYPES = {"datetime2", "datetimeoffset", "time"}


def rows_for(rows: Iterable[dict[str, Any]], object_id: Any) -> list[dict[str, Any]]:
    return [row for row in rows if row.get("object_id") == object_id]


def grouped(rows: Iterable[dict[str, Any]]) -> dict[str, list[dict[str, Any]]]:
    """Group constraint/index column rows by name, keeping query order."""
    groups: dict[str, list[dict[str, Any]]] = {}
    for row in rows:
        groups.setdefault(str(row["name"]), []).append(row)
    return groups


def data_type(col: dict[str, Any]) -> str:
    name = str(col["datatype"])
    if col.get("is_user_defined"):
        return f"{bracket_ident(str(col['type_schema']))}.{bracket_ident(name)}"

    lowered = name.lower()
    if lowered in SIZED_TYPES:
        length = int(col.get("max_length") or 0)
        if length == -1:
            return f"{lowered}(max)"
        if lowered in UNICODE_TYPES:
            length //= 2
        return f"{lowered}({length})"
    if lowered in PRECISION_TYPES:
        return f"{lowered}({col['precision']}, {col['scale']})"
    if lowered in SCALE_TYPES:
        return f"{lowered}({col['scale']})"
    return lowered


def column_definition(col: dict[str, Any], settings: Settings) -> str:
    name = bracket_ident(str(col["name"]))
    if col.get("is_computed"):
        return f"{name} AS {col['formula']}"

    parts = [name, data_type(col)]
    if col.get("is_identity"):
        parts.append(f"IDENTITY({col.get('seed_value', 1)}, {col.get('increment_value', 1)})")
    parts.append("NULL" if col.get("is_nullable") else "NOT NULL")
    if col.get("default_value") is not None:
        if settings.include_constraint_name and col.get("default_name"):
            parts.append(f"CONSTRAINT {bracket_ident(str(col['default_name']))}")
        parts.append(f"DEFAULT {col['default_value']}")
    return " ".join(parts)


def key_columns(rows: list[dict[str, Any]]) -> str:
    return ", ".join(
        f"{bracket_ident(str(row['column_name']))} {'DESC' if row.get('is_descending_key') else 'ASC'}"
        for row in rows
    )


def primary_key(rows: list[dict[str, Any]], settings: Settings) -> str:
    clustered = "NONCLUSTERED" if "NONCLUSTERED" in str(rows[0].get("type_desc", "")).upper() else "CLUSTERED"
    prefix = f"CONSTRAINT {bracket_ident(str(rows[0]['name']))} " if settings.include_constraint_name else ""
    return f"{prefix}PRIMARY KEY {clustered} ({key_columns(rows)})"


def foreign_key(table: dict[str, Any], name: str, rows: list[dict[str, Any]]) -> str:
    first = rows[0]
    target = f"{bracket_ident(str(first['ref_schema']))}.{bracket_ident(str(first['ref_table']))}"
    columns = ", ".join(bracket_ident(str(row["column_name"])) for row in rows)
    ref_columns = ", ".join(bracket_ident(str(row["ref_column"])) for row in rows)
    fk_id = quote_literal(f"{bracket_ident(str(table['schema']))}.{bracket_ident(name)}")

    lines = [
        f"IF OBJECT_ID({fk_id}, 'F') IS NULL",
        f"ALTER TABLE {qualified_name(table)} ADD CONSTRAINT {bracket_ident(name)}"
        f" FOREIGN KEY ({columns}) REFERENCES {target} ({ref_columns})",
    ]
    for action, key in (("DELETE", "on_delete"), ("UPDATE", "on_update")):
        rule = str(first.get(key) or "NO_ACTION").replace("_", " ")
        if rule != "NO ACTION":
            lines[-1] += f" ON {action} {rule}"
    return "\n".join(lines)


def index(table: dict[str, Any], name: str, rows: list[dict[str, Any]]) -> str:
    first = rows[0]
    unique = "UNIQUE " if first.get("is_unique") else ""
    clustered = "CLUSTERED" if str(first.get("type_desc", "")).upper() == "CLUSTERED" else "NONCLUSTERED"
    keys = [row for row in rows if not row.get("is_included_column")]
    included = [row for row in rows if row.get("is_included_column")]

    statement = f"CREATE {unique}{clustered} INDEX {bracket_ident(name)} ON {qualified_name(table)} ({key_columns(keys)})"
    if included:
        statement += " INCLUDE (" + ", ".join(bracket_ident(str(row["column_name"])) for row in included) + ")"
    return "\n".join(
        [
            f"IF NOT EXISTS (SELECT * FROM sys.indexes WHERE object_id = OBJECT_ID({quote_literal(qualified_name(table))})"
            f" AND name = {quote_literal(name)})",
            statement,
        ]
    )


def table(
    row: dict[str, Any],
    columns: Iterable[dict[str, Any]],
    primary_keys: Iterable[dict[str, Any]],
    foreign_keys: Iterable[dict[str, Any]],
    indexes: Iterable[dict[str, Any]],
    settings: Settings,
) -> str:
    object_id = row["object_id"]
    name = qualified_name(row)
    lines: list[str] = []

    idempotency = settings.idempotency_for("tables")
    if idempotency == "if-exists-drop":
        lines.append(f"IF OBJECT_ID({quote_literal(name)}, 'U') IS NOT NULL")
        lines.append(f"DROP TABLE {name}")
        lines.append(BATCH_SEPARATOR)
    elif idempotency == "if-not-exists":
        lines.append(f"IF OBJECT_ID({quote_literal(name)}, 'U') IS NULL")

    body = [column_definition(col, settings) for col in rows_for(columns, object_id)]
    pk_rows = rows_for(primary_keys, object_id)
    if pk_rows:
        body.append(primary_key(pk_rows, settings))

    lines.append(f"CREATE TABLE {name}")
    lines.append("(")
    lines.append(",\n".join(f"    {item}" for item in body))
    lines.append(")")
    lines.append(BATCH_SEPARATOR)

    for fk_name, fk_rows in grouped(rows_for(foreign_keys, object_id)).items():
        lines.append(foreign_key(row, fk_name, fk_rows))
        lines.append(BATCH_SEPARATOR)
    for index_name, index_rows in grouped(rows_for(indexes, object_id)).items():
        lines.append(index(row, index_name, index_rows))
        lines.append(BATCH_SEPARATOR)

    return "\n".join(lines) + "\n"


def type_guard(row: dict[str, Any], settings: Settings) -> list[str]:
    name = qualified_name(row)
    idempotency = settings.idempotency_for("types")
    if idempotency == "if-exists-drop":
        return [f"IF TYPE_ID({quote_literal(name)}) IS NOT NULL", f"DROP TYPE {name}", BATCH_SEPARATOR]
    if idempotency == "if-not-exists":
        return [f"IF TYPE_ID({quote_literal(name)}) IS NULL"]
    return []


def user_type(row: dict[str, Any], settings: Settings) -> str:
    lines = type_guard(row, settings)
    nullable = "NULL" if row.get("is_nullable") else "NOT NULL"
    lines.append(f"CREATE TYPE {qualified_name(row)} FROM {data_type(row)} {nullable}")
    lines.append(BATCH_SEPARATOR)
    return "\n".join(lines) + "\n"


def table_type(row: dict[str, Any], columns: Iterable[dict[str, Any]], settings: Settings) -> str:
    lines = type_guard(row, settings)
    body = [column_definition(col, settings) for col in rows_for(columns, row["object_id"])]
    lines.append(f"CREATE TYPE {qualified_name(row)} AS TABLE")
    lines.append("(")
    lines.append(",\n".join(f"    {item}" for item in body))
    lines.append(")")
    lines.append(BATCH_SEPARATOR)
    return "\n".join(lines) + "\n"


def sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, decimal.Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex().upper()
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return quote_literal(value.isoformat())
    return "N" + quote_literal(str(value))


def data(
    row: dict[str, Any],
    records: Iterable[dict[str, Any]],
    columns: Iterable[dict[str, Any]],
    settings: Settings,
) -> str:
    name = qualified_name(row)
    table_columns = rows_for(columns, row["object_id"])
    identity = any(col.get("is_identity") for col in table_columns)
    skipped = {
        str(col["name"])
        for col in table_columns
        if col.get("is_computed") or str(col.get("datatype", "")).lower() in ("timestamp", "rowversion")
    }
    lines: list[str] = []

    idempotency = settings.idempotency_for("data")
    if idempotency == "truncate":
        lines.append(f"TRUNCATE TABLE {name}")
    elif idempotency in ("delete", "delete-and-reseed"):
        lines.append(f"DELETE FROM {name}")
        if idempotency == "delete-and-reseed" and identity:
            lines.append(f"DBCC CHECKIDENT ({quote_literal(name)}, RESEED, 0)")
    if lines:
        lines.append(BATCH_SEPARATOR)

    if identity:
        lines.append(f"SET IDENTITY_INSERT {name} ON")
    for record in records:
        keys = [key for key in record if key not in skipped]
        names = ", ".join(bracket_ident(key) for key in keys)
        values = ", ".join(sql_literal(record[key]) for key in keys)
        lines.append(f"INSERT INTO {name} ({names}) VALUES ({values})")
    if identity:
        lines.append(f"SET IDENTITY_INSERT {name} OFF")

    lines.append(BATCH_SEPARATOR)
    return "\n".join(lines) + "\n"


def job_parameters(params: list[tuple[str, Any]]) -> str:
    return ",\n    ".join(f"@{key} = {sql_literal(value)}" for key, value in params)


def job(
    row: dict[str, Any],
    steps: Iterable[dict[str, Any]],
    schedules: Iterable[dict[str, Any]],
    settings: Settings,
) -> str:
    """Script a SQL Agent job through the msdb stored procedures."""
    job_name = str(row["name"])
    exists = f"EXISTS (SELECT * FROM msdb.dbo.sysjobs WHERE name = N{quote_literal(job_name)})"
    lines: list[str] = []

    idempotency = settings.idempotency_for("jobs")
    if idempotency == "if-exists-drop":
        lines.append(f"IF {exists}")
        lines.append(f"EXEC msdb.dbo.sp_delete_job @job_name = N{quote_literal(job_name)}")
        lines.append(BATCH_SEPARATOR)
    elif idempotency == "if-not-exists":
        lines.append(f"IF NOT {exists}")
    lines.append("BEGIN")

    body = [
        job_parameters(
            [
                ("job_name", job_name),
                ("enabled", int(bool(row.get("enabled", 1)))),
                ("description", row.get("description") or ""),
            ]
        )
    ]
    procs = ["sp_add_job"]
    for step in sorted(steps, key=lambda s: int(s["step_id"])):
        procs.append("sp_add_jobstep")
        body.append(
            job_parameters(
                [
                    ("job_name", job_name),
                    ("step_id", step["step_id"]),
                    ("step_name", step["step_name"]),
                    ("subsystem", step["subsystem"]),
                    ("command", step["command"]),
                    ("database_name", step.get("database_name") or settings.connection.database),
                    ("on_success_action", step.get("on_success_action", 1)),
                    ("on_fail_action", step.get("on_fail_action", 2)),
                    ("retry_attempts", step.get("retry_attempts", 0)),
                    ("retry_interval", step.get("retry_interval", 0)),
                ]
            )
        )
    for schedule in schedules:
        procs.append("sp_add_jobschedule")
        body.append(
            job_parameters(
                [("job_name", job_name), ("name", schedule["name"])]
                + [
                    (key, schedule.get(key))
                    for key in (
                        "enabled",
                        "freq_type",
                        "freq_interval",
                        "freq_subday_type",
                        "freq_subday_interval",
                        "freq_relative_interval",
                        "freq_recurrence_factor",
                        "active_start_date",
                        "active_end_date",
                        "active_start_time",
                        "active_end_time",
                    )
                    if schedule.get(key) is not None
                ]
            )
        )
    procs.append("sp_add_jobserver")
    body.append(job_parameters([("job_name", job_name), ("server_name", "(local)")]))

    for proc, params in zip(procs, body):
        lines.append(f"    EXEC msdb.dbo.{proc}\n    {params}")
    lines.append("END")
    lines.append(BATCH_SEPARATOR)
    return "\n".join(lines) + "\n"


def render_audit_header(connection_name: str, version: str, label: str) -> str:
    title = f"{connection_name} Upgrade {version} - 3 {label}s"
    rule = "-- " + "=" * max(len(title), 40)
    return "\n".join(
        [
            rule,
            f"-- {title}",
            rule,
            "IF OBJECT_ID('dbo.UpgradeAudit', 'U') IS NULL",
            "    CREATE TABLE dbo.UpgradeAudit (",
            "        ConnectionName NVARCHAR(128) NOT NULL,",
            "        Version NVARCHAR(64) NOT NULL,",
            "        Category NVARCHAR(64) NOT NULL,",
            "        AppliedOn DATETIME2 NOT NULL DEFAULT SYSUTCDATETIME()",
            "    )",
            BATCH_SEPARATOR,
            "INSERT INTO dbo.UpgradeAudit (ConnectionName, Version, Category)",
            f"VALUES ({quote_literal(connection_name)}, {quote_literal(version)}, {quote_literal(label)})",
            BATCH_SEPARATOR,
        ]
    )
