"""Load per-connection sync settings from sqlsync.yaml."""

from __future__ import annotations

import dataclasses
import fnmatch
import os
from pathlib import Path
from typing import Any, Union

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc


DEFAULT_CONFIG_FILE = "sqlsync.yaml"
DEFAULT_DRIVER = "ODBC Driver 18 for SQL Server"
DEFAULT_TIMEOUT = 5

CATEGORIES = [
    "schemas",
    "tables",
    "types",
    "views",
    "functions",
    "procs",
    "triggers",
    "data",
    "jobs",
    "temps",
]
IDEMPOTENCY_TAGS = {"if-exists-drop", "if-not-exists"}
DATA_IDEMPOTENCY_TAGS = {"delete", "delete-and-reseed", "truncate"}
EOL_POLICIES = {"auto", "lf", "crlf"}


class SettingsError(ValueError):
    pass


@dataclasses.dataclass(frozen=True)
class Enabled:
    subpath: str


@dataclasses.dataclass(frozen=True)
class Disabled:
    pass


DISABLED = Disabled()

Category = Union[Enabled, Disabled]


@dataclasses.dataclass(frozen=True)
class Connection:
    server: str
    database: str
    user: str = ""
    password: str = ""
    port: int | None = None
    driver: str = DEFAULT_DRIVER
    timeout: int = DEFAULT_TIMEOUT
    encrypt: bool = False

    def odbc_string(self) -> str:
        server = self.server if self.port is None else f"{self.server},{self.port}"
        parts = [
            f"DRIVER={{{self.driver}}}",
            f"SERVER={server}",
            f"DATABASE={self.database}",
        ]
        if self.user:
            parts.append(f"UID={self.user}")
            parts.append(f"PWD={self.password}")
        else:
            parts.append("Trusted_Connection=yes")
        parts.append(f"Encrypt={'yes' if self.encrypt else 'no'}")
        return ";".join(parts) + ";"


@dataclasses.dataclass(frozen=True)
class Settings:
    name: str
    connection: Connection
    root: Path
    output: dict[str, Category]
    idempotency: dict[str, str | None]
    current_version: str
    eol: str = "auto"
    data: tuple[str, ...] = ()
    include_constraint_name: bool = False

    def category(self, key: str) -> Category:
        return self.output.get(key, DISABLED)

    def is_enabled(self, key: str) -> bool:
        return isinstance(self.category(key), Enabled)

    def subpath(self, key: str) -> str | None:
        cat = self.category(key)
        if isinstance(cat, Enabled):
            return cat.subpath
        return None

    def idempotency_for(self, key: str) -> str | None:
        return self.idempotency.get(key)

    def includes_data(self, schema: str, name: str) -> bool:
        full_name = f"{schema}.{name}".lower()
        return any(fnmatch.fnmatchcase(full_name, pattern.lower()) for pattern in self.data)


def parse_category(value: Any) -> Category:
    if value is None or value is False:
        return DISABLED
    if not isinstance(value, str):
        raise SettingsError(f"Output directory must be a string or false, got {value!r}")
    subpath = value.strip().replace("\\", "/")
    while subpath.startswith("./"):
        subpath = subpath[2:]
    subpath = subpath.rstrip("/")
    if not subpath or subpath == ".":
        return DISABLED
    return Enabled(subpath)


def parse_idempotency(raw: dict[str, Any]) -> dict[str, str | None]:
    out: dict[str, str | None] = {}
    for key, value in raw.items():
        if value is None or value is False:
            out[key] = None
            continue
        tag = str(value).strip().lower()
        allowed = DATA_IDEMPOTENCY_TAGS if key == "data" else IDEMPOTENCY_TAGS
        if tag not in allowed:
            raise SettingsError(f"Unsupported idempotency option for {key}: {value!r}")
        out[key] = tag
    return out


def parse_connection(raw: dict[str, Any]) -> Connection:
    server = str(raw.get("server", "")).strip()
    database = str(raw.get("database", "")).strip()
    if not server or not database:
        raise SettingsError("Connection requires both 'server' and 'database'")

    port = raw.get("port")
    # Web.config style `host\instance,1435` carries the port inline.
    if port is None and "," in server:
        server, _, port_text = server.partition(",")
        port = port_text.strip() or None

    return Connection(
        server=server,
        database=database,
        user=str(raw.get("user", "") or ""),
        password=str(raw.get("password", "") or ""),
        port=int(port) if port is not None else None,
        driver=str(raw.get("driver", DEFAULT_DRIVER)),
        timeout=int(raw.get("timeout", DEFAULT_TIMEOUT)),
        encrypt=bool(raw.get("encrypt", False)),
    )


def parse_data_patterns(value: Any) -> tuple[str, ...]:
    if value is None or value is False:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise SettingsError(f"Data tables must be a list of name patterns, got {value!r}")
    return tuple(item.strip() for item in value if item.strip())


def parse_setting(raw: dict[str, Any], base_dir: Path, default_data: Any = None) -> Settings:
    name = str(raw.get("name", "")).strip()
    if not name:
        raise SettingsError("Every setting needs a 'name'")

    output_raw = dict(raw.get("output") or {})
    root_text = str(output_raw.pop("root", "") or raw.get("root", "") or ".")
    root = Path(root_text)
    if not root.is_absolute():
        root = base_dir / root

    unknown = sorted(set(output_raw) - set(CATEGORIES))
    if unknown:
        raise SettingsError(f"Unknown output categories for {name}: {', '.join(unknown)}")
    output = {key: parse_category(output_raw.get(key)) for key in CATEGORIES}

    version = raw.get("current_version", raw.get("currentVersion"))
    if version is None or not str(version).strip():
        raise SettingsError(f"Setting {name} has no current_version")

    eol = str(raw.get("eol", "auto")).lower()
    if eol not in EOL_POLICIES:
        raise SettingsError(f"Unsupported eol policy for {name}: {eol!r}")

    return Settings(
        name=name,
        connection=parse_connection(raw.get("connection") or {}),
        root=root,
        output=output,
        idempotency=parse_idempotency(raw.get("idempotency") or {}),
        current_version=str(version).strip(),
        eol=eol,
        data=parse_data_patterns(raw.get("data", default_data)),
        include_constraint_name=bool(raw.get("include_constraint_name", raw.get("includeConstraintName", False))),
    )


def read_config(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SettingsError(f"Could not read config file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise SettingsError(f"Could not parse config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise SettingsError(f"Config file {path} must contain a mapping")
    return data


def load_settings(path: str | os.PathLike | None = None) -> list[Settings]:
    config_path = Path(path or DEFAULT_CONFIG_FILE)
    data = read_config(config_path)
    raw_settings = data.get("settings")
    if isinstance(raw_settings, str):
        # Settings may live in a separate file, relative to the config.
        nested = config_path.parent / raw_settings
        raw_settings = read_config(nested).get("settings")
    if not isinstance(raw_settings, list) or not raw_settings:
        raise SettingsError(f"No settings found in {config_path}")

    base_dir = config_path.resolve().parent
    # A top-level `data` list applies to every setting that has none of its own.
    return [parse_setting(item, base_dir, data.get("data")) for item in raw_settings]


def get_setting(settings: list[Settings], name: str | None = None) -> Settings:
    if not settings:
        raise SettingsError("Could not find default setting!")
    if not name:
        return settings[0]
    for sett in settings:
        if sett.name.lower() == name.lower():
            return sett
    raise SettingsError(f"Could not find settings by name '{name}'!")


def bump_version(path: str | os.PathLike | None, name: str, new_version: str) -> Path:
    config_path = Path(path or DEFAULT_CONFIG_FILE)
    data = read_config(config_path)
    raw_settings = data.get("settings")
    if not isinstance(raw_settings, list):
        raise SettingsError(f"No inline settings found in {config_path}")

    for raw in raw_settings:
        if str(raw.get("name", "")).lower() == name.lower():
            raw.pop("currentVersion", None)
            raw["current_version"] = str(new_version)
            break
    else:
        raise SettingsError(f"Could not find settings by name '{name}'!")

    config_path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return config_path
