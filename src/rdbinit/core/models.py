"""Core domain models for schema initialization.

These models describe connection targets, schema descriptors and catalog
rows in a simple, immutable form. They are free of driver types so the
reconciliation logic can run against any Directory Service implementation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping

from rdbinit.core.errors import SchemaError

_TABLE_OPTION_KEYS = {
    "primary_key": ("primaryKey", "primary_key"),
    "durability": ("durability",),
    "shards": ("shards",),
    "replicas": ("replicas",),
    "primary_replica_tag": ("primaryReplicaTag", "primary_replica_tag"),
}


class ConflictPolicy(str, Enum):
    """
    Which row wins when a merge copies a row whose primary key already exists.

    Values:
        KEEP_DESTINATION: Keep the row already present in the destination.
        PREFER_SOURCE: Replace it with the row being copied.
    """

    KEEP_DESTINATION = "keep-destination"
    PREFER_SOURCE = "prefer-source"


@dataclass(frozen=True)
class ConnectionConfig:
    """
    Connection target for one initialization run.

    Attributes:
        db: Logical name of the database to initialize. Also the lock key.
        host: Store host name.
        port: Client driver port.
        user: Account name.
        password: Account password.
        timeout: Connect timeout in seconds.
    """

    db: str
    host: str = "localhost"
    port: int = 28015
    user: str = "admin"
    password: str = ""
    timeout: int = 20


@dataclass(frozen=True)
class IndexSpec:
    """Secondary index descriptor."""

    name: str
    function: Callable[..., Any] | None = None
    multi: bool = False
    geo: bool = False

    def to_ledger(self) -> str | dict[str, Any]:
        if not (self.multi or self.geo):
            return self.name
        out: dict[str, Any] = {"name": self.name}
        if self.multi:
            out["multi"] = True
        if self.geo:
            out["geo"] = True
        return out


@dataclass(frozen=True)
class TableSpec:
    """Table descriptor with its table options and ordered indexes."""

    name: str
    primary_key: str | None = None
    durability: str | None = None
    shards: int | None = None
    replicas: int | dict[str, int] | None = None
    primary_replica_tag: str | None = None
    indexes: tuple[IndexSpec, ...] = ()

    def options(self) -> dict[str, Any]:
        """Return only the table options that were set."""
        out: dict[str, Any] = {}
        for key in _TABLE_OPTION_KEYS:
            value = getattr(self, key)
            if value:
                out[key] = value
        return out

    def to_ledger(self) -> dict[str, Any]:
        return {"name": self.name, "indexes": [i.to_ledger() for i in self.indexes]}


@dataclass(frozen=True)
class CatalogRow:
    """
    One row of the store's database or table catalog.

    Attributes:
        id: Store-assigned unique id. Never shared between rows.
        name: Display name. May be shared while duplicates exist.
        db: Owning database name for table rows, None for database rows.
    """

    id: str
    name: str
    db: str | None = None


@dataclass(frozen=True)
class TableRef:
    """Fully qualified table reference."""

    db: str
    table: str

    def __str__(self) -> str:
        return f"{self.db}.{self.table}"


@dataclass(frozen=True)
class DuplicateRecord:
    """A non-empty duplicate that was renamed and still has to be merged."""

    origin: str
    backup: str
    source_id: str


@dataclass
class Connection:
    """
    Live handle returned by a successful initialization.

    Attributes:
        db: Target database name.
        directory: Directory Service session bound to the store.
        report: Summary of what the initialization run did.
    """

    db: str
    directory: Any
    report: Any = None
    closed: bool = field(default=False, init=False)

    def close(self) -> None:
        if not self.closed:
            self.directory.close()
            self.closed = True


def _pick_str(entry: Mapping[str, Any], where: str) -> str:
    name = entry.get("name")
    if not isinstance(name, str) or not name:
        raise SchemaError(f"{where} must be a String or an Object with a `.name` property")
    return name


def parse_index(entry: Any, *, table: str) -> IndexSpec:
    """Parse an index descriptor (a name or a `{name, indexFunction?, multi?, geo?}` mapping)."""
    where = f"Index entry in table ({table})"
    if isinstance(entry, str):
        if not entry:
            raise SchemaError(f"{where} must not be empty")
        return IndexSpec(name=entry)
    if isinstance(entry, IndexSpec):
        return entry
    if not isinstance(entry, Mapping):
        raise SchemaError(f"{where} must be 'Object' (with '.name' property) or 'String'")

    function = entry.get("indexFunction", entry.get("function"))
    if function is not None and not callable(function):
        raise SchemaError(f"{where}: indexFunction must be callable")
    return IndexSpec(
        name=_pick_str(entry, where),
        function=function,
        multi=bool(entry.get("multi", False)),
        geo=bool(entry.get("geo", False)),
    )


def parse_table(entry: Any) -> TableSpec:
    """Parse a table descriptor (a bare name or a mapping with options and indexes)."""
    if isinstance(entry, str):
        if not entry:
            raise SchemaError("Table entry must not be empty")
        return TableSpec(name=entry)
    if isinstance(entry, TableSpec):
        return entry
    if not isinstance(entry, Mapping):
        raise SchemaError("Table entry must be an Object (with `.name` property) or a String")

    name = _pick_str(entry, "Table entry")
    options: dict[str, Any] = {}
    for attr, keys in _TABLE_OPTION_KEYS.items():
        for key in keys:
            if entry.get(key) is not None:
                options[attr] = entry[key]
                break

    raw_indexes = entry.get("indexes") or []
    if not isinstance(raw_indexes, (list, tuple)):
        raise SchemaError(f"Indexes of table ({name}) must be an Array")
    indexes = tuple(parse_index(i, table=name) for i in raw_indexes)
    return TableSpec(name=name, indexes=indexes, **options)


def parse_schema(schema: Any) -> list[TableSpec]:
    """Parse an ordered schema descriptor into table specs."""
    if not isinstance(schema, (list, tuple)):
        raise SchemaError("Schema must be an array.")
    tables = [parse_table(entry) for entry in schema]
    seen: set[str] = set()
    for t in tables:
        if t.name in seen:
            raise SchemaError(f"Table '{t.name}' is declared more than once")
        seen.add(t.name)
    return tables


def parse_connection_config(config: Any) -> ConnectionConfig:
    """Accept a ConnectionConfig or a mapping with at least a string `db`."""
    if isinstance(config, ConnectionConfig):
        if not isinstance(config.db, str) or not config.db:
            raise SchemaError("Connection doesn't have a db property.")
        return config
    if not isinstance(config, Mapping) or not isinstance(config.get("db"), str) or not config["db"]:
        raise SchemaError("Connection is not an object or doesn't have a db property.")
    known = ConnectionConfig.__dataclass_fields__
    return ConnectionConfig(**{k: v for k, v in config.items() if k in known})
