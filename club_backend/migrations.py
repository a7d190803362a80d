"""
Startup schema migrations.

Older deployments kept uploads on disk and stored only their path
(`image_path` / `file_path`). The current layout stores the bytes inline
next to filename and MIME type columns. Each migration is guarded by a
detection predicate, so running the list again is a no-op.

Legacy files that can still be read are inlined into the new rows. Rows
whose file is gone are dropped and logged; any other I/O error aborts the
migration before the legacy table is touched.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from sqlalchemy import MetaData, Table, inspect, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

DEFAULT_MIMETYPE = "application/octet-stream"


class MigrationError(RuntimeError):
    """A startup migration could not be applied; the schema is left as it was."""


@dataclass(frozen=True)
class BlobMigration:
    """Moves one table from a path column to inline payload columns."""

    name: str
    target: Table
    legacy_column: str
    data_column: str
    filename_column: str
    mimetype_column: str

    @property
    def table_name(self) -> str:
        return self.target.name

    @property
    def staging_name(self) -> str:
        return f"{self.target.name}_new"

    @property
    def payload_columns(self) -> frozenset[str]:
        return frozenset(
            (self.data_column, self.filename_column, self.mimetype_column)
        )


def needs_migration(engine: Engine, migration: BlobMigration) -> bool:
    inspector = inspect(engine)
    if not inspector.has_table(migration.table_name):
        return False
    columns = {col["name"] for col in inspector.get_columns(migration.table_name)}
    return migration.legacy_column in columns and migration.data_column not in columns


def run_migrations(
    engine: Engine,
    migrations: Iterable[BlobMigration],
    *,
    legacy_upload_root: Optional[str] = None,
) -> list[str]:
    """
    Apply every pending migration in order. Returns the names applied.

    Raises MigrationError on the first failure.
    """
    root = Path(legacy_upload_root or ".")
    applied: list[str] = []
    for migration in migrations:
        try:
            _recover_interrupted_swap(engine, migration)
            if not needs_migration(engine, migration):
                continue
            logger.info(
                "Migrating %s from file paths to inline storage (%s)",
                migration.table_name,
                migration.name,
            )
            rows = _collect_legacy_rows(engine, migration, root)
            _swap_table(engine, migration, rows)
        except MigrationError:
            raise
        except (SQLAlchemyError, OSError) as exc:
            raise MigrationError(f"{migration.name} failed: {exc}") from exc
        logger.info(
            "%s applied: %d rows carried into %s",
            migration.name,
            len(rows),
            migration.table_name,
        )
        applied.append(migration.name)
    return applied


def _quote(conn: Connection, name: str) -> str:
    return conn.dialect.identifier_preparer.quote(name)


def _rename_table(conn: Connection, old: str, new: str) -> None:
    conn.execute(text(f"ALTER TABLE {_quote(conn, old)} RENAME TO {_quote(conn, new)}"))


def _recover_interrupted_swap(engine: Engine, migration: BlobMigration) -> None:
    inspector = inspect(engine)
    if not inspector.has_table(migration.staging_name):
        return
    table_exists = inspector.has_table(migration.table_name)
    with engine.begin() as conn:
        if table_exists:
            logger.warning(
                "Dropping leftover %s from an earlier failed migration",
                migration.staging_name,
            )
            conn.execute(text(f"DROP TABLE {_quote(conn, migration.staging_name)}"))
        else:
            logger.warning(
                "Completing interrupted migration: renaming %s to %s",
                migration.staging_name,
                migration.table_name,
            )
            _rename_table(conn, migration.staging_name, migration.table_name)


def _read_legacy_file(path: Path) -> bytes:
    return path.read_bytes()


def _load_legacy_payload(root: Path, stored_path: Optional[str]) -> Optional[bytes]:
    if not stored_path:
        return None
    path = Path(stored_path)
    candidates = [path] if path.is_absolute() else []
    candidates.append(root / str(stored_path).lstrip("/\\"))
    for candidate in candidates:
        try:
            return _read_legacy_file(candidate)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            continue
    return None


def _collect_legacy_rows(
    engine: Engine, migration: BlobMigration, root: Path
) -> list[dict]:
    """Read legacy rows and their files without changing the schema."""
    with engine.connect() as conn:
        legacy = Table(migration.table_name, MetaData(), autoload_with=conn)
        rows = conn.execute(select(legacy)).mappings().all()

    shared = [
        col.name
        for col in migration.target.columns
        if col.name in legacy.c and col.name not in migration.payload_columns
    ]
    carried: list[dict] = []
    for row in rows:
        stored_path = row[migration.legacy_column]
        payload = _load_legacy_payload(root, stored_path)
        if payload is None:
            logger.warning(
                "%s: dropping %s row %s, file %r is not readable",
                migration.name,
                migration.table_name,
                row.get("id"),
                stored_path,
            )
            continue
        values = {name: row[name] for name in shared if row[name] is not None}
        filename = Path(str(stored_path)).name
        values[migration.data_column] = payload
        values[migration.filename_column] = filename
        values[migration.mimetype_column] = (
            row.get(migration.mimetype_column)
            or mimetypes.guess_type(filename)[0]
            or DEFAULT_MIMETYPE
        )
        carried.append(values)
    return carried


def _id_high_water(conn: Connection, table_name: str) -> int:
    """Highest id the table has handed out, counting rows since deleted."""
    table = _quote(conn, table_name)
    highest = conn.execute(text(f"SELECT MAX(id) FROM {table}")).scalar() or 0
    counter = None
    dialect = conn.dialect.name
    if dialect == "sqlite":
        has_sequence = conn.execute(
            text(
                "SELECT 1 FROM sqlite_master "
                "WHERE type = 'table' AND name = 'sqlite_sequence'"
            )
        ).scalar()
        if has_sequence:
            counter = conn.execute(
                text("SELECT seq FROM sqlite_sequence WHERE name = :table"),
                {"table": table_name},
            ).scalar()
    elif dialect == "postgresql":
        sequence = conn.execute(
            text("SELECT pg_get_serial_sequence(:table, 'id')"),
            {"table": table_name},
        ).scalar()
        if sequence:
            counter = conn.execute(
                text(
                    f"SELECT CASE WHEN is_called THEN last_value ELSE 0 END "
                    f"FROM {sequence}"
                )
            ).scalar()
    elif dialect in ("mysql", "mariadb"):
        next_id = conn.execute(
            text(
                "SELECT AUTO_INCREMENT FROM information_schema.TABLES "
                "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = :table"
            ),
            {"table": table_name},
        ).scalar()
        if next_id:
            counter = next_id - 1
    return max(int(highest), int(counter or 0))


def _set_id_counter(conn: Connection, migration: BlobMigration, high_water: int) -> None:
    """Make the next generated id of the swapped-in table exceed high_water."""
    dialect = conn.dialect.name
    if dialect == "sqlite":
        conn.execute(
            text("DELETE FROM sqlite_sequence WHERE name IN (:table, :staging)"),
            {"table": migration.table_name, "staging": migration.staging_name},
        )
        conn.execute(
            text("INSERT INTO sqlite_sequence (name, seq) VALUES (:table, :seq)"),
            {"table": migration.table_name, "seq": high_water},
        )
    elif dialect == "postgresql":
        conn.execute(
            text("SELECT setval(pg_get_serial_sequence(:table, 'id'), :next, false)"),
            {"table": migration.table_name, "next": high_water + 1},
        )
    elif dialect in ("mysql", "mariadb"):
        table = _quote(conn, migration.table_name)
        conn.execute(text(f"ALTER TABLE {table} AUTO_INCREMENT = {int(high_water) + 1}"))


def _swap_table(engine: Engine, migration: BlobMigration, rows: list[dict]) -> None:
    staging = migration.target.to_metadata(MetaData(), name=migration.staging_name)
    with engine.begin() as conn:
        staging.create(conn)
        # Read before the DROP discards the legacy counter.
        high_water = _id_high_water(conn, migration.table_name)
        for values in rows:
            conn.execute(staging.insert().values(**values))
        conn.execute(text(f"DROP TABLE {_quote(conn, migration.table_name)}"))
        _rename_table(conn, migration.staging_name, migration.table_name)
        _set_id_counter(conn, migration, high_water)
