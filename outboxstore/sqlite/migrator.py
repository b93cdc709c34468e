"""Versioned SQL migrations for SQLite databases.

Migration files are named ``<version>_<description>.sql`` and use
``-- +goose Up`` / ``-- +goose Down`` sections, optionally with
``-- +goose StatementBegin`` / ``-- +goose StatementEnd`` blocks and a
``-- +goose NO TRANSACTION`` marker.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

VERSION_TABLE = "goose_db_version"
_ANNOTATION = "-- +goose"


class NoMigrationFilesError(LookupError):
    """Raised when a migrations directory holds no migration files."""


@dataclass(frozen=True)
class SqlMigration:
    """One migration file split into its up and down statements."""

    version: int
    source: str
    up: tuple[str, ...]
    down: tuple[str, ...]
    use_tx: bool = True


def _parse_version(filename: str) -> int:
    stem = filename[: -len(".sql")]
    prefix, sep, _ = stem.partition("_")
    if not sep:
        raise ValueError(f"{filename}: no filename separator '_' found")
    try:
        version = int(prefix)
    except ValueError:
        raise ValueError(f"{filename}: failed to parse version from migration file") from None
    if version < 1:
        raise ValueError(f"{filename}: migration version must be greater than zero")
    return version


def _parse_sql(text: str, source: str) -> tuple[tuple[str, ...], tuple[str, ...], bool]:
    sections: dict[str, list[str]] = {"up": [], "down": []}
    section: Optional[str] = None
    buffer: list[str] = []
    in_block = False
    use_tx = True

    def pending() -> str:
        return "\n".join(buffer).strip()

    for number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if stripped.startswith(_ANNOTATION):
            directive = stripped[len(_ANNOTATION):].strip().lower()
            if directive in ("up", "down"):
                if in_block or pending():
                    raise ValueError(f"{source}:{number}: unfinished statement before {directive!r}")
                buffer.clear()
                section = directive
            elif directive == "statementbegin":
                if section is None:
                    raise ValueError(f"{source}:{number}: StatementBegin outside Up or Down")
                if pending():
                    raise ValueError(f"{source}:{number}: unfinished statement before StatementBegin")
                buffer.clear()
                in_block = True
            elif directive == "statementend":
                if not in_block:
                    raise ValueError(f"{source}:{number}: StatementEnd without StatementBegin")
                statement = pending()
                if statement:
                    sections[section].append(statement)
                buffer.clear()
                in_block = False
            elif directive == "no transaction":
                use_tx = False
            else:
                raise ValueError(f"{source}:{number}: unknown annotation {stripped!r}")
            continue

        if section is None:
            continue
        if not in_block and stripped.startswith("--"):
            continue
        buffer.append(line)
        if not in_block and stripped.endswith(";"):
            statement = pending()
            if statement:
                sections[section].append(statement)
            buffer.clear()

    if in_block:
        raise ValueError(f"{source}: missing StatementEnd annotation")
    if pending():
        raise ValueError(f"{source}: unfinished SQL statement at end of file")
    if section is None or (section == "down" and "-- +goose up" not in text.lower()):
        raise ValueError(f"{source}: missing '-- +goose Up' annotation")

    return tuple(sections["up"]), tuple(sections["down"]), use_tx


def load_migrations(directory) -> list[SqlMigration]:
    """Read and parse every ``.sql`` migration in *directory*, ordered by version."""
    path = Path(directory)
    if not path.is_dir():
        raise FileNotFoundError(f"{directory} directory does not exist")

    migrations: dict[int, SqlMigration] = {}
    for file in sorted(p for p in path.iterdir() if p.is_file() and p.suffix == ".sql"):
        version = _parse_version(file.name)
        if version in migrations:
            raise ValueError(
                f"duplicate migration version {version}: "
                f"{migrations[version].source} and {file.name}"
            )
        up, down, use_tx = _parse_sql(file.read_text(encoding="utf-8"), file.name)
        migrations[version] = SqlMigration(version, file.name, up, down, use_tx)

    if not migrations:
        raise NoMigrationFilesError(f"no migration files found in {directory}")
    return [migrations[v] for v in sorted(migrations)]


def _commit_pending(db: sqlite3.Connection) -> None:
    if db.in_transaction:
        db.commit()


def _ensure_version_table(db: sqlite3.Connection) -> None:
    exists = db.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (VERSION_TABLE,)
    ).fetchone()
    if exists:
        return
    db.execute(
        f"CREATE TABLE {VERSION_TABLE} ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT, "
        "version_id INTEGER NOT NULL, "
        "is_applied INTEGER NOT NULL, "
        "tstamp TIMESTAMP DEFAULT (datetime('now')))"
    )
    db.execute(f"INSERT INTO {VERSION_TABLE} (version_id, is_applied) VALUES (0, 1)")
    _commit_pending(db)


def _applied_versions(db: sqlite3.Connection) -> dict[int, str]:
    """Map each applied version to the time it was applied; the newest row decides."""
    states: dict[int, tuple[bool, str]] = {}
    rows = db.execute(
        f"SELECT version_id, is_applied, tstamp FROM {VERSION_TABLE} ORDER BY id DESC"
    )
    for version, is_applied, stamp in rows:
        states.setdefault(version, (bool(is_applied), stamp))
    return {version: stamp for version, (applied, stamp) in states.items() if applied and version > 0}


def _current_version(db: sqlite3.Connection) -> int:
    return max(_applied_versions(db), default=0)


def _run_migration(
    db: sqlite3.Connection, migration: SqlMigration, direction: str, log: logging.Logger
) -> None:
    statements = migration.up if direction == "up" else migration.down
    if direction == "up":
        record = f"INSERT INTO {VERSION_TABLE} (version_id, is_applied) VALUES (?, 1)"
    else:
        record = f"DELETE FROM {VERSION_TABLE} WHERE version_id = ?"

    try:
        if migration.use_tx:
            db.execute("BEGIN;")
            try:
                for statement in statements:
                    db.execute(statement)
                db.execute(record, (migration.version,))
            except BaseException:
                if db.in_transaction:
                    db.execute("ROLLBACK;")
                raise
            db.execute("COMMIT;")
        else:
            for statement in statements:
                db.execute(statement)
            db.execute(record, (migration.version,))
            _commit_pending(db)
    except sqlite3.Error as exc:
        raise RuntimeError(f"{migration.source}: failed to run SQL migration: {exc}") from exc

    log.info("OK   %s", migration.source)


def _target_version(args: Sequence[str]) -> int:
    if not args:
        raise ValueError("no version specified")
    try:
        return int(args[0])
    except ValueError:
        raise ValueError(f"invalid version {args[0]!r}") from None


def _by_version(migrations: Sequence[SqlMigration], version: int) -> SqlMigration:
    for migration in migrations:
        if migration.version == version:
            return migration
    raise RuntimeError(f"migration {version} not found")


def _up_to(db, migrations, target: int, log) -> None:
    applied = _applied_versions(db)
    current = max(applied, default=0)
    missing = [m for m in migrations if m.version not in applied and m.version < current]
    if missing:
        raise RuntimeError(
            f"found {len(missing)} missing migrations before current version {current}"
        )
    pending = [m for m in migrations if current < m.version <= target]
    for migration in pending:
        _run_migration(db, migration, "up", log)
    if not pending:
        log.info("no migrations to run. current version: %d", current)


def _cmd_up(db, migrations, args, log) -> None:
    _up_to(db, migrations, migrations[-1].version, log)


def _cmd_up_to(db, migrations, args, log) -> None:
    _up_to(db, migrations, _target_version(args), log)


def _cmd_up_by_one(db, migrations, args, log) -> None:
    current = _current_version(db)
    following = [m for m in migrations if m.version > current]
    if not following:
        raise RuntimeError("no next version found")
    _run_migration(db, following[0], "up", log)


def _cmd_down(db, migrations, args, log) -> None:
    current = _current_version(db)
    if current == 0:
        raise RuntimeError("no migrations to roll back")
    _run_migration(db, _by_version(migrations, current), "down", log)


def _cmd_down_to(db, migrations, args, log) -> None:
    target = _target_version(args)
    rolled = False
    while (current := _current_version(db)) > target:
        _run_migration(db, _by_version(migrations, current), "down", log)
        rolled = True
    if not rolled:
        log.info("no migrations to run. current version: %d", _current_version(db))


def _cmd_redo(db, migrations, args, log) -> None:
    current = _current_version(db)
    if current == 0:
        raise RuntimeError("no migrations to redo")
    migration = _by_version(migrations, current)
    _run_migration(db, migration, "down", log)
    _run_migration(db, migration, "up", log)


def _cmd_reset(db, migrations, args, log) -> None:
    for version in sorted(_applied_versions(db), reverse=True):
        _run_migration(db, _by_version(migrations, version), "down", log)


def _cmd_status(db, migrations, args, log) -> None:
    applied = _applied_versions(db)
    log.info("    Applied At                  Migration")
    log.info("    =======================================")
    for migration in migrations:
        stamp = applied.get(migration.version)
        log.info("    %-24s -- %s", stamp if stamp else "Pending", migration.source)


def _cmd_version(db, migrations, args, log) -> None:
    log.info("version %d", _current_version(db))


_COMMANDS: dict[str, Callable] = {
    "up": _cmd_up,
    "up-to": _cmd_up_to,
    "up-by-one": _cmd_up_by_one,
    "down": _cmd_down,
    "down-to": _cmd_down_to,
    "redo": _cmd_redo,
    "reset": _cmd_reset,
    "status": _cmd_status,
    "version": _cmd_version,
}


def run(db, log=None, command="status", directory="migrations", args=None) -> None:
    """Run migration *command* against *db* using the files in *directory*.

    A directory without migration files is logged and not treated as an error.
    """
    log = log if log is not None else logging.getLogger("outboxstore")
    args = list(args or [])
    try:
        handler = _COMMANDS.get(command)
        if handler is None:
            raise ValueError(f"{command!r}: no such command")
        migrations = load_migrations(directory)
        _ensure_version_table(db)
        handler(db, migrations, args, log)
    except NoMigrationFilesError as exc:
        log.info(
            "migrate DB for command: %s in dir: %s",
            command,
            directory,
            extra={"status": "fail", "error": str(exc)},
        )
        return None
    except Exception as exc:
        raise RuntimeError(f"failed to run database migrations: {exc}") from exc
    return None