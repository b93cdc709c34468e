"""Versioned SQL migrations for Picodata clusters.

Migration files are named ``<version>_<description>.sql``. Each holds a
``-- pico.UP`` section and, optionally, a ``-- pico.DOWN`` section after it.
Applied versions are tracked in a bookkeeping table.

The client passed to :func:`run` exposes ``client.pool`` with two methods:
``execute(query, *args)`` for statements and ``query(query, *args)`` returning
an iterable of row tuples.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

UP_MARKER = "-- pico.UP"
DOWN_MARKER = "-- pico.DOWN"
DEFAULT_MIGRATIONS_TABLE_NAME = "picodata_db_version"

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_VERSION_RE = re.compile(r"[+-]?[0-9]+")


@dataclass
class MigratorOptions:
    """Settings for one migration run."""

    command: str = "status"
    directory: str = "migrations"
    table_name: str = DEFAULT_MIGRATIONS_TABLE_NAME
    steps: int = 1
    args: Optional[list[str]] = None
    table_replacements: Optional[dict[str, str]] = None


@dataclass(frozen=True)
class MigrationFile:
    """A migration file split into its up and down SQL."""

    name: str
    version: int
    up: str
    down: str = ""

    @property
    def has_down(self) -> bool:
        return self.down.strip() != ""


@dataclass
class AppliedMigration:
    """A row of the bookkeeping table."""

    name: str
    applied: bool
    applied_at: Any = None


def sanitize_table_name(table_name: str) -> str:
    """Return the bookkeeping table name, or the default if blank.

    Only ASCII letters, digits and underscores are accepted, and the name
    must not start with a digit.
    """
    name = table_name.strip()
    if not name:
        name = DEFAULT_MIGRATIONS_TABLE_NAME

    for index, char in enumerate(name):
        if char == "_" or ("a" <= char <= "z") or ("A" <= char <= "Z"):
            continue
        if "0" <= char <= "9" and index > 0:
            continue
        raise ValueError(f"invalid table name {table_name!r}")

    return name


def parse_migration_version(name: str) -> int:
    """Return the numeric version prefix of a migration file name."""
    dot = name.rfind(".")
    filename = name[:dot] if dot >= 0 else name
    prefix = filename.split("_", 1)[0]
    if not _VERSION_RE.fullmatch(prefix):
        raise ValueError(f"parse version from {name}: invalid syntax")
    version = int(prefix)
    if not _INT64_MIN <= version <= _INT64_MAX:
        raise ValueError(f"parse version from {name}: value out of range")
    return version


def parse_migration(name: str, version: int, content: str) -> MigrationFile:
    """Split *content* into its up and down sections."""
    up_index = content.find(UP_MARKER)
    if up_index == -1:
        raise ValueError(f"missing {UP_MARKER!r} marker")

    down_index = content.find(DOWN_MARKER)
    up_start = up_index + len(UP_MARKER)
    if down_index == -1:
        up_sql = content[up_start:].strip()
        down_sql = ""
    else:
        up_sql = content[up_start:down_index].strip()
        down_sql = content[down_index + len(DOWN_MARKER):].strip()

    if not up_sql:
        raise ValueError("empty up migration section")

    return MigrationFile(name=name, version=version, up=up_sql, down=down_sql)


def _lines(text: str) -> list[str]:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def split_statements(sql: str) -> list[str]:
    """Split SQL into statements at lines that end with a semicolon."""
    statements: list[str] = []
    buffer: list[str] = []

    for line in _lines(sql):
        buffer.append(line)
        if line.strip().endswith(";"):
            statement = "\n".join(buffer).strip()
            if statement:
                statements.append(statement)
            buffer.clear()

    tail = "\n".join(buffer).strip()
    if tail:
        statements.append(tail)

    return statements


def read_migrations(
    directory, table_replacements: Optional[Mapping[str, str]] = None
) -> list[MigrationFile]:
    """Read every ``.sql`` file in *directory*, ordered by version then name.

    Each key of *table_replacements* is replaced by its value throughout the
    file text before parsing.
    """
    path = Path(directory)
    try:
        entries = sorted(path.iterdir(), key=lambda p: p.name)
    except OSError as exc:
        raise OSError(f"read dir: {exc}") from exc

    migrations: list[MigrationFile] = []
    for entry in entries:
        if entry.is_dir() or not entry.name.endswith(".sql"):
            continue

        try:
            version = parse_migration_version(entry.name)
        except ValueError as exc:
            raise ValueError(f"parse migration name {entry.name}: {exc}") from exc

        try:
            content = entry.read_text(encoding="utf-8")
        except OSError as exc:
            raise OSError(f"read file {entry}: {exc}") from exc

        for current, replacement in (table_replacements or {}).items():
            content = content.replace(current, replacement)

        try:
            migrations.append(parse_migration(entry.name, version, content))
        except ValueError as exc:
            raise ValueError(f"parse migration {entry}: {exc}") from exc

    migrations.sort(key=lambda m: (m.version, m.name))
    return migrations


def _ensure_migrations_table(pool: Any, table_name: str) -> None:
    query = f"""
CREATE TABLE IF NOT EXISTS {table_name} (
    version_id BIGINT PRIMARY KEY,
    name TEXT NOT NULL,
    applied_at DATETIME NOT NULL,
    applied INTEGER NOT NULL
) USING memtx DISTRIBUTED BY (version_id)
OPTION (TIMEOUT = 3.0);"""
    try:
        pool.execute(query)
    except Exception as exc:
        raise RuntimeError(f"create migrations table: {exc}") from exc


def _load_applied_migrations(pool: Any, table_name: str) -> dict[int, AppliedMigration]:
    query = f"select version_id, name, applied, applied_at from {table_name};"
    try:
        rows = pool.query(query)
    except Exception as exc:
        raise RuntimeError(f"query applied migrations: {exc}") from exc

    applied: dict[int, AppliedMigration] = {}
    for row in rows:
        try:
            version, name, applied_flag, applied_at = row
        except (TypeError, ValueError) as exc:
            raise RuntimeError(f"scan applied migrations: {exc}") from exc
        applied[int(version)] = AppliedMigration(
            name=name, applied=applied_flag == 1, applied_at=applied_at
        )
    return applied


def _record_migration_state(
    pool: Any, table_name: str, migration: MigrationFile, applied: bool
) -> datetime:
    applied_at = datetime.now(timezone.utc)

    if not applied:
        query = f"delete from {table_name} where version_id=$1;"
        try:
            pool.execute(query, migration.version)
        except Exception as exc:
            raise RuntimeError(
                f"delete migration state for {migration.name}: {exc}"
            ) from exc
        return applied_at

    query = (
        f"\nINSERT INTO {table_name} (version_id, name, applied_at, applied) "
        "VALUES ($1, $2, $3, $4);"
    )
    try:
        pool.execute(query, migration.version, migration.name, applied_at, 1)
    except Exception as exc:
        raise RuntimeError(f"store migration state for {migration.name}: {exc}") from exc
    return applied_at


def _find_max_applied_version(applied: Mapping[int, AppliedMigration]) -> int:
    return max((v for v, m in applied.items() if m.applied), default=-1)


def _is_assumed(version: int, max_applied_version: int) -> bool:
    return max_applied_version >= 0 and version <= max_applied_version


def _count_applied_with_assumptions(
    migrations: Sequence[MigrationFile],
    applied: Mapping[int, AppliedMigration],
    max_applied_version: int,
) -> int:
    count = 0
    for migration in migrations:
        state = applied.get(migration.version)
        if state is not None:
            count += state.applied
        elif _is_assumed(migration.version, max_applied_version):
            count += 1
    return count


def _already_applied_by_name(applied: Mapping[int, AppliedMigration], name: str) -> bool:
    return any(state.applied and state.name == name for state in applied.values())


def _print_status(
    migrations: Sequence[MigrationFile],
    applied: Mapping[int, AppliedMigration],
    max_applied_version: int,
    log: logging.Logger,
) -> None:
    known = {m.version for m in migrations}
    for migration in migrations:
        state = "pending"
        applied_at = None
        record = applied.get(migration.version)
        if record is not None:
            applied_at = record.applied_at
            state = "applied" if record.applied else "rolled_back"
        elif migration.version <= max_applied_version:
            state = "assumed_applied"

        fields = {
            "migration": migration.name,
            "version": migration.version,
            "state": state,
            "has_down": migration.has_down,
        }
        if applied_at:
            fields["applied_at"] = applied_at
        log.info("migration status: %s %s", migration.name, state, extra=fields)

    for version, record in applied.items():
        if version in known:
            continue
        log.warning(
            "migration exists in database but missing from filesystem: %s",
            record.name,
            extra={"version": version, "migration": record.name, "applied": record.applied},
        )


def _apply_migrations(
    pool: Any,
    migrations: Sequence[MigrationFile],
    table_name: str,
    applied: dict[int, AppliedMigration],
    max_applied_version: int,
    log: logging.Logger,
) -> None:
    for migration in migrations:
        fields = {"migration": migration.name, "version": migration.version}
        state = applied.get(migration.version)
        if state is not None and state.applied:
            log.info("skip already applied migration %s", migration.name, extra=fields)
            continue
        if _already_applied_by_name(applied, migration.name):
            log.info("skip already applied migration by name %s", migration.name, extra=fields)
            continue
        if _is_assumed(migration.version, max_applied_version):
            log.info("skip assumed applied migration %s", migration.name, extra=fields)
            continue

        statements = split_statements(migration.up)
        if not statements:
            continue

        log.info("applying migration %s", migration.name, extra=fields)
        for statement in statements:
            try:
                pool.execute(statement)
            except Exception as exc:
                raise RuntimeError(f"exec statement in {migration.name}: {exc}") from exc

        applied_at = _record_migration_state(pool, table_name, migration, True)
        applied[migration.version] = AppliedMigration(migration.name, True, applied_at)
        log.info("migration applied %s", migration.name, extra=fields)


def _rollback_migrations(
    pool: Any,
    migrations: Sequence[MigrationFile],
    table_name: str,
    applied: dict[int, AppliedMigration],
    max_applied_version: int,
    steps: int,
    log: logging.Logger,
) -> None:
    if not migrations or steps <= 0:
        return

    for migration in reversed(migrations):
        if steps <= 0:
            break
        state = applied.get(migration.version)
        if state is not None:
            should_rollback = state.applied
        else:
            should_rollback = _is_assumed(migration.version, max_applied_version)
        if not should_rollback:
            continue

        fields = {"migration": migration.name, "version": migration.version}
        if not migration.has_down:
            log.warning("skip rollback without DOWN section: %s", migration.name, extra=fields)
            continue

        statements = split_statements(migration.down)
        if not statements:
            continue

        log.info("rolling back migration %s", migration.name, extra=fields)
        for statement in statements:
            try:
                pool.execute(statement)
            except Exception as exc:
                raise RuntimeError(
                    f"exec rollback statement in {migration.name}: {exc}"
                ) from exc

        _record_migration_state(pool, table_name, migration, False)
        applied.pop(migration.version, None)
        log.info("migration rolled back %s", migration.name, extra=fields)
        steps -= 1


def run(
    client,
    log=None,
    command="status",
    directory="migrations",
    table_name=DEFAULT_MIGRATIONS_TABLE_NAME,
    steps=1,
    args=None,
    table_replacements=None,
) -> None:
    """Run *command* (status, up, down or reset) against the cluster behind *client*."""
    log = log if log is not None else logging.getLogger("outboxstore")
    options = MigratorOptions(
        command=command,
        directory=directory,
        table_name=table_name,
        steps=steps,
        args=list(args) if args is not None else None,
        table_replacements=dict(table_replacements) if table_replacements is not None else None,
    )

    try:
        migrations = read_migrations(options.directory, options.table_replacements)
    except (OSError, ValueError) as exc:
        raise RuntimeError(f"load migrations: {exc}") from exc

    try:
        safe_table = sanitize_table_name(options.table_name)
    except ValueError as exc:
        raise ValueError(f"table name: {exc}") from exc

    pool = client.pool
    try:
        _ensure_migrations_table(pool, safe_table)
    except RuntimeError as exc:
        raise RuntimeError(f"ensure migrations table: {exc}") from exc

    try:
        applied = _load_applied_migrations(pool, safe_table)
    except RuntimeError as exc:
        raise RuntimeError(f"load applied migrations: {exc}") from exc

    log.info(
        "loaded migrations",
        extra={"count": len(migrations), "steps": options.steps, "dir": options.directory},
    )

    action = options.command.lower()
    max_applied = _find_max_applied_version(applied)
    if action == "status":
        _print_status(migrations, applied, max_applied, log)
    elif action == "up":
        _apply_migrations(pool, migrations, safe_table, applied, max_applied, log)
    elif action == "down":
        _rollback_migrations(
            pool, migrations, safe_table, applied, max_applied, options.steps, log
        )
    elif action == "reset":
        reset_steps = _count_applied_with_assumptions(migrations, applied, max_applied)
        _rollback_migrations(
            pool, migrations, safe_table, applied, max_applied, reset_steps, log
        )
    else:
        raise ValueError(f"unsupported command {options.command!r}")