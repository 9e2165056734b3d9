"""
Learning store backends.

Purpose
- Persist run outcomes, role results, patterns and aggregate benchmarks under
  hierarchical keys (``pattern/<role>/<id>``, ``run/<run_id>``, ``role/<role>/<run_id>``,
  ``benchmark/global``).

Functional requirements
- Call sites depend on the ``LearningStore`` protocol only; the backend is chosen once
  at startup by ``open_learning_store``.
- Writes are per-key read-modify-write; the last writer wins.
- A shared store that cannot be reached degrades to local-only state. Aggregate
  queries are disabled while degraded.
"""

from __future__ import annotations

import copy
import json
import sqlite3
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Final, Protocol, runtime_checkable

import structlog

from buildwave.constants import LEARNING_STORE_SCHEMA_VERSION
from buildwave.domain.errors import StoreUnavailable
from buildwave.domain.models import parse_datetime
from buildwave.utils.fs import locked_file, read_json, write_json

Record = dict[str, Any]
Updater = Callable[[Record | None], Record | None]

PATTERN_PREFIX: Final[str] = "pattern/"
RUN_PREFIX: Final[str] = "run/"
ROLE_PREFIX: Final[str] = "role/"
BENCHMARK_KEY: Final[str] = "benchmark/global"

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000


@runtime_checkable
class LearningStore(Protocol):
    """Key/value store of JSON records with prefix queries."""

    @property
    def supports_aggregates(self) -> bool: ...

    def get(self, key: str) -> Record | None: ...

    def put(self, key: str, record: Mapping[str, Any]) -> None: ...

    def update(self, key: str, updater: Updater) -> Record | None: ...

    def delete(self, key: str) -> bool: ...

    def query(
        self,
        prefix: str,
        *,
        since: datetime | None = None,
        min_frequency: int | None = None,
        limit: int | None = None,
    ) -> list[tuple[str, Record]]: ...

    def close(self) -> None: ...


def _validate_key(key: str) -> str:
    if not isinstance(key, str) or not key.strip() or key != key.strip():
        raise ValueError(f"invalid learning store key {key!r}")
    if key.startswith("/") or key.endswith("/") or "//" in key:
        raise ValueError(f"invalid learning store key {key!r}")
    return key


def _matches(
    record: Mapping[str, Any], *, since: datetime | None, min_frequency: int | None
) -> bool:
    if min_frequency is not None and int(record.get("frequency", 0)) < min_frequency:
        return False
    if since is not None:
        stamp = record.get("updated_at")
        if stamp is None or parse_datetime(stamp, "updated_at") < since:
            return False
    return True


def _filter_records(
    records: Mapping[str, Record],
    prefix: str,
    *,
    since: datetime | None,
    min_frequency: int | None,
    limit: int | None,
) -> list[tuple[str, Record]]:
    if limit is not None and limit < 0:
        raise ValueError("limit must be >= 0")
    selected: list[tuple[str, Record]] = []
    for key in sorted(records):
        if not key.startswith(prefix):
            continue
        record = records[key]
        if not _matches(record, since=since, min_frequency=min_frequency):
            continue
        selected.append((key, copy.deepcopy(record)))
        if limit is not None and len(selected) >= limit:
            break
    return selected


class InMemoryLearningStore:
    """Process-local store used when learning is disabled and in tests."""

    def __init__(self, records: Mapping[str, Record] | None = None) -> None:
        self._records: dict[str, Record] = copy.deepcopy(dict(records or {}))
        self._lock = threading.Lock()

    @property
    def supports_aggregates(self) -> bool:
        return True

    def get(self, key: str) -> Record | None:
        with self._lock:
            record = self._records.get(_validate_key(key))
            return copy.deepcopy(record) if record is not None else None

    def put(self, key: str, record: Mapping[str, Any]) -> None:
        with self._lock:
            self._records[_validate_key(key)] = copy.deepcopy(dict(record))

    def update(self, key: str, updater: Updater) -> Record | None:
        with self._lock:
            _validate_key(key)
            current = self._records.get(key)
            updated = updater(copy.deepcopy(current) if current is not None else None)
            if updated is None:
                self._records.pop(key, None)
                return None
            self._records[key] = copy.deepcopy(dict(updated))
            return copy.deepcopy(self._records[key])

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._records.pop(_validate_key(key), None) is not None

    def query(
        self,
        prefix: str,
        *,
        since: datetime | None = None,
        min_frequency: int | None = None,
        limit: int | None = None,
    ) -> list[tuple[str, Record]]:
        with self._lock:
            return _filter_records(
                self._records, prefix, since=since, min_frequency=min_frequency, limit=limit
            )

    def close(self) -> None:
        return None


class LocalFileLearningStore:
    """Single JSON document guarded by an advisory file lock; writes replace atomically."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def supports_aggregates(self) -> bool:
        return True

    def get(self, key: str) -> Record | None:
        _validate_key(key)
        with locked_file(self._path):
            return self._load().get(key)

    def put(self, key: str, record: Mapping[str, Any]) -> None:
        _validate_key(key)
        with locked_file(self._path):
            records = self._load()
            records[key] = json.loads(json.dumps(dict(record)))
            self._save(records)

    def update(self, key: str, updater: Updater) -> Record | None:
        _validate_key(key)
        with locked_file(self._path):
            records = self._load()
            updated = updater(records.get(key))
            if updated is None:
                records.pop(key, None)
            else:
                records[key] = json.loads(json.dumps(dict(updated)))
            self._save(records)
            return records.get(key)

    def delete(self, key: str) -> bool:
        _validate_key(key)
        with locked_file(self._path):
            records = self._load()
            removed = records.pop(key, None) is not None
            if removed:
                self._save(records)
            return removed

    def query(
        self,
        prefix: str,
        *,
        since: datetime | None = None,
        min_frequency: int | None = None,
        limit: int | None = None,
    ) -> list[tuple[str, Record]]:
        with locked_file(self._path):
            records = self._load()
        return _filter_records(
            records, prefix, since=since, min_frequency=min_frequency, limit=limit
        )

    def close(self) -> None:
        return None

    def _load(self) -> dict[str, Record]:
        try:
            payload = read_json(self._path, default=None)
        except json.JSONDecodeError as exc:
            raise StoreUnavailable(f"learning store {self._path} is corrupt: {exc}") from exc
        if payload is None:
            return {}
        if not isinstance(payload, dict) or not isinstance(payload.get("records"), dict):
            raise StoreUnavailable(f"learning store {self._path} has an unexpected layout")
        return payload["records"]

    def _save(self, records: Mapping[str, Record]) -> None:
        write_json(
            self._path,
            {"schema_version": LEARNING_STORE_SCHEMA_VERSION, "records": dict(records)},
        )


_SCHEMA_SQL: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS learning_records (
        key TEXT PRIMARY KEY,
        payload_json TEXT NOT NULL,
        frequency INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS learning_meta (
        name TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
)


class SharedLearningStore:
    """SQLite database at a shared path, usable by several orchestrator processes."""

    def __init__(self, path: str | Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        self._path = Path(path)
        self._busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def supports_aggregates(self) -> bool:
        return True

    def open(self) -> SharedLearningStore:
        """Connect and ensure the schema exists; raises ``StoreUnavailable``."""
        self._connection()
        return self

    def get(self, key: str) -> Record | None:
        _validate_key(key)
        with self._locked() as conn:
            row = conn.execute(
                "SELECT payload_json FROM learning_records WHERE key = ?", (key,)
            ).fetchone()
        return json.loads(row[0]) if row is not None else None

    def put(self, key: str, record: Mapping[str, Any]) -> None:
        _validate_key(key)
        with self._transaction() as conn:
            self._write(conn, key, record)

    def update(self, key: str, updater: Updater) -> Record | None:
        _validate_key(key)
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT payload_json FROM learning_records WHERE key = ?", (key,)
            ).fetchone()
            updated = updater(json.loads(row[0]) if row is not None else None)
            if updated is None:
                conn.execute("DELETE FROM learning_records WHERE key = ?", (key,))
                return None
            self._write(conn, key, updated)
            return json.loads(json.dumps(dict(updated)))

    def delete(self, key: str) -> bool:
        _validate_key(key)
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM learning_records WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def query(
        self,
        prefix: str,
        *,
        since: datetime | None = None,
        min_frequency: int | None = None,
        limit: int | None = None,
    ) -> list[tuple[str, Record]]:
        if limit is not None and limit < 0:
            raise ValueError("limit must be >= 0")
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        sql = "SELECT key, payload_json FROM learning_records WHERE key LIKE ? ESCAPE '\\'"
        params: list[object] = [f"{escaped}%"]
        if min_frequency is not None:
            sql += " AND frequency >= ?"
            params.append(min_frequency)
        sql += " ORDER BY key"
        with self._locked() as conn:
            rows = conn.execute(sql, params).fetchall()
        selected: list[tuple[str, Record]] = []
        for key, payload_json in rows:
            record = json.loads(payload_json)
            if not _matches(record, since=since, min_frequency=None):
                continue
            selected.append((key, record))
            if limit is not None and len(selected) >= limit:
                break
        return selected

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _write(self, conn: sqlite3.Connection, key: str, record: Mapping[str, Any]) -> None:
        payload = dict(record)
        conn.execute(
            """
            INSERT INTO learning_records (key, payload_json, frequency, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                payload_json = excluded.payload_json,
                frequency = excluded.frequency,
                updated_at = excluded.updated_at
            """,
            (
                key,
                json.dumps(payload, sort_keys=True, ensure_ascii=False),
                int(payload.get("frequency", 0)),
                payload.get("updated_at"),
            ),
        )

    def _connection(self) -> sqlite3.Connection:
        if self._conn is not None:
            return self._conn
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                self._path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA_SQL:
                conn.execute(statement)
            conn.execute(
                "INSERT OR IGNORE INTO learning_meta (name, value) VALUES ('schema_version', ?)",
                (str(LEARNING_STORE_SCHEMA_VERSION),),
            )
        except (sqlite3.Error, OSError) as exc:
            raise StoreUnavailable(
                f"shared learning store {self._path} unreachable: {exc}"
            ) from exc
        self._conn = conn
        return conn

    @contextmanager
    def _locked(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connection()
            try:
                yield conn
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"shared learning store {self._path}: {exc}") from exc

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._locked() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")


class DegradedLearningStore:
    """Routes to ``primary`` until it fails, then continues on local-only ``fallback``.

    While degraded, aggregate queries are disabled so decisions fall back to defaults.
    """

    def __init__(
        self,
        primary: LearningStore | None,
        fallback: LearningStore,
        *,
        reason: str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._reason: str | None = None
        if primary is None:
            self._degrade(reason or "shared learning store unavailable")

    @property
    def degraded(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def supports_aggregates(self) -> bool:
        return not self.degraded

    def get(self, key: str) -> Record | None:
        return self._call(lambda store: store.get(key))

    def put(self, key: str, record: Mapping[str, Any]) -> None:
        self._call(lambda store: store.put(key, record))

    def update(self, key: str, updater: Updater) -> Record | None:
        return self._call(lambda store: store.update(key, updater))

    def delete(self, key: str) -> bool:
        return self._call(lambda store: store.delete(key))

    def query(
        self,
        prefix: str,
        *,
        since: datetime | None = None,
        min_frequency: int | None = None,
        limit: int | None = None,
    ) -> list[tuple[str, Record]]:
        return self._call(
            lambda store: store.query(
                prefix, since=since, min_frequency=min_frequency, limit=limit
            )
        )

    def close(self) -> None:
        if self._primary is not None:
            self._primary.close()
        self._fallback.close()

    def _call(self, operation: Callable[[LearningStore], Any]) -> Any:
        if self._primary is not None and not self.degraded:
            try:
                return operation(self._primary)
            except StoreUnavailable as exc:
                self._degrade(str(exc))
        return operation(self._fallback)

    def _degrade(self, reason: str) -> None:
        if self._reason is not None:
            return
        self._reason = reason
        self._logger.warning("learning_store_degraded", reason=reason, mode="local_only")


def open_learning_store(
    backend: str,
    *,
    local_path: str | Path,
    shared_path: str | Path,
    logger: Any | None = None,
) -> LearningStore:
    """Select the backend named in ``[learning].backend``."""
    if backend == "none":
        return InMemoryLearningStore()
    if backend == "local":
        return LocalFileLearningStore(local_path)
    if backend != "shared":
        raise ValueError(f"unknown learning store backend {backend!r}")
    local = LocalFileLearningStore(local_path)
    try:
        shared = SharedLearningStore(shared_path).open()
    except StoreUnavailable as exc:
        return DegradedLearningStore(None, local, reason=str(exc), logger=logger)
    return DegradedLearningStore(shared, local, logger=logger)


__all__ = [
    "BENCHMARK_KEY",
    "PATTERN_PREFIX",
    "ROLE_PREFIX",
    "RUN_PREFIX",
    "DegradedLearningStore",
    "InMemoryLearningStore",
    "LearningStore",
    "LocalFileLearningStore",
    "Record",
    "SharedLearningStore",
    "open_learning_store",
]
