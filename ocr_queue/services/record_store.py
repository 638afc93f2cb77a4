"""
Хранилище записей заданий и результатов страниц.

Две реализации одного контракта:
    - InMemoryRecordStore: словари в памяти (тесты, локальный запуск)
    - SqliteRecordStore: SQLite, соединение на каждую операцию

Условное обновление (update с expected_status) — единственный
механизм блокировки: задание захватывается переходом
queued -> processing только если оно всё ещё queued.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Optional, Protocol

from ocr_queue.errors import SchemaMismatchError, StorageError

logger = logging.getLogger(__name__)

JOBS = "jobs"
PAGE_RESULTS = "page_results"

# Полный набор колонок каждой таблицы
TABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    JOBS: (
        "id",
        "owner_id",
        "filename",
        "original_filename",
        "status",
        "progress",
        "current_page",
        "total_pages",
        "file_size",
        "file_type",
        "storage_path",
        "thumbnail_path",
        "error",
        "created_at",
        "updated_at",
        "processing_started_at",
        "processing_completed_at",
    ),
    PAGE_RESULTS: (
        "id",
        "job_id",
        "owner_id",
        "page_number",
        "total_pages",
        "text",
        "confidence",
        "language",
        "processing_time_ms",
        "storage_path",
        "provider",
        "created_at",
    ),
}

# Уникальные ключи помимо id
UNIQUE_KEYS: dict[str, tuple[str, ...]] = {
    PAGE_RESULTS: ("job_id", "page_number"),
}

Row = dict[str, Any]
Filters = dict[str, Any]


class RecordStore(Protocol):
    """Контракт хранилища записей."""

    def insert(self, table: str, row: Row) -> None: ...

    def insert_many(self, table: str, rows: list[Row]) -> None: ...

    def update(
        self,
        table: str,
        record_id: str,
        patch: Row,
        expected_status: Optional[Iterable[str]] = None,
    ) -> bool: ...

    def select_by_id(self, table: str, record_id: str) -> Optional[Row]: ...

    def select_where(
        self, table: str, filters: Filters, order_by: Optional[str] = None
    ) -> list[Row]: ...

    def delete_where(self, table: str, filters: Filters) -> int: ...


def _matches(row: Row, filters: Filters) -> bool:
    """Проверяет строку на соответствие фильтрам (список/кортеж значений = IN)."""
    for column, value in filters.items():
        if isinstance(value, (list, tuple, set)):
            if row.get(column) not in value:
                return False
        elif row.get(column) != value:
            return False
    return True


def _check_identifier(name: str) -> str:
    if not name.isidentifier():
        raise ValueError(f"Недопустимое имя колонки: {name!r}")
    return name


# =============================================================================
# In-memory реализация
# =============================================================================


class InMemoryRecordStore:
    """
    Хранилище записей в памяти процесса.

    Args:
        columns: переопределение набора колонок по таблицам.
            Позволяет воспроизвести «старую» схему без части колонок.
    """

    def __init__(self, columns: Optional[dict[str, Iterable[str]]] = None):
        self._lock = threading.RLock()
        self._tables: dict[str, dict[str, Row]] = {name: {} for name in TABLE_COLUMNS}
        self._columns = {name: set(cols) for name, cols in TABLE_COLUMNS.items()}
        for name, cols in (columns or {}).items():
            self._columns[name] = set(cols)

    def _table(self, table: str) -> dict[str, Row]:
        if table not in self._tables:
            raise ValueError(f"Неизвестная таблица: {table}")
        return self._tables[table]

    def _check_row(self, table: str, row: Row) -> None:
        unknown = set(row) - self._columns[table]
        if unknown:
            raise SchemaMismatchError(
                f"table {table} has no column named {sorted(unknown)[0]}"
            )

    def _check_unique(self, table: str, rows: list[Row]) -> None:
        existing = self._table(table)
        ids = set(existing)
        key = UNIQUE_KEYS.get(table)
        keys = {tuple(r.get(c) for c in key) for r in existing.values()} if key else set()

        for row in rows:
            if row["id"] in ids:
                raise StorageError(f"Дубликат id в {table}: {row['id']}")
            ids.add(row["id"])
            if key:
                value = tuple(row.get(c) for c in key)
                if value in keys:
                    raise StorageError(f"Дубликат {key} в {table}: {value}")
                keys.add(value)

    def insert(self, table: str, row: Row) -> None:
        self.insert_many(table, [row])

    def insert_many(self, table: str, rows: list[Row]) -> None:
        with self._lock:
            for row in rows:
                self._check_row(table, row)
            self._check_unique(table, rows)
            target = self._table(table)
            for row in rows:
                target[row["id"]] = dict(row)

    def update(
        self,
        table: str,
        record_id: str,
        patch: Row,
        expected_status: Optional[Iterable[str]] = None,
    ) -> bool:
        with self._lock:
            row = self._table(table).get(record_id)
            if row is None:
                return False
            if expected_status is not None and row.get("status") not in set(expected_status):
                return False
            self._check_row(table, patch)
            row.update(patch)
            return True

    def select_by_id(self, table: str, record_id: str) -> Optional[Row]:
        with self._lock:
            row = self._table(table).get(record_id)
            return dict(row) if row is not None else None

    def select_where(
        self, table: str, filters: Filters, order_by: Optional[str] = None
    ) -> list[Row]:
        with self._lock:
            # dict сохраняет порядок вставки, sorted стабилен
            rows = [dict(r) for r in self._table(table).values() if _matches(r, filters)]
        if order_by:
            rows.sort(key=lambda r: r.get(order_by))
        return rows

    def delete_where(self, table: str, filters: Filters) -> int:
        with self._lock:
            target = self._table(table)
            doomed = [rid for rid, row in target.items() if _matches(row, filters)]
            for rid in doomed:
                del target[rid]
            return len(doomed)


# =============================================================================
# SQLite реализация
# =============================================================================


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    filename TEXT NOT NULL,
    original_filename TEXT NOT NULL,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    current_page INTEGER NOT NULL DEFAULT 0,
    total_pages INTEGER NOT NULL DEFAULT 0,
    file_size INTEGER NOT NULL DEFAULT 0,
    file_type TEXT NOT NULL,
    storage_path TEXT NOT NULL,
    thumbnail_path TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    processing_started_at TEXT,
    processing_completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_owner ON jobs(owner_id);
CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at);

CREATE TABLE IF NOT EXISTS page_results (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    page_number INTEGER NOT NULL,
    total_pages INTEGER NOT NULL,
    text TEXT NOT NULL,
    confidence REAL NOT NULL,
    language TEXT,
    processing_time_ms INTEGER NOT NULL DEFAULT 0,
    storage_path TEXT,
    provider TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (job_id, page_number)
);
CREATE INDEX IF NOT EXISTS idx_page_results_job ON page_results(job_id);
"""


def _where_clause(filters: Filters) -> tuple[str, list[Any]]:
    """Строит WHERE из фильтров: скаляр -> '=', список -> 'IN (...)'."""
    if not filters:
        return "", []

    parts: list[str] = []
    params: list[Any] = []
    for column, value in filters.items():
        column = _check_identifier(column)
        if isinstance(value, (list, tuple, set)):
            values = list(value)
            if not values:
                parts.append("0")
                continue
            parts.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        else:
            parts.append(f"{column} = ?")
            params.append(value)
    return " WHERE " + " AND ".join(parts), params


class SqliteRecordStore:
    """
    Хранилище записей в SQLite.

    Каждая операция открывает своё соединение, поэтому экземпляр
    можно использовать из нескольких потоков.

    Args:
        database_path: путь к файлу базы данных
        init_schema: создать таблицы, если их нет
    """

    def __init__(self, database_path: str, init_schema: bool = True):
        self.database_path = database_path
        if init_schema:
            with self._connect() as conn:
                conn.executescript(SCHEMA_SQL)
            logger.info(f"SQLite хранилище готово: {database_path}")

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.database_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "no column named" in str(e) or "no such column" in str(e):
                raise SchemaMismatchError(str(e)) from e
            raise StorageError(f"Ошибка SQLite: {e}") from e
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Ошибка SQLite: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def _table(table: str) -> str:
        if table not in TABLE_COLUMNS:
            raise ValueError(f"Неизвестная таблица: {table}")
        return table

    def insert(self, table: str, row: Row) -> None:
        self.insert_many(table, [row])

    def insert_many(self, table: str, rows: list[Row]) -> None:
        if not rows:
            return
        columns = [_check_identifier(c) for c in rows[0]]
        sql = (
            f"INSERT INTO {self._table(table)} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        # Одна транзакция на весь пакет
        with self._connect() as conn:
            conn.executemany(sql, [[row.get(c) for c in columns] for row in rows])

    def update(
        self,
        table: str,
        record_id: str,
        patch: Row,
        expected_status: Optional[Iterable[str]] = None,
    ) -> bool:
        if not patch:
            return self.select_by_id(table, record_id) is not None

        assignments = ", ".join(f"{_check_identifier(c)} = ?" for c in patch)
        params = list(patch.values()) + [record_id]
        sql = f"UPDATE {self._table(table)} SET {assignments} WHERE id = ?"
        if expected_status is not None:
            statuses = list(expected_status)
            sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)

        with self._connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount > 0

    def select_by_id(self, table: str, record_id: str) -> Optional[Row]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {self._table(table)} WHERE id = ?", (record_id,)
            ).fetchone()
        return dict(row) if row is not None else None

    def select_where(
        self, table: str, filters: Filters, order_by: Optional[str] = None
    ) -> list[Row]:
        where, params = _where_clause(filters)
        sql = f"SELECT * FROM {self._table(table)}{where}"
        # rowid — порядок вставки при равных значениях
        if order_by:
            sql += f" ORDER BY {_check_identifier(order_by)}, rowid"
        else:
            sql += " ORDER BY rowid"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    def delete_where(self, table: str, filters: Filters) -> int:
        where, params = _where_clause(filters)
        with self._connect() as conn:
            cursor = conn.execute(f"DELETE FROM {self._table(table)}{where}", params)
            return cursor.rowcount


def get_record_store(settings) -> RecordStore:
    """Создаёт хранилище записей по настройкам (memory | sqlite)."""
    if settings.record_store.lower() == "memory":
        return InMemoryRecordStore()
    return SqliteRecordStore(settings.database_path)
