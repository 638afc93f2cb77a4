"""
Запись результатов страниц.

Два правила:
    - results_exist: проверка перед вставкой, повторный запуск не создаёт дубликатов
    - persist_page_results: одна пакетная вставка на всё задание (всё или ничего),
      при несовпадении схемы — одна повторная попытка с базовыми колонками
"""

import logging

from ocr_queue.errors import SchemaMismatchError
from ocr_queue.schemas import PageResultRecord
from ocr_queue.services.record_store import PAGE_RESULTS, RecordStore

logger = logging.getLogger(__name__)

# Колонки, которые есть в любой версии таблицы page_results
CORE_RESULT_COLUMNS = (
    "id",
    "job_id",
    "owner_id",
    "page_number",
    "total_pages",
    "text",
    "confidence",
    "provider",
    "created_at",
)


def results_exist(store: RecordStore, job_id: str) -> bool:
    """True если для задания уже записан хотя бы один результат."""
    return bool(store.select_where(PAGE_RESULTS, {"job_id": job_id}))


def persist_page_results(store: RecordStore, results: list[PageResultRecord]) -> int:
    """
    Записывает результаты страниц одним пакетом в порядке номеров.

    Args:
        store: хранилище записей
        results: результаты всех страниц задания

    Returns:
        int: число записанных строк

    Raises:
        SchemaMismatchError: если не подошёл и сокращённый набор колонок
        StorageError: прочие ошибки хранилища
    """
    rows = [
        r.model_dump(mode="json")
        for r in sorted(results, key=lambda r: r.page_number)
    ]
    if not rows:
        return 0

    try:
        store.insert_many(PAGE_RESULTS, rows)
    except SchemaMismatchError as e:
        logger.warning(f"Схема page_results не совпадает ({e}), вставка базовых колонок")
        reduced = [{c: row[c] for c in CORE_RESULT_COLUMNS} for row in rows]
        store.insert_many(PAGE_RESULTS, reduced)

    return len(rows)
