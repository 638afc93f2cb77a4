"""
Тесты хранилищ: записи (in-memory и SQLite), файлы, запись результатов.
"""

import sqlite3
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from ocr_queue.errors import SchemaMismatchError, StorageError
from ocr_queue.schemas import PageResultRecord
from ocr_queue.services.blob_store import (
    LocalBlobStore,
    S3BlobStore,
    blob_path,
    normalize_storage_path,
    source_artifact_name,
)
from ocr_queue.services.record_store import (
    JOBS,
    PAGE_RESULTS,
    InMemoryRecordStore,
    SqliteRecordStore,
)
from ocr_queue.services.results_store import persist_page_results, results_exist

from conftest import OWNER


def job_row(job_id: str, status: str = "queued", created_at: str = "2026-01-01T00:00:00Z") -> dict:
    return {
        "id": job_id,
        "owner_id": OWNER,
        "filename": f"PDF_{job_id}.pdf",
        "original_filename": "doc.pdf",
        "status": status,
        "progress": 0,
        "current_page": 0,
        "total_pages": 0,
        "file_size": 10,
        "file_type": "application/pdf",
        "storage_path": f"{OWNER}/{job_id}/PDF_{job_id}.pdf",
        "thumbnail_path": None,
        "error": None,
        "created_at": created_at,
        "updated_at": created_at,
        "processing_started_at": None,
        "processing_completed_at": None,
    }


def page_results(job_id: str, count: int) -> list[PageResultRecord]:
    return [
        PageResultRecord(
            id=f"{job_id}-r{n}",
            job_id=job_id,
            owner_id=OWNER,
            page_number=n,
            total_pages=count,
            text=f"page {n}",
            confidence=0.5,
            language="ar",
            processing_time_ms=10,
            provider="fake",
        )
        for n in range(count, 0, -1)
    ]


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryRecordStore()
    return SqliteRecordStore(str(tmp_path / "records.db"))


# =============================================================================
# Хранилище записей
# =============================================================================


def test_conditional_update_claims_once(store):
    """Переход queued -> processing проходит только у первого."""
    store.insert(JOBS, job_row("j1"))

    first = store.update(JOBS, "j1", {"status": "processing"}, expected_status=("queued",))
    second = store.update(JOBS, "j1", {"status": "processing"}, expected_status=("queued",))

    assert first is True
    assert second is False
    assert store.select_by_id(JOBS, "j1")["status"] == "processing"


def test_update_missing_record(store):
    assert store.update(JOBS, "nope", {"status": "failed"}) is False
    assert store.select_by_id(JOBS, "nope") is None


def test_select_where_filters_and_order(store):
    store.insert(JOBS, job_row("late", created_at="2026-01-03T00:00:00Z"))
    store.insert(JOBS, job_row("early", created_at="2026-01-01T00:00:00Z"))
    store.insert(JOBS, job_row("done", status="completed", created_at="2026-01-02T00:00:00Z"))

    queued = store.select_where(JOBS, {"status": "queued"}, order_by="created_at")
    assert [r["id"] for r in queued] == ["early", "late"]

    several = store.select_where(JOBS, {"status": ["queued", "completed"]}, order_by="created_at")
    assert [r["id"] for r in several] == ["early", "done", "late"]


def test_duplicate_page_is_rejected(store):
    rows = [r.model_dump(mode="json") for r in page_results("j1", 2)]
    store.insert_many(PAGE_RESULTS, rows)

    duplicate = dict(rows[0], id="other-id")
    with pytest.raises(StorageError):
        store.insert(PAGE_RESULTS, duplicate)
    assert len(store.select_where(PAGE_RESULTS, {"job_id": "j1"})) == 2


def test_delete_where(store):
    store.insert_many(PAGE_RESULTS, [r.model_dump(mode="json") for r in page_results("j1", 3)])
    store.insert_many(PAGE_RESULTS, [r.model_dump(mode="json") for r in page_results("j2", 1)])

    assert store.delete_where(PAGE_RESULTS, {"job_id": "j1"}) == 3
    assert [r["job_id"] for r in store.select_where(PAGE_RESULTS, {})] == ["j2"]


# =============================================================================
# Запись результатов
# =============================================================================


def test_persist_writes_in_page_order(store):
    assert not results_exist(store, "j1")

    written = persist_page_results(store, page_results("j1", 3))

    assert written == 3
    assert results_exist(store, "j1")
    rows = store.select_where(PAGE_RESULTS, {"job_id": "j1"})
    assert [r["page_number"] for r in rows] == [1, 2, 3]


def test_persist_falls_back_to_core_columns_in_memory():
    store = InMemoryRecordStore(
        columns={
            PAGE_RESULTS: (
                "id", "job_id", "owner_id", "page_number", "total_pages",
                "text", "confidence", "provider", "created_at",
            )
        }
    )

    assert persist_page_results(store, page_results("j1", 2)) == 2
    rows = store.select_where(PAGE_RESULTS, {"job_id": "j1"}, order_by="page_number")
    assert [r["page_number"] for r in rows] == [1, 2]
    assert "language" not in rows[0]


def test_persist_falls_back_on_old_sqlite_schema(tmp_path):
    """Старая таблица без language/processing_time_ms/storage_path."""
    path = str(tmp_path / "old.db")
    conn = sqlite3.connect(path)
    conn.execute(
        "CREATE TABLE page_results (id TEXT PRIMARY KEY, job_id TEXT, owner_id TEXT, "
        "page_number INTEGER, total_pages INTEGER, text TEXT, confidence REAL, "
        "provider TEXT, created_at TEXT)"
    )
    conn.commit()
    conn.close()
    store = SqliteRecordStore(path)

    with pytest.raises(SchemaMismatchError):
        store.insert(PAGE_RESULTS, page_results("j0", 1)[0].model_dump(mode="json"))

    assert persist_page_results(store, page_results("j1", 2)) == 2
    rows = store.select_where(PAGE_RESULTS, {"job_id": "j1"}, order_by="page_number")
    assert [r["text"] for r in rows] == ["page 1", "page 2"]
    assert PageResultRecord.model_validate(rows[0]).language is None


# =============================================================================
# Хранилище файлов
# =============================================================================


def test_paths():
    assert blob_path(OWNER, "j1", "page_1.jpg") == f"{OWNER}/j1/page_1.jpg"
    assert normalize_storage_path(f"{OWNER}/{OWNER}/j1/x.jpg", OWNER) == f"{OWNER}/j1/x.jpg"
    assert source_artifact_name("j1", "scan.PDF", "application/pdf") == "PDF_j1.pdf"
    assert source_artifact_name("j1", "photo.JPG", "image/jpeg") == "Image_j1.jpg"
    assert source_artifact_name("j1", "data.bin", "application/octet-stream") == "File_j1.bin"


def test_local_blob_store(tmp_path):
    blobs = LocalBlobStore(str(tmp_path / "blobs"))

    blobs.put("u/j/a.jpg", b"abc", "image/jpeg")
    assert blobs.get("u/j/a.jpg") == b"abc"
    assert blobs.delete("u/j/a.jpg") is True
    assert blobs.delete("u/j/a.jpg") is False

    with pytest.raises(StorageError):
        blobs.get("u/j/a.jpg")
    with pytest.raises(StorageError):
        blobs.put("../escape.txt", b"x", "text/plain")


def test_s3_blob_store_maps_client_errors():
    client = MagicMock()
    blobs = S3BlobStore(bucket="ocr", region="us-east-1", client=client)

    blobs.put("u/j/a.jpg", b"abc", "image/jpeg")
    client.put_object.assert_called_once_with(
        Bucket="ocr", Key="u/j/a.jpg", Body=b"abc", ContentType="image/jpeg"
    )

    client.get_object.side_effect = ClientError(
        {"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject"
    )
    with pytest.raises(StorageError):
        blobs.get("u/j/missing.jpg")
