"""
Тесты менеджера очереди: лимит параллелизма, FIFO, пауза,
фоновые воркеры, восстановление после падения.
"""

import threading

import pytest

from ocr_queue.errors import QueuePausedError
from ocr_queue.schemas import JobStatus
from ocr_queue.services.record_store import JOBS

from conftest import OWNER, FakeProvider, make_pdf


def count_processing(store) -> int:
    return len(store.select_where(JOBS, {"status": JobStatus.PROCESSING.value}))


def test_concurrency_bound(make_service, record_store):
    """Одновременно в processing не больше max_concurrent_jobs заданий."""
    observed = []
    lock = threading.Lock()

    def observe(page):
        with lock:
            observed.append(count_processing(record_store))

    provider = FakeProvider(delay=0.02, on_success=observe)
    service = make_service(provider, max_concurrent_jobs=2)
    job_ids = [
        service.enqueue(make_pdf(2), f"doc{i}.pdf", "application/pdf", OWNER) for i in range(5)
    ]

    assert service.process_queue() == 5

    assert observed
    assert max(observed) <= 2
    assert all(service.get_status(j, OWNER).status == JobStatus.COMPLETED for j in job_ids)


def test_fifo_admission(make_service, record_store):
    order = []
    provider = FakeProvider()
    service = make_service(provider, max_concurrent_jobs=1)
    job_ids = [
        service.enqueue(make_pdf(1), f"doc{i}.pdf", "application/pdf", OWNER) for i in range(3)
    ]

    original = service.executor.execute

    def tracking(job, *args, **kwargs):
        order.append(job.id)
        return original(job, *args, **kwargs)

    service.executor.execute = tracking
    service.process_queue()

    assert order == job_ids


def test_paused_queue_rejects_processing(service, record_store):
    job_id = service.enqueue(make_pdf(1), "doc.pdf", "application/pdf", OWNER)
    service.pause()

    with pytest.raises(QueuePausedError):
        service.process_queue()

    assert service.is_paused
    assert service.get_status(job_id, OWNER).status == JobStatus.QUEUED


def test_pause_lets_running_job_finish(make_service, record_store):
    """Пауза во время работы: текущее задание дорабатывает, остальные ждут."""
    holder = {}
    provider = FakeProvider(on_success=lambda page: holder["service"].pause())
    service = make_service(provider, max_concurrent_jobs=1)
    holder["service"] = service
    job_ids = [
        service.enqueue(make_pdf(2), f"doc{i}.pdf", "application/pdf", OWNER) for i in range(3)
    ]

    assert service.process_queue() == 1

    statuses = [service.get_status(j, OWNER).status for j in job_ids]
    assert statuses == [JobStatus.COMPLETED, JobStatus.QUEUED, JobStatus.QUEUED]

    provider.on_success = None
    service.resume()
    assert service.process_queue() == 2
    assert all(service.get_status(j, OWNER).status == JobStatus.COMPLETED for j in job_ids)


def test_background_workers(make_service):
    provider = FakeProvider()
    service = make_service(provider, max_concurrent_jobs=2)
    service.start()
    try:
        job_ids = [
            service.enqueue(make_pdf(2), f"doc{i}.pdf", "application/pdf", OWNER)
            for i in range(3)
        ]
        assert service.queue.wait_idle(timeout=10)
    finally:
        service.stop(timeout=10)

    assert all(service.get_status(j, OWNER).status == JobStatus.COMPLETED for j in job_ids)


def test_recover_interrupted_jobs(service, record_store):
    job_id = service.enqueue(make_pdf(1), "doc.pdf", "application/pdf", OWNER)
    record_store.update(JOBS, job_id, {"status": JobStatus.PROCESSING.value})

    assert service.queue.recover_interrupted() == 1
    assert service.get_status(job_id, OWNER).status == JobStatus.QUEUED

    service.process_queue()
    assert service.get_status(job_id, OWNER).status == JobStatus.COMPLETED


def test_settings_update_applies_to_next_jobs(make_service):
    from ocr_queue.schemas import ProcessingSettings

    provider = FakeProvider(delay=0.02)
    service = make_service(provider, concurrent_chunks=1)
    service.update_processing_settings(
        ProcessingSettings(pages_per_chunk=1, concurrent_chunks=3, retry_delay_ms=0)
    )
    job_id = service.enqueue(make_pdf(6), "doc.pdf", "application/pdf", OWNER)

    service.process_queue()

    assert service.get_status(job_id, OWNER).status == JobStatus.COMPLETED
    assert 1 < provider.max_in_flight <= 3


class GatedProvider(FakeProvider):
    """Первый вызов ждёт release, остальные проходят сразу."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()
        self.gated = False

    def recognize(self, image_bytes, config):
        if not self.gated:
            self.gated = True
            self.started.set()
            assert self.release.wait(10)
        return super().recognize(image_bytes, config)


def test_retry_while_previous_run_is_unwinding(make_service, record_store):
    """Отмена и повтор во время вызова провайдера: результаты даёт только новый запуск."""
    from ocr_queue.services.record_store import PAGE_RESULTS

    provider = GatedProvider()
    service = make_service(
        provider, max_concurrent_jobs=2, pages_per_chunk=2, concurrent_chunks=1
    )
    job_id = service.enqueue(make_pdf(2), "doc.pdf", "application/pdf", OWNER)

    outcome = {}
    runner = threading.Thread(target=lambda: outcome.update(started=service.process_queue()))
    runner.start()
    assert provider.started.wait(10)

    service.cancel(job_id, OWNER)
    service.retry(job_id, OWNER)

    # Старый запуск ещё в вызове провайдера: повторно не допускается
    assert service.get_status(job_id, OWNER).status == JobStatus.QUEUED
    assert job_id in service.queue.active_jobs

    provider.release.set()
    runner.join(10)

    assert outcome["started"] == 2
    assert provider.calls == {1: 2, 2: 1}
    assert service.get_status(job_id, OWNER).status == JobStatus.COMPLETED
    rows = record_store.select_where(PAGE_RESULTS, {"job_id": job_id}, order_by="page_number")
    assert [r["page_number"] for r in rows] == [1, 2]


def test_worker_survives_store_error(make_service, record_store, monkeypatch, caplog):
    """Ошибка хранилища при допуске не останавливает фонового воркера."""
    from ocr_queue.errors import StorageError

    original_select = record_store.select_where
    state = {"raised": False}

    def select_where(table, filters, order_by=None):
        in_worker = threading.current_thread().name.startswith("ocr-queue-worker")
        if in_worker and not state["raised"]:
            state["raised"] = True
            raise StorageError("database is locked")
        return original_select(table, filters, order_by)

    monkeypatch.setattr(record_store, "select_where", select_where)
    service = make_service(FakeProvider(), max_concurrent_jobs=1)

    service.start()
    try:
        job_id = service.enqueue(make_pdf(1), "doc.pdf", "application/pdf", OWNER)
        assert service.queue.wait_idle(timeout=10)
    finally:
        service.stop(timeout=10)

    assert state["raised"]
    assert service.get_status(job_id, OWNER).status == JobStatus.COMPLETED
    assert "Ошибка воркера" in caplog.text


def test_process_queue_logs_failed_runs(service, caplog):
    def broken(job, *args, **kwargs):
        raise RuntimeError("executor crashed")

    service.executor.execute = broken
    service.enqueue(make_pdf(1), "doc.pdf", "application/pdf", OWNER)

    assert service.process_queue() == 1
    assert service.queue.active_jobs == []
    assert "executor crashed" in caplog.text


def test_lowered_limit_applies_to_running_workers(make_service, record_store):
    from ocr_queue.schemas import ProcessingSettings

    observed = []
    lock = threading.Lock()

    def observe(page):
        with lock:
            observed.append(count_processing(record_store))

    provider = FakeProvider(delay=0.02, on_success=observe)
    service = make_service(provider, max_concurrent_jobs=3)
    service.start()
    try:
        service.update_processing_settings(
            ProcessingSettings(max_concurrent_jobs=1, retry_delay_ms=0)
        )
        job_ids = [
            service.enqueue(make_pdf(2), f"doc{i}.pdf", "application/pdf", OWNER)
            for i in range(4)
        ]
        assert service.queue.wait_idle(timeout=10)
    finally:
        service.stop(timeout=10)

    assert observed
    assert max(observed) == 1
    assert all(service.get_status(j, OWNER).status == JobStatus.COMPLETED for j in job_ids)


def test_raised_limit_adds_workers(make_service):
    from ocr_queue.schemas import ProcessingSettings

    service = make_service(FakeProvider(), max_concurrent_jobs=1)
    service.start()
    try:
        service.update_processing_settings(
            ProcessingSettings(max_concurrent_jobs=3, retry_delay_ms=0)
        )
        assert len(service.queue._workers) == 3
    finally:
        service.stop(timeout=10)
