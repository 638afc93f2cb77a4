"""
Выполнение одного задания.

Пайплайн:
    1. Предобработка: документ -> страницы, загрузка страниц в хранилище
    2. Распознавание: чанки страниц, повтор только временных ошибок
    3. Проверка на повторный запуск
    4. Запись всех результатов одним пакетом
    5. Финализация статуса

Любая ошибка задания превращается в status=failed, наружу не выходит.
Отмена проверяется между страницами, при отмене ничего не записывается.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from PIL import UnidentifiedImageError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from ocr_queue.errors import (
    PreprocessingError,
    ProviderError,
    SchemaMismatchError,
    StorageError,
    TransientProviderError,
)
from ocr_queue.schemas import (
    JobRecord,
    JobStatus,
    PageImage,
    PageResultRecord,
    ProcessingSettings,
    ProviderConfig,
    RecognitionResult,
    utc_now,
)
from ocr_queue.services.blob_store import THUMBNAIL_ARTIFACT, BlobStore, blob_path
from ocr_queue.services.pdf_processor import (
    effective_pages_per_chunk,
    make_thumbnail,
    split_document_to_pages,
    upload_page_images,
)
from ocr_queue.services.providers.base import RecognitionProvider
from ocr_queue.services.record_store import JOBS, PAGE_RESULTS, RecordStore
from ocr_queue.services.results_store import persist_page_results, results_exist

logger = logging.getLogger(__name__)

GENERIC_ERROR = "processing failed"


class JobStopped(Exception):
    """Задание отменено (или соседний чанк упал) — дальше страницы не берём."""


class JobExecutor:
    """
    Исполнитель заданий.

    Args:
        record_store: хранилище записей
        blob_store: хранилище файлов
        provider_factory: ProviderConfig -> RecognitionProvider
        settings: Settings (параметры рендеринга и миниатюр)
    """

    def __init__(
        self,
        record_store: RecordStore,
        blob_store: BlobStore,
        provider_factory: Callable[[ProviderConfig], RecognitionProvider],
        settings,
    ):
        self.record_store = record_store
        self.blob_store = blob_store
        self.provider_factory = provider_factory
        self.settings = settings

    # -------------------------------------------------------------------------
    # Запуск
    # -------------------------------------------------------------------------

    def execute(
        self,
        job: JobRecord,
        processing: ProcessingSettings,
        provider_config: ProviderConfig,
        cancel_event: Optional[threading.Event] = None,
    ) -> JobStatus:
        """
        Выполняет захваченное задание (status=processing) до конечного состояния.

        Args:
            job: запись задания
            processing: параметры чанков и повторов
            provider_config: провайдер и учётные данные для этого запуска
            cancel_event: флаг отмены от менеджера очереди

        Returns:
            JobStatus: итоговый статус задания
        """
        cancel_event = cancel_event or threading.Event()
        total_start = time.perf_counter()

        logger.info("=" * 60)
        logger.info(f"ЗАДАНИЕ {job.id}")
        logger.info(f"   Файл: {job.original_filename} ({job.file_size / (1024 * 1024):.2f} MB)")
        logger.info(f"   Провайдер: {provider_config.provider.value}")
        logger.info("=" * 60)

        # id результатов, записанных этим запуском
        inserted_ids: list[str] = []
        try:
            status = self._run(job, processing, provider_config, cancel_event, inserted_ids)
        except Exception:
            logger.exception(f"Непредвиденная ошибка задания {job.id}")
            status = self._fail(job.id, GENERIC_ERROR)

        # Задание не завершено: результаты этого запуска не остаются
        if status != JobStatus.COMPLETED and inserted_ids:
            deleted = self.record_store.delete_where(PAGE_RESULTS, {"id": inserted_ids})
            logger.info(f"   Удалены результаты незавершённого запуска: {deleted}")

        total_duration = int((time.perf_counter() - total_start) * 1000)
        logger.info(f"   Задание {job.id}: {status.value} за {total_duration}ms")
        return status

    def _run(
        self,
        job: JobRecord,
        processing: ProcessingSettings,
        provider_config: ProviderConfig,
        cancel_event: threading.Event,
        inserted_ids: list[str],
    ) -> JobStatus:
        # 1. Предобработка
        try:
            source = self.blob_store.get(job.storage_path)
            pages = split_document_to_pages(
                source,
                job.file_type,
                scale=self.settings.render_scale,
                jpeg_quality=self.settings.render_jpeg_quality,
                thread_count=self.settings.render_thread_count,
            )
            upload_page_images(pages, self.blob_store, job.owner_id, job.id)
        except (PreprocessingError, StorageError) as e:
            logger.warning(f"   Предобработка не удалась: {e}")
            return self._fail(job.id, str(e))

        self._patch(job.id, {"total_pages": len(pages)})
        self._save_thumbnail(job, pages[0])

        if self._is_cancelled(job.id, cancel_event):
            return self._stopped(job.id)

        # 2. Распознавание
        provider = self.provider_factory(provider_config)
        try:
            results = self._recognize_pages(
                job, pages, provider, processing, provider_config, cancel_event
            )
        except JobStopped:
            return self._stopped(job.id)
        except ProviderError as e:
            logger.warning(f"   Распознавание не удалось: {e}")
            return self._fail(job.id, str(e))

        if self._is_cancelled(job.id, cancel_event):
            return self._stopped(job.id)

        # 3. Повторный запуск: результаты уже записаны
        if results_exist(self.record_store, job.id):
            logger.info(f"   Результаты задания {job.id} уже записаны, вставка пропущена")
        else:
            # 4. Запись результатов
            try:
                persist_page_results(self.record_store, results)
            except (StorageError, SchemaMismatchError) as e:
                logger.warning(f"   Запись результатов не удалась: {e}")
                return self._fail(job.id, str(e))
            inserted_ids.extend(r.id for r in results)

        # 5. Финализация
        now = utc_now().isoformat()
        completed = self.record_store.update(
            JOBS,
            job.id,
            {
                "status": JobStatus.COMPLETED.value,
                "error": None,
                "progress": 100,
                "current_page": len(pages),
                "total_pages": len(pages),
                "processing_completed_at": now,
                "updated_at": now,
            },
            expected_status=(JobStatus.PROCESSING.value,),
        )
        if not completed:
            # Отменено между записью и финализацией: записанное удалит execute
            return self._stopped(job.id)

        return JobStatus.COMPLETED

    # -------------------------------------------------------------------------
    # Распознавание
    # -------------------------------------------------------------------------

    def _recognize_pages(
        self,
        job: JobRecord,
        pages: list[PageImage],
        provider: RecognitionProvider,
        processing: ProcessingSettings,
        provider_config: ProviderConfig,
        cancel_event: threading.Event,
    ) -> list[PageResultRecord]:
        """
        Распознаёт страницы чанками.

        До concurrent_chunks чанков параллельно, внутри чанка — последовательно.
        Первая ошибка останавливает остальные чанки на границе страницы.
        """
        total = len(pages)
        per_chunk = effective_pages_per_chunk(total, processing.pages_per_chunk)
        chunks = [pages[i:i + per_chunk] for i in range(0, total, per_chunk)]

        abort = threading.Event()
        progress_lock = threading.Lock()
        done = [0]
        retryer = self._retry_policy(processing)

        logger.info(
            f"   OCR: {total} страниц, чанков={len(chunks)} по {per_chunk}, "
            f"параллельно={processing.concurrent_chunks}"
        )

        def run_chunk(chunk: list[PageImage]) -> list[PageResultRecord]:
            out = []
            try:
                for page in chunk:
                    if abort.is_set() or self._is_cancelled(job.id, cancel_event):
                        raise JobStopped()
                    result: RecognitionResult = retryer(
                        provider.recognize, page.image_bytes, provider_config
                    )
                    out.append(self._to_record(job, page, total, result, provider))

                    with progress_lock:
                        done[0] += 1
                        finished = done[0]
                    self._patch(
                        job.id,
                        {
                            "progress": int(finished * 100 / total),
                            "current_page": page.page_number,
                        },
                    )
            except Exception:
                abort.set()
                raise
            return out

        workers = min(processing.concurrent_chunks, len(chunks))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ocr-chunk") as pool:
            futures = [pool.submit(run_chunk, chunk) for chunk in chunks]

        errors = [f.exception() for f in futures if f.exception() is not None]
        failures = [e for e in errors if not isinstance(e, JobStopped)]
        if failures:
            raise failures[0]
        if errors:
            raise JobStopped()

        results = [record for f in futures for record in f.result()]
        return sorted(results, key=lambda r: r.page_number)

    @staticmethod
    def _retry_policy(processing: ProcessingSettings) -> Retrying:
        """Фиксированная пауза, повтор только TransientProviderError."""
        return Retrying(
            stop=stop_after_attempt(1 + processing.retry_attempts),
            wait=wait_fixed(processing.retry_delay_ms / 1000),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    @staticmethod
    def _to_record(
        job: JobRecord,
        page: PageImage,
        total: int,
        result: RecognitionResult,
        provider: RecognitionProvider,
    ) -> PageResultRecord:
        return PageResultRecord(
            id=str(uuid.uuid4()),
            job_id=job.id,
            owner_id=job.owner_id,
            page_number=page.page_number,
            total_pages=total,
            text=result.text,
            confidence=max(0.0, min(1.0, result.confidence)),
            language=result.language,
            processing_time_ms=result.processing_time_ms,
            storage_path=page.storage_path,
            provider=provider.name,
        )

    # -------------------------------------------------------------------------
    # Состояние задания
    # -------------------------------------------------------------------------

    def _is_cancelled(self, job_id: str, cancel_event: threading.Event) -> bool:
        if cancel_event.is_set():
            return True
        row = self.record_store.select_by_id(JOBS, job_id)
        return row is None or row["status"] != JobStatus.PROCESSING.value

    def _patch(self, job_id: str, patch: dict) -> bool:
        """Информативное обновление, только пока задание в processing."""
        patch = {**patch, "updated_at": utc_now().isoformat()}
        return self.record_store.update(
            JOBS, job_id, patch, expected_status=(JobStatus.PROCESSING.value,)
        )

    def _fail(self, job_id: str, message: str) -> JobStatus:
        now = utc_now().isoformat()
        failed = self.record_store.update(
            JOBS,
            job_id,
            {
                "status": JobStatus.FAILED.value,
                "error": message,
                "processing_completed_at": now,
                "updated_at": now,
            },
            expected_status=(JobStatus.PROCESSING.value,),
        )
        if not failed:
            return self._stopped(job_id)
        return JobStatus.FAILED

    def _stopped(self, job_id: str) -> JobStatus:
        """Статус задания, которое перестало быть processing не по нашей воле."""
        row = self.record_store.select_by_id(JOBS, job_id)
        status = JobStatus(row["status"]) if row else JobStatus.CANCELLED
        logger.info(f"   Задание {job_id} остановлено: {status.value}")
        return status

    def _save_thumbnail(self, job: JobRecord, first_page: PageImage) -> None:
        """Миниатюра первой страницы; ошибка не влияет на задание."""
        try:
            data = make_thumbnail(first_page.image_bytes, self.settings.thumbnail_size_px)
            path = self.blob_store.put(
                blob_path(job.owner_id, job.id, THUMBNAIL_ARTIFACT), data, "image/jpeg"
            )
        except (StorageError, UnidentifiedImageError, OSError) as e:
            logger.warning(f"   Миниатюра не создана: {e}")
            return
        self._patch(job.id, {"thumbnail_path": path})
