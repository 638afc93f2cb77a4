"""
Сервис обработки документов — точка входа для вызывающего кода.

Принимает файлы, отдаёт статус и результаты, управляет отменой,
повтором, паузой. Владеет менеджером очереди и его параметрами.
Все операции над заданием фильтруются по владельцу.
"""

import logging
import threading
import uuid
from typing import Optional

from ocr_queue.config import Settings
from ocr_queue.errors import InvalidFileError, InvalidJobStateError, JobNotFoundError
from ocr_queue.schemas import (
    CredentialsCheck,
    JobRecord,
    JobStats,
    JobStatus,
    PageResultRecord,
    ProcessingSettings,
    ProviderConfig,
    ProviderName,
    utc_now,
)
from ocr_queue.services.blob_store import (
    THUMBNAIL_ARTIFACT,
    BlobStore,
    blob_path,
    get_blob_store,
    page_artifact_name,
    source_artifact_name,
)
from ocr_queue.services.job_executor import JobExecutor
from ocr_queue.services.providers import RecognitionProvider, get_provider
from ocr_queue.services.queue_manager import QueueManager
from ocr_queue.services.record_store import (
    JOBS,
    PAGE_RESULTS,
    RecordStore,
    get_record_store,
)

logger = logging.getLogger(__name__)

CANCELLABLE = (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)
RETRYABLE = (JobStatus.FAILED.value, JobStatus.CANCELLED.value)


def processing_from_settings(settings: Settings) -> ProcessingSettings:
    return ProcessingSettings(
        max_concurrent_jobs=settings.max_concurrent_jobs,
        pages_per_chunk=settings.pages_per_chunk,
        concurrent_chunks=settings.concurrent_chunks,
        retry_attempts=settings.retry_attempts,
        retry_delay_ms=settings.retry_delay_ms,
    )


def provider_config_from_settings(settings: Settings) -> ProviderConfig:
    return ProviderConfig(
        provider=ProviderName(settings.provider),
        api_key=settings.api_key or None,
        region=settings.region or None,
        language=settings.language or None,
    )


class ProcessingService:
    """
    Оркестратор обработки документов.

    Args:
        record_store: хранилище записей
        blob_store: хранилище файлов
        settings: настройки (лимиты приёма, рендеринг, значения по умолчанию)
        provider_factory: ProviderConfig -> RecognitionProvider;
            по умолчанию get_provider с кэшем по имени провайдера
        processing: параметры очереди (по умолчанию из settings)
        provider_config: провайдер (по умолчанию из settings)
    """

    def __init__(
        self,
        record_store: RecordStore,
        blob_store: BlobStore,
        settings: Settings,
        provider_factory=None,
        processing: Optional[ProcessingSettings] = None,
        provider_config: Optional[ProviderConfig] = None,
    ):
        self.record_store = record_store
        self.blob_store = blob_store
        self.settings = settings

        self._providers: dict[ProviderName, RecognitionProvider] = {}
        self._providers_lock = threading.Lock()
        self._provider_factory = provider_factory or self._cached_provider

        self.executor = JobExecutor(
            record_store, blob_store, self._provider_factory, settings
        )
        self.queue = QueueManager(
            record_store,
            self.executor,
            processing or processing_from_settings(settings),
            provider_config or provider_config_from_settings(settings),
            poll_interval=settings.poll_interval_seconds,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProcessingService":
        """Сервис с хранилищами, выбранными в настройках."""
        return cls(get_record_store(settings), get_blob_store(settings), settings)

    def _cached_provider(self, config: ProviderConfig) -> RecognitionProvider:
        with self._providers_lock:
            if config.provider not in self._providers:
                self._providers[config.provider] = get_provider(config.provider, self.settings)
            return self._providers[config.provider]

    # -------------------------------------------------------------------------
    # Задания
    # -------------------------------------------------------------------------

    def enqueue(self, file_bytes: bytes, filename: str, mime_type: str, owner_id: str) -> str:
        """
        Принимает файл и ставит задание в очередь.

        Args:
            file_bytes: содержимое файла
            filename: исходное имя файла
            mime_type: MIME тип
            owner_id: владелец

        Returns:
            str: id задания

        Raises:
            InvalidFileError: пустой файл, превышен размер или тип не разрешён
            StorageError: исходный файл не удалось сохранить
        """
        self._validate_file(file_bytes, filename, mime_type)

        job_id = str(uuid.uuid4())
        artifact = source_artifact_name(job_id, filename, mime_type)
        storage_path = self.blob_store.put(
            blob_path(owner_id, job_id, artifact), file_bytes, mime_type
        )

        job = JobRecord(
            id=job_id,
            owner_id=owner_id,
            filename=artifact,
            original_filename=filename,
            file_size=len(file_bytes),
            file_type=mime_type,
            storage_path=storage_path,
        )
        self.record_store.insert(JOBS, job.model_dump(mode="json"))
        logger.info(
            f"Новое задание {job_id}: {filename} "
            f"({len(file_bytes) / (1024 * 1024):.2f} MB, {mime_type}), owner={owner_id}"
        )

        self.queue.enqueue(job_id)
        return job_id

    def _validate_file(self, file_bytes: bytes, filename: str, mime_type: str) -> None:
        if not file_bytes:
            raise InvalidFileError(f"Файл пустой: {filename}")

        max_bytes = self.settings.max_file_size_mb * 1024 * 1024
        if len(file_bytes) > max_bytes:
            raise InvalidFileError(
                f"Файл слишком большой: {len(file_bytes) / (1024 * 1024):.1f} MB "
                f"(максимум {self.settings.max_file_size_mb} MB)"
            )

        if mime_type not in self.settings.allowed_mime_types:
            raise InvalidFileError(f"Тип файла не поддерживается: {mime_type}")

    def _get_job_row(self, job_id: str, owner_id: str) -> dict:
        row = self.record_store.select_by_id(JOBS, job_id)
        if row is None or row["owner_id"] != owner_id:
            raise JobNotFoundError(job_id)
        return row

    def get_status(self, job_id: str, owner_id: str) -> JobRecord:
        """Raises: JobNotFoundError"""
        return JobRecord.model_validate(self._get_job_row(job_id, owner_id))

    def list_jobs(self, owner_id: str) -> list[JobRecord]:
        """Задания владельца, новые первыми."""
        rows = self.record_store.select_where(JOBS, {"owner_id": owner_id}, order_by="created_at")
        return [JobRecord.model_validate(row) for row in reversed(rows)]

    def get_results(self, job_id: str, owner_id: str) -> list[PageResultRecord]:
        """Результаты страниц в порядке номеров. Raises: JobNotFoundError"""
        self._get_job_row(job_id, owner_id)
        rows = self.record_store.select_where(
            PAGE_RESULTS, {"job_id": job_id, "owner_id": owner_id}, order_by="page_number"
        )
        return [PageResultRecord.model_validate(row) for row in rows]

    def cancel(self, job_id: str, owner_id: str) -> JobRecord:
        """
        Отменяет задание в статусе queued или processing.

        Выполняющийся вызов провайдера не прерывается: исполнитель
        остановится на границе страницы и ничего не запишет.

        Raises:
            JobNotFoundError: задания нет у владельца
            InvalidJobStateError: задание уже в конечном состоянии
        """
        row = self._get_job_row(job_id, owner_id)
        if row["status"] not in CANCELLABLE:
            raise InvalidJobStateError(job_id, row["status"], "cancel")

        now = utc_now().isoformat()
        updated = self.record_store.update(
            JOBS,
            job_id,
            {
                "status": JobStatus.CANCELLED.value,
                "error": None,
                "processing_completed_at": now,
                "updated_at": now,
            },
            expected_status=CANCELLABLE,
        )
        if not updated:
            current = self._get_job_row(job_id, owner_id)
            raise InvalidJobStateError(job_id, current["status"], "cancel")

        self.queue.cancel(job_id)
        logger.info(f"Задание отменено: {job_id}")
        return self.get_status(job_id, owner_id)

    def retry(self, job_id: str, owner_id: str) -> JobRecord:
        """
        Возвращает задание failed/cancelled в очередь без создания новой записи.

        Raises:
            JobNotFoundError: задания нет у владельца
            InvalidJobStateError: задание не в failed/cancelled
        """
        row = self._get_job_row(job_id, owner_id)
        if row["status"] not in RETRYABLE:
            raise InvalidJobStateError(job_id, row["status"], "retry")

        updated = self.record_store.update(
            JOBS,
            job_id,
            {
                "status": JobStatus.QUEUED.value,
                "error": None,
                "progress": 0,
                "current_page": 0,
                "processing_started_at": None,
                "processing_completed_at": None,
                "updated_at": utc_now().isoformat(),
            },
            expected_status=RETRYABLE,
        )
        if not updated:
            current = self._get_job_row(job_id, owner_id)
            raise InvalidJobStateError(job_id, current["status"], "retry")

        logger.info(f"Задание возвращено в очередь: {job_id}")
        self.queue.enqueue(job_id)
        return self.get_status(job_id, owner_id)

    def delete_job(self, job_id: str, owner_id: str) -> None:
        """
        Удаляет задание, его результаты и файлы.

        Raises:
            JobNotFoundError: задания нет у владельца
            InvalidJobStateError: задание сейчас выполняется
        """
        job = self.get_status(job_id, owner_id)
        if job.status == JobStatus.PROCESSING:
            raise InvalidJobStateError(job_id, job.status.value, "delete")

        deleted_results = self.record_store.delete_where(PAGE_RESULTS, {"job_id": job_id})

        paths = [job.storage_path, blob_path(owner_id, job_id, THUMBNAIL_ARTIFACT)]
        paths += [
            blob_path(owner_id, job_id, page_artifact_name(n))
            for n in range(1, job.total_pages + 1)
        ]
        for path in paths:
            self.blob_store.delete(path)

        self.record_store.delete_where(JOBS, {"id": job_id})
        logger.info(f"Задание удалено: {job_id} (результатов: {deleted_results})")

    def get_stats(self, owner_id: str) -> JobStats:
        jobs = self.record_store.select_where(JOBS, {"owner_id": owner_id})
        by_status: dict[str, int] = {}
        for row in jobs:
            by_status[row["status"]] = by_status.get(row["status"], 0) + 1

        return JobStats(
            owner_id=owner_id,
            total_jobs=len(jobs),
            by_status=by_status,
            total_pages=sum(row["total_pages"] or 0 for row in jobs),
            total_file_size=sum(row["file_size"] or 0 for row in jobs),
        )

    # -------------------------------------------------------------------------
    # Очередь и настройки
    # -------------------------------------------------------------------------

    def pause(self) -> None:
        self.queue.pause()

    def resume(self) -> None:
        self.queue.resume()

    @property
    def is_paused(self) -> bool:
        return self.queue.is_paused

    def process_queue(self) -> int:
        """Разовый проход по очереди. Raises: QueuePausedError"""
        return self.queue.process_queue()

    def start(self) -> None:
        """Восстанавливает прерванные задания и запускает фоновых воркеров."""
        self.queue.recover_interrupted()
        self.queue.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Останавливает воркеров и закрывает HTTP клиенты провайдеров."""
        self.queue.stop(timeout)
        self.close_providers()

    def close_providers(self) -> None:
        with self._providers_lock:
            providers = list(self._providers.values())
            self._providers.clear()
        for provider in providers:
            # У локального Tesseract нет клиента
            close = getattr(provider, "close", None)
            if close is not None:
                close()

    def update_processing_settings(self, processing: ProcessingSettings) -> None:
        self.queue.update_settings(processing=processing)
        logger.info(f"Параметры обработки обновлены: {processing.model_dump()}")

    def update_provider_config(self, config: ProviderConfig) -> None:
        self.queue.update_settings(provider_config=config)
        logger.info(f"Провайдер обновлён: {config.provider.value}")

    def validate_credentials(self, config: Optional[ProviderConfig] = None) -> CredentialsCheck:
        """Проверяет учётные данные провайдера (по умолчанию — текущего)."""
        config = config or self.queue.provider_config
        return self._provider_factory(config).validate_credentials(config)
