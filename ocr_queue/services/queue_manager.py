"""
Менеджер очереди заданий.

Отвечает за:
    - допуск заданий queued -> processing в порядке created_at (FIFO)
    - глобальный лимит max_concurrent_jobs
    - глобальный флаг паузы
    - пул воркеров: фоновый (start/stop) или разовый проход (process_queue)

Захват задания — условное обновление в хранилище записей: задание
переходит в processing только если оно всё ещё queued.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from ocr_queue.errors import QueuePausedError
from ocr_queue.schemas import (
    JobRecord,
    JobStatus,
    ProcessingSettings,
    ProviderConfig,
    utc_now,
)
from ocr_queue.services.job_executor import JobExecutor
from ocr_queue.services.record_store import JOBS, RecordStore

logger = logging.getLogger(__name__)


class QueueManager:
    """
    Очередь заданий с ограничением параллелизма и паузой.

    Args:
        record_store: хранилище записей
        executor: исполнитель заданий
        processing: параметры очереди и выполнения
        provider_config: провайдер для новых запусков
        poll_interval: период опроса хранилища воркерами, секунды
    """

    def __init__(
        self,
        record_store: RecordStore,
        executor: JobExecutor,
        processing: ProcessingSettings,
        provider_config: ProviderConfig,
        poll_interval: float = 1.0,
    ):
        self.record_store = record_store
        self.executor = executor
        self.processing = processing
        self.provider_config = provider_config
        self.poll_interval = poll_interval

        self._cond = threading.Condition(threading.RLock())
        self._paused = False
        # job_id -> флаг отмены текущего запуска
        self._active: dict[str, threading.Event] = {}
        self._workers: list[threading.Thread] = []
        self._stopping = threading.Event()

    # -------------------------------------------------------------------------
    # Управление
    # -------------------------------------------------------------------------

    def enqueue(self, job_id: str) -> None:
        """Сообщает воркерам о новом задании в статусе queued. Не блокирует."""
        logger.info(f"В очереди: {job_id}")
        with self._cond:
            self._cond.notify_all()

    def pause(self) -> None:
        with self._cond:
            self._paused = True
        logger.info("Очередь приостановлена")

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            self._cond.notify_all()
        logger.info("Очередь возобновлена")

    @property
    def is_paused(self) -> bool:
        with self._cond:
            return self._paused

    @property
    def active_jobs(self) -> list[str]:
        with self._cond:
            return list(self._active)

    def update_settings(
        self,
        processing: Optional[ProcessingSettings] = None,
        provider_config: Optional[ProviderConfig] = None,
    ) -> None:
        """
        Новые параметры применяются к заданиям, допущенным после вызова.

        Рост max_concurrent_jobs добавляет фоновых воркеров, снижение
        ограничивает допуск, уже запущенные задания дорабатывают.
        """
        with self._cond:
            if processing is not None:
                self.processing = processing
                if self._workers and not self._stopping.is_set():
                    self._spawn_workers(processing.max_concurrent_jobs)
            if provider_config is not None:
                self.provider_config = provider_config
            self._cond.notify_all()

    def cancel(self, job_id: str) -> bool:
        """
        Выставляет флаг отмены выполняющемуся заданию.

        Returns:
            bool: True если задание выполнялось в этом процессе
        """
        with self._cond:
            event = self._active.get(job_id)
            if event is None:
                return False
            event.set()
        logger.info(f"Отмена выполняющегося задания: {job_id}")
        return True

    def recover_interrupted(self) -> int:
        """
        Возвращает в queued задания, оставшиеся в processing после падения процесса.

        Returns:
            int: число восстановленных заданий
        """
        rows = self.record_store.select_where(JOBS, {"status": JobStatus.PROCESSING.value})
        recovered = 0
        with self._cond:
            for row in rows:
                if row["id"] in self._active:
                    continue
                if self.record_store.update(
                    JOBS,
                    row["id"],
                    {
                        "status": JobStatus.QUEUED.value,
                        "processing_started_at": None,
                        "updated_at": utc_now().isoformat(),
                    },
                    expected_status=(JobStatus.PROCESSING.value,),
                ):
                    recovered += 1
            if recovered:
                self._cond.notify_all()

        if recovered:
            logger.info(f"Восстановлено прерванных заданий: {recovered}")
        return recovered

    # -------------------------------------------------------------------------
    # Допуск
    # -------------------------------------------------------------------------

    def _admit_next(self, cap: Optional[int] = None) -> Optional[JobRecord]:
        """
        Захватывает самое старое задание queued, если есть свободный слот.

        Лимит читается при каждом вызове, поэтому новое значение
        max_concurrent_jobs действует на следующий допуск.

        Args:
            cap: верхняя граница пула, который запустит задание

        Raises:
            QueuePausedError: очередь на паузе
        """
        with self._cond:
            if self._paused:
                raise QueuePausedError()
            limit = self.processing.max_concurrent_jobs
            if cap is not None:
                limit = min(limit, cap)
            if len(self._active) >= limit:
                return None

            candidates = self.record_store.select_where(
                JOBS, {"status": JobStatus.QUEUED.value}, order_by="created_at"
            )
            for row in candidates:
                # Предыдущий запуск ещё не дошёл до границы страницы
                if row["id"] in self._active:
                    continue
                now = utc_now().isoformat()
                claimed = self.record_store.update(
                    JOBS,
                    row["id"],
                    {
                        "status": JobStatus.PROCESSING.value,
                        "error": None,
                        "processing_started_at": now,
                        "processing_completed_at": None,
                        "updated_at": now,
                    },
                    expected_status=(JobStatus.QUEUED.value,),
                )
                if not claimed:
                    continue
                self._active[row["id"]] = threading.Event()
                return JobRecord.model_validate(
                    self.record_store.select_by_id(JOBS, row["id"])
                )
        return None

    def _run(self, job: JobRecord) -> None:
        with self._cond:
            cancel_event = self._active[job.id]
            processing = self.processing
            provider_config = self.provider_config
        try:
            self.executor.execute(job, processing, provider_config, cancel_event)
        finally:
            with self._cond:
                self._active.pop(job.id, None)
                self._cond.notify_all()

    # -------------------------------------------------------------------------
    # Разовый проход
    # -------------------------------------------------------------------------

    def process_queue(self) -> int:
        """
        Обрабатывает очередь до опустошения.

        Пауза посреди прохода останавливает допуск; уже запущенные
        задания дорабатывают.

        Returns:
            int: число запущенных заданий

        Raises:
            QueuePausedError: очередь на паузе в момент вызова
        """
        if self.is_paused:
            raise QueuePausedError()

        pool_size = self.processing.max_concurrent_jobs
        futures: dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="ocr-job") as pool:
            while True:
                try:
                    job = self._admit_next(cap=pool_size)
                except QueuePausedError:
                    logger.info("Очередь на паузе, допуск остановлен")
                    break

                if job is not None:
                    futures[pool.submit(self._run, job)] = job.id
                    continue

                with self._cond:
                    if not self._active:
                        break
                    self._cond.wait(timeout=self.poll_interval)

        for future, job_id in futures.items():
            error = future.exception()
            if error is not None:
                logger.error(f"Запуск задания {job_id} завершился ошибкой: {error!r}")

        return len(futures)

    # -------------------------------------------------------------------------
    # Фоновые воркеры
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Запускает max_concurrent_jobs фоновых воркеров."""
        if self._workers:
            return
        self._stopping.clear()
        with self._cond:
            self._spawn_workers(self.processing.max_concurrent_jobs)

    def _spawn_workers(self, target: int) -> None:
        """Добавляет воркеров до target. Вызывается под self._cond."""
        added = 0
        while len(self._workers) < target:
            worker = threading.Thread(
                target=self._worker_loop,
                name=f"ocr-queue-worker-{len(self._workers) + 1}",
                daemon=True,
            )
            worker.start()
            self._workers.append(worker)
            added += 1
        if added:
            logger.info(f"Запущено воркеров: {added} (всего {len(self._workers)})")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Останавливает воркеров; текущие задания дорабатывают."""
        self._stopping.set()
        with self._cond:
            self._cond.notify_all()
            workers = list(self._workers)
        for worker in workers:
            worker.join(timeout)
        with self._cond:
            self._workers = []
        logger.info("Воркеры остановлены")

    def _worker_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                job = self._admit_next()
                if job is not None:
                    self._run(job)
                    continue
            except QueuePausedError:
                pass
            except Exception:
                logger.exception("Ошибка воркера очереди, повтор после паузы")

            with self._cond:
                if not self._stopping.is_set():
                    self._cond.wait(timeout=self.poll_interval)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Ждёт, пока не останется выполняющихся и (если нет паузы) ожидающих заданий.

        Returns:
            bool: False если время ожидания истекло
        """

        def idle() -> bool:
            if self._active:
                return False
            if self._paused:
                return True
            return not self.record_store.select_where(
                JOBS, {"status": JobStatus.QUEUED.value}
            )

        with self._cond:
            return self._cond.wait_for(idle, timeout=timeout)
