"""
Сервисы OCR Queue.

Модули:
    - pdf_processor: документ -> страницы (JPEG), миниатюры
    - providers: провайдеры распознавания
    - record_store: хранилище заданий и результатов
    - blob_store: хранилище файлов
    - results_store: правила записи результатов
    - job_executor: выполнение одного задания
    - queue_manager: очередь, лимиты, пауза
    - processing_service: публичные операции
"""

from ocr_queue.services.job_executor import JobExecutor
from ocr_queue.services.processing_service import ProcessingService
from ocr_queue.services.queue_manager import QueueManager

__all__ = [
    "JobExecutor",
    "ProcessingService",
    "QueueManager",
]
