"""
OCR Queue — очередь распознавания документов.

Принимает изображения и PDF, разбивает PDF на страницы и распознаёт
каждую страницу внешним провайдером:
    - FIFO очередь с лимитом параллельных заданий и паузой
    - чанки страниц внутри задания
    - повтор временных ошибок провайдера с фиксированной паузой
    - запись результатов по принципу «всё или ничего»
"""

from ocr_queue.config import settings
from ocr_queue.schemas import (
    JobRecord,
    JobStatus,
    PageResultRecord,
    ProcessingSettings,
    ProviderConfig,
    ProviderName,
)

__all__ = [
    "settings",
    "JobRecord",
    "JobStatus",
    "PageResultRecord",
    "ProcessingSettings",
    "ProviderConfig",
    "ProviderName",
]
