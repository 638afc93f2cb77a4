"""
Иерархия исключений OCR Queue.

Все ошибки одного задания перехватываются на границе JobExecutor
и превращаются в состояние записи задания. Наружу (вызывающему коду)
пробрасываются только ошибки операций сервиса: JobNotFoundError,
InvalidJobStateError, InvalidFileError, QueuePausedError.
"""


class OCRQueueError(Exception):
    """Базовое исключение пакета."""


# =============================================================================
# Провайдеры распознавания
# =============================================================================


class ProviderError(OCRQueueError):
    """Ошибка вызова провайдера распознавания."""


class ConfigError(ProviderError):
    """Неверная конфигурация провайдера (нет ключа, нет региона, неизвестный провайдер)."""


class AuthFailedError(ProviderError):
    """Провайдер отклонил учётные данные."""


class QuotaExceededError(ProviderError):
    """Превышена квота или лимит запросов провайдера."""


class TransientProviderError(ProviderError):
    """Временная ошибка: сеть, таймаут, 5xx. Единственная повторяемая ошибка."""


class UnsupportedImageError(ProviderError):
    """Провайдер не смог прочитать изображение."""


# =============================================================================
# Предобработка документа
# =============================================================================


class PreprocessingError(OCRQueueError):
    """Документ не удалось превратить в последовательность страниц."""


class EmptyDocumentError(PreprocessingError):
    """После конвертации не осталось ни одной страницы."""


class PageRenderFailedError(PreprocessingError):
    """Изображение страницы пустое или обрезано."""

    def __init__(self, page_number: int, reason: str):
        self.page_number = page_number
        super().__init__(f"Страница {page_number}: {reason}")


class UnsupportedDocumentError(PreprocessingError):
    """MIME тип документа не поддерживается."""


# =============================================================================
# Хранилища
# =============================================================================


class StorageError(OCRQueueError):
    """Ошибка загрузки или чтения файла в хранилище."""


class SchemaMismatchError(OCRQueueError):
    """Схема таблицы не совпадает с набором колонок записи."""


# =============================================================================
# Операции сервиса
# =============================================================================


class QueuePausedError(OCRQueueError):
    """Очередь на паузе, новые задания не запускаются."""

    def __init__(self, message: str = "Очередь приостановлена"):
        super().__init__(message)


class JobNotFoundError(OCRQueueError):
    """Задание не найдено (или принадлежит другому владельцу)."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Задание не найдено: {job_id}")


class InvalidJobStateError(OCRQueueError):
    """Операция недопустима в текущем состоянии задания."""

    def __init__(self, job_id: str, status: str, operation: str):
        self.job_id = job_id
        self.status = status
        super().__init__(
            f"Операция {operation} недопустима для задания {job_id} в состоянии {status}"
        )


class InvalidFileError(OCRQueueError):
    """Загруженный файл не прошёл проверку (размер, тип)."""
