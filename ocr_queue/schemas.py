"""
Схемы данных OCR Queue.

Включает:
    - Записи хранилища: задание (JobRecord) и результат страницы (PageResultRecord)
    - Конфигурацию провайдера и параметры обработки
    - Внутренние dataclass'ы для пайплайна (страница, результат распознавания)
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Текущее время в UTC (все метки времени в записях — UTC)."""
    return datetime.now(timezone.utc)


# =============================================================================
# Перечисления
# =============================================================================


class JobStatus(str, Enum):
    """
    Состояние задания.

    Переходы: queued -> processing -> {completed | failed | cancelled}.
    Из failed/cancelled обратно в queued — только через явный retry.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProviderName(str, Enum):
    """Доступные провайдеры распознавания."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"
    MISTRAL = "mistral"
    TESSERACT = "tesseract"


# =============================================================================
# Записи хранилища
# =============================================================================


class JobRecord(BaseModel):
    """
    Задание на распознавание одного документа.

    Attributes:
        id: идентификатор задания
        owner_id: владелец, все чтения и записи фильтруются по нему
        filename: имя файла в хранилище
        original_filename: имя файла, загруженное пользователем
        status: текущее состояние (см. JobStatus)
        progress: прогресс 0-100 (информативно)
        current_page: последняя распознанная страница
        total_pages: число страниц после предобработки
        file_size: размер исходного файла в байтах
        file_type: MIME тип исходного файла
        storage_path: путь исходного файла в хранилище
        thumbnail_path: путь миниатюры первой страницы
        error: текст ошибки, заполнен только для status=failed
    """

    id: str
    owner_id: str
    filename: str
    original_filename: str
    status: JobStatus = JobStatus.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    current_page: int = 0
    total_pages: int = 0
    file_size: int = 0
    file_type: str
    storage_path: str
    thumbnail_path: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None


class PageResultRecord(BaseModel):
    """
    Результат распознавания одной страницы.

    Записывается один раз, после успешного распознавания всех
    страниц задания, и больше не изменяется.
    """

    id: str
    job_id: str
    owner_id: str
    page_number: int = Field(ge=1)
    total_pages: int
    text: str
    confidence: float = Field(ge=0.0, le=1.0)
    language: Optional[str] = None
    processing_time_ms: int = 0
    storage_path: Optional[str] = None
    provider: str
    created_at: datetime = Field(default_factory=utc_now)


class JobStats(BaseModel):
    """Сводная статистика заданий владельца."""

    owner_id: str
    total_jobs: int = 0
    by_status: dict[str, int] = {}
    total_pages: int = 0
    total_file_size: int = 0


# =============================================================================
# Конфигурация
# =============================================================================


class ProviderConfig(BaseModel):
    """
    Параметры вызова провайдера.

    Передаются при каждом вызове, ядро не сохраняет учётные данные.

    Attributes:
        provider: выбранный провайдер
        api_key: ключ доступа (для tesseract не нужен)
        region: регион (обязателен для microsoft)
        language: подсказка языка документа
    """

    provider: ProviderName = ProviderName.TESSERACT
    api_key: Optional[str] = None
    region: Optional[str] = None
    language: Optional[str] = None


class ProcessingSettings(BaseModel):
    """Параметры очереди и выполнения заданий."""

    max_concurrent_jobs: int = Field(default=1, ge=1)
    pages_per_chunk: int = Field(default=2, ge=1)
    concurrent_chunks: int = Field(default=1, ge=1)
    retry_attempts: int = Field(default=2, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)


# =============================================================================
# Внутренние dataclass'ы для пайплайна
# =============================================================================


@dataclass
class PageImage:
    """
    Изображение одной страницы после предобработки.

    Attributes:
        page_number: номер страницы (начинается с 1)
        image_bytes: JPEG/PNG содержимое страницы
        storage_path: путь страницы в хранилище (после загрузки)
    """

    page_number: int
    image_bytes: bytes
    storage_path: Optional[str] = None


@dataclass
class RecognitionResult:
    """
    Ответ провайдера для одной страницы.

    Attributes:
        text: распознанный текст
        confidence: уверенность 0.0-1.0
        language: язык, определённый провайдером (если есть)
        processing_time_ms: длительность успешного вызова в мс
    """

    text: str
    confidence: float
    language: Optional[str] = None
    processing_time_ms: int = 0


@dataclass
class CredentialsCheck:
    """Результат проверки учётных данных провайдера."""

    valid: bool
    error: Optional[str] = None
