"""
Конфигурация OCR Queue.

Все значения читаются из .env файла (или переменных окружения).

Единый префикс: OCR_QUEUE_
Документация по параметрам: .env.example
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Настройки очереди распознавания.

    Читает переменные с префиксом OCR_QUEUE_ из .env файла.
    Значения по умолчанию соответствуют однопроцессному развёртыванию.
    """

    model_config = SettingsConfigDict(
        env_prefix="OCR_QUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Очередь и обработка ---
    max_concurrent_jobs: int = 1
    pages_per_chunk: int = 2
    concurrent_chunks: int = 1
    retry_attempts: int = 2
    retry_delay_ms: int = 1000

    # --- Split: PDF -> JPEG ---
    render_scale: float = 1.5
    render_jpeg_quality: float = 0.8
    render_thread_count: int = 1
    thumbnail_size_px: int = 200

    # --- Приём файлов ---
    max_file_size_mb: int = 500
    allowed_mime_types: list[str] = [
        "application/pdf",
        "image/jpeg",
        "image/png",
        "image/tiff",
        "image/webp",
    ]

    # --- Провайдер распознавания (системный по умолчанию) ---
    provider: str = "tesseract"
    api_key: str = ""
    region: str = ""
    language: str = "ar"
    provider_timeout_seconds: float = 60.0

    # Tesseract: режимы движка и сегментации
    tesseract_oem: int = 1
    tesseract_psm: int = 3

    # --- Хранилище записей ---
    # memory | sqlite
    record_store: str = "sqlite"
    database_path: str = "ocr_queue.db"

    # --- Хранилище файлов ---
    # local | s3
    storage_type: str = "local"
    storage_dir: str = "storage"
    s3_bucket: str = ""
    aws_region: str = "us-east-1"
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""

    # --- Воркер ---
    poll_interval_seconds: float = 1.0


# Глобальный экземпляр настроек
settings = Settings()
