"""
Общие фикстуры тестов OCR Queue.

Сеть, poppler и tesseract не нужны:
    - провайдер подменяется FakeProvider
    - рендеринг PDF подменяется fake_convert_from_bytes
"""

import io
import threading
import time
from typing import Callable, Optional

import pytest
from PIL import Image

from ocr_queue.config import Settings
from ocr_queue.schemas import ProcessingSettings, ProviderConfig, RecognitionResult
from ocr_queue.services import pdf_processor
from ocr_queue.services.blob_store import LocalBlobStore
from ocr_queue.services.processing_service import ProcessingService
from ocr_queue.services.record_store import InMemoryRecordStore

OWNER = "user-1"

# Ширина страницы n = PAGE_BASE_WIDTH + n: по ней FakeProvider узнаёт номер страницы
PAGE_BASE_WIDTH = 100


def make_jpeg(width: int = 120, height: int = 80, color: str = "white") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="JPEG")
    return buffer.getvalue()


def make_pdf(pages: int) -> bytes:
    """Псевдо-PDF: fake_convert_from_bytes читает число страниц из содержимого."""
    return f"%PDF-1.4 pages={pages}".encode()


def fake_convert_from_bytes(pdf_bytes: bytes, **kwargs) -> list[Image.Image]:
    pages = int(pdf_bytes.split(b"pages=")[1])
    return [
        Image.new("RGB", (PAGE_BASE_WIDTH + n, 60), "white")
        for n in range(1, pages + 1)
    ]


def page_of(image_bytes: bytes) -> int:
    with Image.open(io.BytesIO(image_bytes)) as img:
        return img.width - PAGE_BASE_WIDTH


class FakeProvider:
    """
    Провайдер со сценарием ответов.

    Args:
        failures: {номер_страницы: [исключения по порядку попыток]}
        delay: задержка каждого вызова, секунды
        on_success: колбэк (номер_страницы) после успешного распознавания
    """

    name = "fake"

    def __init__(
        self,
        failures: Optional[dict[int, list[Exception]]] = None,
        delay: float = 0.0,
        on_success: Optional[Callable[[int], None]] = None,
    ):
        self.failures = failures or {}
        self.delay = delay
        self.on_success = on_success
        self.calls: dict[int, int] = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def recognize(self, image_bytes: bytes, config: ProviderConfig) -> RecognitionResult:
        page = page_of(image_bytes)
        with self._lock:
            self.calls[page] = self.calls.get(page, 0) + 1
            attempt = self.calls[page]
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            scripted = self.failures.get(page) or []
            if scripted:
                raise scripted.pop(0)
        finally:
            with self._lock:
                self.in_flight -= 1

        if self.on_success:
            self.on_success(page)
        return RecognitionResult(
            text=f"text of page {page}",
            confidence=0.9,
            language="ar",
            processing_time_ms=100 * attempt,
        )

    def validate_credentials(self, config):
        raise NotImplementedError


@pytest.fixture(autouse=True)
def fake_pdf_renderer(monkeypatch):
    """Рендеринг PDF без poppler."""
    monkeypatch.setattr(pdf_processor, "convert_from_bytes", fake_convert_from_bytes)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        record_store="memory",
        storage_dir=str(tmp_path / "storage"),
        retry_delay_ms=0,
        poll_interval_seconds=0.05,
    )


@pytest.fixture
def record_store():
    return InMemoryRecordStore()


@pytest.fixture
def blob_store(settings):
    return LocalBlobStore(settings.storage_dir)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def make_service(record_store, blob_store, settings):
    """Фабрика сервиса с FakeProvider и заданными параметрами обработки."""

    def _make(provider: FakeProvider, **processing) -> ProcessingService:
        params = {"retry_delay_ms": 0, **processing}
        return ProcessingService(
            record_store,
            blob_store,
            settings,
            provider_factory=lambda config: provider,
            processing=ProcessingSettings(**params),
            provider_config=ProviderConfig(language="ar"),
        )

    return _make


@pytest.fixture
def service(make_service, provider):
    return make_service(provider)
