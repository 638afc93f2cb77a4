"""
Предобработка документа: исходный файл -> упорядоченные страницы.

Изображения проходят без изменений как одна страница.
PDF рендерится через pdf2image (pdftoppm) и каждая страница
кодируется в JPEG через Pillow.
"""

import io
import logging
import time

from pdf2image import convert_from_bytes
from pdf2image.exceptions import (
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFSyntaxError,
)
from PIL import Image, UnidentifiedImageError

from ocr_queue.errors import (
    EmptyDocumentError,
    PageRenderFailedError,
    PreprocessingError,
    UnsupportedDocumentError,
)
from ocr_queue.schemas import PageImage
from ocr_queue.services.blob_store import BlobStore, blob_path, page_artifact_name

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"

# Маркер конца JPEG (EOI). Без него файл считается обрезанным.
JPEG_EOI = b"\xff\xd9"


def split_document_to_pages(
    document_bytes: bytes,
    mime_type: str,
    scale: float = 1.5,
    jpeg_quality: float = 0.8,
    thread_count: int = 1,
) -> list[PageImage]:
    """
    Превращает документ в последовательность страниц.

    Args:
        document_bytes: содержимое исходного файла
        mime_type: заявленный MIME тип
        scale: масштаб рендеринга PDF (1.0 = 72 dpi)
        jpeg_quality: качество JPEG 0.0-1.0
        thread_count: потоки pdftoppm

    Returns:
        list[PageImage]: страницы в порядке документа, нумерация с 1

    Raises:
        UnsupportedDocumentError: тип не изображение и не PDF
        EmptyDocumentError: после конвертации нет страниц
        PageRenderFailedError: страница пустая или обрезана
        PreprocessingError: PDF не удалось прочитать
    """
    if mime_type.startswith("image/"):
        if not document_bytes:
            raise EmptyDocumentError("Изображение пустое")
        # Изображение передаётся без изменений
        return [PageImage(page_number=1, image_bytes=document_bytes)]

    if mime_type != PDF_MIME_TYPE:
        raise UnsupportedDocumentError(f"Неподдерживаемый тип документа: {mime_type}")

    return _render_pdf(document_bytes, scale, jpeg_quality, thread_count)


def _render_pdf(
    pdf_bytes: bytes,
    scale: float,
    jpeg_quality: float,
    thread_count: int,
) -> list[PageImage]:
    dpi = round(72 * scale)
    quality = int(round(jpeg_quality * 100))

    logger.info(f"Рендеринг PDF: dpi={dpi}, quality={quality}, threads={thread_count}")
    start = time.perf_counter()

    try:
        images = convert_from_bytes(
            pdf_bytes,
            dpi=dpi,
            fmt="ppm",
            thread_count=thread_count,
        )
    except PDFInfoNotInstalledError as e:
        raise PreprocessingError(f"poppler не установлен: {e}") from e
    except (PDFPageCountError, PDFSyntaxError) as e:
        raise PreprocessingError(f"Не удалось прочитать PDF: {e}") from e

    if not images:
        raise EmptyDocumentError("PDF не содержит страниц")

    # pdf2image возвращает страницы в порядке документа
    pages = [
        PageImage(page_number=idx, image_bytes=_encode_jpeg(idx, image, quality))
        for idx, image in enumerate(images, start=1)
    ]

    duration = int((time.perf_counter() - start) * 1000)
    logger.info(f"   Split: {len(pages)} страниц за {duration}ms")
    return pages


def _encode_jpeg(page_number: int, image: Image.Image, quality: int) -> bytes:
    """Кодирует страницу в JPEG и проверяет результат."""
    if image.width == 0 or image.height == 0:
        raise PageRenderFailedError(page_number, "пустое изображение")

    buffer = io.BytesIO()
    image.convert("RGB").save(buffer, format="JPEG", quality=quality)
    data = buffer.getvalue()

    check_page_image(page_number, data)
    return data


def check_page_image(page_number: int, data: bytes) -> None:
    """
    Проверяет, что JPEG не пустой и не обрезан.

    Raises:
        PageRenderFailedError: изображение пустое, без EOI или не читается
    """
    if not data:
        raise PageRenderFailedError(page_number, "пустое изображение")
    if not data.rstrip(b"\x00").endswith(JPEG_EOI):
        raise PageRenderFailedError(page_number, "изображение обрезано")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise PageRenderFailedError(page_number, f"изображение повреждено: {e}") from e


def upload_page_images(
    pages: list[PageImage],
    blob_store: BlobStore,
    owner_id: str,
    job_id: str,
) -> None:
    """
    Загружает страницы в хранилище до распознавания.

    Заполняет storage_path у каждой страницы.
    StorageError пробрасывается: без страниц задание не продолжается.
    """
    for page in pages:
        path = blob_path(owner_id, job_id, page_artifact_name(page.page_number))
        page.storage_path = blob_store.put(path, page.image_bytes, "image/jpeg")

    logger.info(f"   Загружено страниц: {len(pages)} (job={job_id})")


def make_thumbnail(image_bytes: bytes, size_px: int = 200) -> bytes:
    """Миниатюра страницы в JPEG, длинная сторона не больше size_px."""
    with Image.open(io.BytesIO(image_bytes)) as img:
        thumb = img.convert("RGB")
        thumb.thumbnail((size_px, size_px))
        buffer = io.BytesIO()
        thumb.save(buffer, format="JPEG", quality=80)
    return buffer.getvalue()


def effective_pages_per_chunk(total_pages: int, pages_per_chunk: int) -> int:
    """
    Размер чанка с поправкой на большие документы.

    Больше 500 страниц — не более 5 на чанк, больше 200 — не более 8.
    """
    if total_pages > 500:
        return min(pages_per_chunk, 5)
    if total_pages > 200:
        return min(pages_per_chunk, 8)
    return pages_per_chunk
