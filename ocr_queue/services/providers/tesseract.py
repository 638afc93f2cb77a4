"""
Локальный провайдер на Tesseract (pytesseract).

Учётные данные не нужны, достаточно установленного бинарника tesseract.
"""

import io
import logging
import time

import pytesseract
from PIL import Image, UnidentifiedImageError

from ocr_queue.errors import ConfigError, UnsupportedImageError
from ocr_queue.schemas import CredentialsCheck, ProviderConfig, RecognitionResult

logger = logging.getLogger(__name__)

# ISO 639-1 -> коды языковых пакетов Tesseract
LANGUAGE_CODES = {
    "ar": "ara",
    "en": "eng",
    "ru": "rus",
    "fr": "fra",
    "de": "deu",
    "es": "spa",
    "fa": "fas",
    "he": "heb",
    "ur": "urd",
    "tr": "tur",
}


def tesseract_language(language: str) -> str:
    """'ar' -> 'ara', 'ar+en' -> 'ara+eng'; неизвестные коды передаются как есть."""
    return "+".join(LANGUAGE_CODES.get(code, code) for code in language.split("+"))


def _assemble_text(data: dict) -> str:
    """
    Собирает текст из словаря image_to_data.

    Слова строки — через пробел, строки блока — через \\n,
    блоки — через пустую строку.
    """
    blocks: dict = {}
    for i, raw in enumerate(data["text"]):
        word = raw.strip()
        if not word:
            continue
        key = (data["par_num"][i], data["line_num"][i])
        blocks.setdefault(data["block_num"][i], {}).setdefault(key, []).append(word)

    return "\n\n".join(
        "\n".join(" ".join(blocks[block][key]) for key in sorted(blocks[block]))
        for block in sorted(blocks)
    )


def _average_confidence(data: dict) -> float:
    """Средняя уверенность по реальным словам (conf >= 0), в долях единицы."""
    confidences = [
        float(c) for c in data["conf"] if isinstance(c, (int, float)) and float(c) >= 0
    ]
    if not confidences:
        return 0.0
    return min(1.0, sum(confidences) / len(confidences) / 100)


class TesseractProvider:
    """
    Провайдер на локальном Tesseract.

    Args:
        oem: режим движка OCR
        psm: режим сегментации страницы
        default_language: язык, если в конфигурации не указан
    """

    name = "tesseract"

    def __init__(self, oem: int = 1, psm: int = 3, default_language: str = "ar"):
        self.oem = oem
        self.psm = psm
        self.default_language = default_language

    def recognize(self, image_bytes: bytes, config: ProviderConfig) -> RecognitionResult:
        language = config.language or self.default_language
        start = time.perf_counter()

        try:
            with Image.open(io.BytesIO(image_bytes)) as image:
                data = pytesseract.image_to_data(
                    image,
                    lang=tesseract_language(language),
                    config=f"--oem {self.oem} --psm {self.psm}",
                    output_type=pytesseract.Output.DICT,
                )
        except UnidentifiedImageError as e:
            raise UnsupportedImageError(f"{self.name}: изображение не читается") from e
        except pytesseract.TesseractNotFoundError as e:
            raise ConfigError(f"{self.name}: tesseract не установлен") from e
        except pytesseract.TesseractError as e:
            raise UnsupportedImageError(f"{self.name}: {e}") from e

        return RecognitionResult(
            text=_assemble_text(data),
            confidence=_average_confidence(data),
            language=language,
            processing_time_ms=int((time.perf_counter() - start) * 1000),
        )

    def validate_credentials(self, config: ProviderConfig) -> CredentialsCheck:
        try:
            version = pytesseract.get_tesseract_version()
        except pytesseract.TesseractNotFoundError:
            return CredentialsCheck(valid=False, error="tesseract не установлен")
        logger.info(f"Tesseract {version}")
        return CredentialsCheck(valid=True)
