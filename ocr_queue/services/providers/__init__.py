"""
Провайдеры распознавания.

Модули:
    - base: протокол RecognitionProvider и разбор HTTP ошибок
    - google_vision: Google Cloud Vision
    - azure_vision: Microsoft Computer Vision (нужен регион)
    - mistral: Mistral OCR
    - tesseract: локальный Tesseract
"""

from typing import Optional, Union

import httpx

from ocr_queue.errors import ConfigError
from ocr_queue.schemas import ProviderName
from ocr_queue.services.providers.azure_vision import AzureVisionProvider
from ocr_queue.services.providers.base import RecognitionProvider
from ocr_queue.services.providers.google_vision import GoogleVisionProvider
from ocr_queue.services.providers.mistral import MistralOCRProvider
from ocr_queue.services.providers.tesseract import TesseractProvider


def get_provider(
    name: Union[ProviderName, str],
    settings,
    transport: Optional[httpx.BaseTransport] = None,
) -> RecognitionProvider:
    """
    Создаёт провайдер по имени.

    Args:
        name: имя провайдера (ProviderName или строка)
        settings: Settings (таймаут, параметры Tesseract)
        transport: транспорт httpx (подмена сети в тестах)

    Raises:
        ConfigError: неизвестный провайдер
    """
    try:
        provider = ProviderName(name)
    except ValueError as e:
        raise ConfigError(f"Неизвестный провайдер: {name}") from e

    timeout = settings.provider_timeout_seconds
    if provider is ProviderName.GOOGLE:
        return GoogleVisionProvider(timeout=timeout, transport=transport)
    if provider is ProviderName.MICROSOFT:
        return AzureVisionProvider(timeout=timeout, transport=transport)
    if provider is ProviderName.MISTRAL:
        return MistralOCRProvider(timeout=timeout, transport=transport)
    return TesseractProvider(
        oem=settings.tesseract_oem,
        psm=settings.tesseract_psm,
        default_language=settings.language,
    )


__all__ = [
    "RecognitionProvider",
    "GoogleVisionProvider",
    "AzureVisionProvider",
    "MistralOCRProvider",
    "TesseractProvider",
    "get_provider",
]
