"""
Microsoft Azure Computer Vision: OCR v3.2.

Сервис региональный: без region вызов невозможен (ConfigError).
"""

import logging
import time
from typing import Optional

import httpx

from ocr_queue.errors import ConfigError
from ocr_queue.schemas import CredentialsCheck, ProviderConfig, RecognitionResult
from ocr_queue.services.providers.base import (
    mask_key,
    raise_for_provider_status,
    read_json,
    require_api_key,
    send,
)

logger = logging.getLogger(__name__)

# Языки с письмом справа налево: Azure отдаёт слова в порядке слева направо
RTL_LANGUAGES = {"ar", "he", "fa", "ur", "yi", "ps", "sd", "ug", "ku", "dv"}


def _endpoint(region: str) -> str:
    return f"https://{region}.api.cognitive.microsoft.com/vision/v3.2"


def _extract_text(data: dict, rtl: bool) -> str:
    """regions -> lines -> words; регионы разделяются пустой строкой."""
    regions_text = []
    for region in data.get("regions", []):
        lines = []
        for line in region.get("lines", []):
            words = [w.get("text", "") for w in line.get("words", [])]
            if rtl:
                words.reverse()
            lines.append(" ".join(words))
        regions_text.append("\n".join(lines))
    return "\n\n".join(regions_text)


class AzureVisionProvider:
    """Провайдер Microsoft Computer Vision."""

    name = "microsoft"

    def __init__(self, timeout: float = 60.0, transport: Optional[httpx.BaseTransport] = None):
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def recognize(self, image_bytes: bytes, config: ProviderConfig) -> RecognitionResult:
        api_key = require_api_key(config, self.name)
        if not config.region:
            raise ConfigError(f"{self.name}: не задан регион")

        language = config.language or "unk"
        start = time.perf_counter()
        response = send(
            self._client,
            "POST",
            f"{_endpoint(config.region)}/ocr",
            self.name,
            params={"language": language, "detectOrientation": "true"},
            headers={
                "Ocp-Apim-Subscription-Key": api_key,
                "Content-Type": "application/octet-stream",
            },
            content=image_bytes,
        )
        raise_for_provider_status(response, self.name)
        data = read_json(response, self.name)
        elapsed_ms = int((time.perf_counter() - start) * 1000)

        detected = data.get("language")
        if detected == "unk":
            detected = None
        detected = detected or config.language

        return RecognitionResult(
            text=_extract_text(data, rtl=(detected or "") in RTL_LANGUAGES),
            confidence=1.0,
            language=detected,
            processing_time_ms=elapsed_ms,
        )

    def validate_credentials(self, config: ProviderConfig) -> CredentialsCheck:
        """
        Проверяет ключ и регион запросом read/analyze с фиктивным url.

        400 — ключ и регион верны, 401 — неверный ключ, 404 — неверный регион.
        """
        if not config.api_key:
            return CredentialsCheck(valid=False, error="Не задан API ключ")
        if not config.region:
            return CredentialsCheck(valid=False, error="Для Microsoft нужен регион")

        logger.info(
            f"Проверка ключа Microsoft Vision: {mask_key(config.api_key)}, region={config.region}"
        )
        try:
            response = self._client.post(
                f"{_endpoint(config.region)}/read/analyze",
                headers={"Ocp-Apim-Subscription-Key": config.api_key},
                json={"url": "https://example.com/dummy.jpg"},
            )
        except httpx.ConnectError:
            return CredentialsCheck(valid=False, error=f"Неверный регион: {config.region}")
        except httpx.HTTPError as e:
            return CredentialsCheck(valid=False, error=f"Сервис недоступен: {e}")

        if response.status_code in (400, 202):
            return CredentialsCheck(valid=True)
        if response.status_code == 401:
            return CredentialsCheck(valid=False, error="Неверный API ключ")
        if response.status_code == 404:
            return CredentialsCheck(valid=False, error=f"Неверный регион: {config.region}")
        return CredentialsCheck(valid=False, error=f"Неожиданный ответ: HTTP {response.status_code}")
