"""
Google Cloud Vision: images:annotate с TEXT_DETECTION.
"""

import base64
import logging
import time
from typing import Optional

import httpx

from ocr_queue.errors import AuthFailedError, ConfigError, UnsupportedImageError
from ocr_queue.schemas import CredentialsCheck, ProviderConfig, RecognitionResult
from ocr_queue.services.providers.base import (
    clamp_confidence,
    mask_key,
    raise_for_provider_status,
    read_json,
    require_api_key,
    send,
)

logger = logging.getLogger(__name__)

ANNOTATE_URL = "https://vision.googleapis.com/v1/images:annotate"


class GoogleVisionProvider:
    """Провайдер Google Cloud Vision (ключ API в query string)."""

    name = "google"

    def __init__(self, timeout: float = 60.0, transport: Optional[httpx.BaseTransport] = None):
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def _request_body(self, content: str, language: Optional[str]) -> dict:
        request: dict = {
            "image": {"content": content},
            "features": [{"type": "TEXT_DETECTION"}],
        }
        if language:
            request["imageContext"] = {"languageHints": [language]}
        return {"requests": [request]}

    def recognize(self, image_bytes: bytes, config: ProviderConfig) -> RecognitionResult:
        api_key = require_api_key(config, self.name)
        body = self._request_body(base64.b64encode(image_bytes).decode("ascii"), config.language)

        start = time.perf_counter()
        response = send(
            self._client, "POST", ANNOTATE_URL, self.name, params={"key": api_key}, json=body
        )
        # Google отвечает 400 на неверный ключ
        if response.status_code == 400 and "API key not valid" in response.text:
            raise AuthFailedError(f"{self.name}: неверный API ключ")
        raise_for_provider_status(response, self.name)
        data = read_json(response, self.name)
        elapsed_ms = int((time.perf_counter() - start) * 1000)

        result = (data.get("responses") or [{}])[0]
        if "error" in result:
            raise UnsupportedImageError(
                f"{self.name}: {result['error'].get('message', 'ошибка распознавания')}"
            )

        full_text = result.get("fullTextAnnotation") or {}
        pages = full_text.get("pages") or [{}]
        annotations = result.get("textAnnotations") or [{}]

        return RecognitionResult(
            text=full_text.get("text", ""),
            confidence=clamp_confidence(pages[0].get("confidence", 1.0)),
            language=annotations[0].get("locale") or config.language,
            processing_time_ms=elapsed_ms,
        )

    def validate_credentials(self, config: ProviderConfig) -> CredentialsCheck:
        """
        Проверяет ключ запросом с пустым изображением.

        400 без «API key not valid» означает, что ключ принят.
        """
        try:
            api_key = require_api_key(config, self.name)
        except ConfigError as e:
            return CredentialsCheck(valid=False, error=str(e))

        logger.info(f"Проверка ключа Google Vision: {mask_key(api_key)}")
        try:
            response = self._client.post(
                ANNOTATE_URL,
                params={"key": api_key},
                json=self._request_body("", None),
            )
        except httpx.HTTPError as e:
            return CredentialsCheck(valid=False, error=f"Сервис недоступен: {e}")

        text = response.text
        if "API key not valid" in text:
            return CredentialsCheck(valid=False, error="Неверный API ключ")
        if "API has not been used" in text or "is disabled" in text:
            return CredentialsCheck(valid=False, error="Cloud Vision API не включён для проекта")
        if response.status_code in (401, 403):
            return CredentialsCheck(valid=False, error="Доступ запрещён")
        if response.status_code in (200, 400):
            return CredentialsCheck(valid=True)
        return CredentialsCheck(valid=False, error=f"Неожиданный ответ: HTTP {response.status_code}")
