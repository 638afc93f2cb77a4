"""
Mistral OCR: /v1/ocr, ответ в markdown.
"""

import base64
import logging
import re
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

API_URL = "https://api.mistral.ai/v1"
OCR_MODEL = "mistral-ocr-latest"

_IMAGE_REF = re.compile(r"!\[.*?\]\(.*?\)")
_BLOCK_MATH = re.compile(r"\$\$([\s\S]*?)\$\$")
_ALIGNED = re.compile(r"\\begin\{aligned\}([\s\S]*?)\\end\{aligned\}")


def clean_markdown(markdown: str) -> str:
    """Убирает ссылки на изображения и обёртки формул."""
    text = _IMAGE_REF.sub("", markdown)
    text = _BLOCK_MATH.sub(r"\1", text)
    text = _ALIGNED.sub(r"\1", text)
    return text.strip()


def _image_mime(image_bytes: bytes) -> str:
    if image_bytes.startswith(b"\x89PNG"):
        return "image/png"
    if image_bytes[:4] in (b"II*\x00", b"MM\x00*"):
        return "image/tiff"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


class MistralOCRProvider:
    """Провайдер Mistral OCR (Bearer токен)."""

    name = "mistral"

    def __init__(self, timeout: float = 60.0, transport: Optional[httpx.BaseTransport] = None):
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def recognize(self, image_bytes: bytes, config: ProviderConfig) -> RecognitionResult:
        api_key = require_api_key(config, self.name)
        encoded = base64.b64encode(image_bytes).decode("ascii")

        start = time.perf_counter()
        response = send(
            self._client,
            "POST",
            f"{API_URL}/ocr",
            self.name,
            headers={"Authorization": f"Bearer {api_key}"},
            json={
                "model": OCR_MODEL,
                "document": {
                    "type": "image_url",
                    "image_url": f"data:{_image_mime(image_bytes)};base64,{encoded}",
                },
            },
        )
        raise_for_provider_status(response, self.name)
        data = read_json(response, self.name)
        elapsed_ms = int((time.perf_counter() - start) * 1000)

        pages = [clean_markdown(p.get("markdown", "")) for p in data.get("pages", [])]
        return RecognitionResult(
            text="\n\n".join(p for p in pages if p),
            confidence=1.0,
            language=config.language,
            processing_time_ms=elapsed_ms,
        )

    def validate_credentials(self, config: ProviderConfig) -> CredentialsCheck:
        try:
            api_key = require_api_key(config, self.name)
        except ConfigError as e:
            return CredentialsCheck(valid=False, error=str(e))

        logger.info(f"Проверка ключа Mistral: {mask_key(api_key)}")
        try:
            response = self._client.get(
                f"{API_URL}/models", headers={"Authorization": f"Bearer {api_key}"}
            )
        except httpx.HTTPError as e:
            return CredentialsCheck(valid=False, error=f"Сервис недоступен: {e}")

        if response.status_code == 200:
            return CredentialsCheck(valid=True)
        if response.status_code == 401:
            return CredentialsCheck(valid=False, error="Неверный API ключ")
        return CredentialsCheck(valid=False, error=f"Неожиданный ответ: HTTP {response.status_code}")
