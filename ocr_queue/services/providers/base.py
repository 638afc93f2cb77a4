"""
Контракт провайдера распознавания и общие HTTP-помощники.

Каждый провайдер — независимый класс, удовлетворяющий протоколу
RecognitionProvider. Выбор провайдера — по ProviderName из конфигурации.
"""

import logging
from typing import Optional, Protocol

import httpx

from ocr_queue.errors import (
    AuthFailedError,
    ConfigError,
    ProviderError,
    QuotaExceededError,
    TransientProviderError,
    UnsupportedImageError,
)
from ocr_queue.schemas import CredentialsCheck, ProviderConfig, RecognitionResult

logger = logging.getLogger(__name__)


class RecognitionProvider(Protocol):
    """Распознавание одной страницы внешним (или локальным) сервисом."""

    name: str

    def validate_credentials(self, config: ProviderConfig) -> CredentialsCheck: ...

    def recognize(self, image_bytes: bytes, config: ProviderConfig) -> RecognitionResult: ...


def mask_key(api_key: Optional[str]) -> str:
    """abcd...wxyz — ключ для логов."""
    if not api_key:
        return "<пусто>"
    if len(api_key) <= 8:
        return "****"
    return f"{api_key[:4]}...{api_key[-4:]}"


def require_api_key(config: ProviderConfig, provider: str) -> str:
    if not config.api_key:
        raise ConfigError(f"{provider}: не задан API ключ")
    return config.api_key


def send(client: httpx.Client, method: str, url: str, provider: str, **kwargs) -> httpx.Response:
    """
    Выполняет HTTP запрос, сетевые ошибки и таймауты -> TransientProviderError.
    """
    try:
        return client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientProviderError(f"{provider}: таймаут запроса") from e
    except httpx.TransportError as e:
        raise TransientProviderError(f"{provider}: сетевая ошибка: {e}") from e


def read_json(response: httpx.Response, provider: str) -> dict:
    try:
        return response.json()
    except ValueError as e:
        raise TransientProviderError(f"{provider}: некорректный ответ сервиса") from e


def raise_for_provider_status(response: httpx.Response, provider: str) -> None:
    """
    Переводит HTTP статус ответа в исключение провайдера.

    Raises:
        AuthFailedError: 401, 403
        QuotaExceededError: 429
        UnsupportedImageError: 400, 413, 415, 422
        ConfigError: 404 (неверный endpoint или регион)
        TransientProviderError: 408, 5xx
        ProviderError: прочие коды
    """
    if response.is_success:
        return

    status = response.status_code
    message = f"{provider}: HTTP {status}: {response.text[:200]}"

    if status in (401, 403):
        raise AuthFailedError(message)
    if status == 429:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            message += f" (Retry-After: {retry_after}s)"
        raise QuotaExceededError(message)
    if status in (400, 413, 415, 422):
        raise UnsupportedImageError(message)
    if status == 404:
        raise ConfigError(message)
    if status == 408 or status >= 500:
        raise TransientProviderError(message)
    raise ProviderError(message)


def clamp_confidence(value) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 1.0
    return max(0.0, min(1.0, confidence))
