"""
Хранилище файлов: исходные документы, страницы, миниатюры.

Пути детерминированы: {owner_id}/{job_id}/{artifact}.
Реализации: локальная файловая система и AWS S3 (boto3).
"""

import abc
import logging
import os
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ocr_queue.errors import StorageError

logger = logging.getLogger(__name__)


# =============================================================================
# Пути артефактов
# =============================================================================


def normalize_storage_path(path: str, owner_id: str) -> str:
    """
    Убирает дублированный префикс владельца.

    "u1/u1/job/page_1.jpg" -> "u1/job/page_1.jpg"
    """
    parts = [p for p in path.strip("/").split("/") if p]
    while len(parts) > 2 and parts[0] == owner_id and parts[1] == owner_id:
        parts.pop(0)
    return "/".join(parts)


def blob_path(owner_id: str, job_id: str, artifact: str) -> str:
    """Путь артефакта задания в хранилище."""
    return normalize_storage_path(f"{owner_id}/{job_id}/{artifact}", owner_id)


def source_artifact_name(job_id: str, filename: str, mime_type: str) -> str:
    """
    Имя исходного файла в хранилище.

    PDF -> PDF_{id}.pdf, изображения -> Image_{id}{ext}, остальное -> File_{id}{ext}.
    """
    ext = os.path.splitext(filename)[1].lower()
    if mime_type == "application/pdf":
        return f"PDF_{job_id}.pdf"
    if mime_type.startswith("image/"):
        return f"Image_{job_id}{ext}"
    return f"File_{job_id}{ext}"


def page_artifact_name(page_number: int) -> str:
    return f"page_{page_number}.jpg"


THUMBNAIL_ARTIFACT = "thumbnail.jpg"


# =============================================================================
# Реализации
# =============================================================================


class BlobStore(abc.ABC):
    """Базовый класс хранилища файлов."""

    @abc.abstractmethod
    def put(self, path: str, data: bytes, content_type: str) -> str:
        """Сохраняет байты по пути и возвращает этот путь."""

    @abc.abstractmethod
    def get(self, path: str) -> bytes:
        """Читает байты по пути. StorageError если файла нет."""

    @abc.abstractmethod
    def delete(self, path: str) -> bool:
        """Удаляет файл. False если файла не было."""


class LocalBlobStore(BlobStore):
    """
    Файлы на локальном диске.

    Подходит для разработки и однопроцессного развёртывания.
    """

    def __init__(self, base_dir: str = "storage"):
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        target = (self.base_dir / path).resolve()
        if self.base_dir not in target.parents:
            raise StorageError(f"Путь вне хранилища: {path}")
        return target

    def put(self, path: str, data: bytes, content_type: str) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Не удалось сохранить {path}: {e}") from e
        logger.debug(f"Сохранён файл: {path} ({len(data)} байт, {content_type})")
        return path

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except OSError as e:
            raise StorageError(f"Не удалось прочитать {path}: {e}") from e

    def delete(self, path: str) -> bool:
        try:
            self._resolve(path).unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Не удалось удалить {path}: {e}") from e


class S3BlobStore(BlobStore):
    """Файлы в AWS S3."""

    def __init__(
        self,
        bucket: str,
        region: str,
        access_key_id: str = "",
        secret_access_key: str = "",
        client=None,
    ):
        self.bucket = bucket
        self.s3 = client or boto3.client(
            "s3",
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            region_name=region,
        )

    def put(self, path: str, data: bytes, content_type: str) -> str:
        try:
            self.s3.put_object(
                Bucket=self.bucket, Key=path, Body=data, ContentType=content_type
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 upload failed: {path}: {e}") from e
        return path

    def get(self, path: str) -> bytes:
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=path)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 download failed: {path}: {e}") from e

    def delete(self, path: str) -> bool:
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=path)
            return True
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 delete failed: {path}: {e}") from e


def get_blob_store(settings) -> BlobStore:
    """Создаёт хранилище файлов по настройкам (local | s3)."""
    if settings.storage_type.lower() == "s3":
        return S3BlobStore(
            bucket=settings.s3_bucket,
            region=settings.aws_region,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
        )
    return LocalBlobStore(settings.storage_dir)
