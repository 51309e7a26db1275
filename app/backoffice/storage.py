"""
Attachment storage (user pictures).

Objects are addressed by a slash-separated key such as
``pictures/<hex>/me.png``; ``Upload.storage_key`` holds that key.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import BinaryIO

from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    pass


def new_key(prefix: str, filename: str) -> str:
    """Unique key under ``prefix`` that keeps the (sanitized) original name last."""
    name = secure_filename(filename or "") or "file.bin"
    return f"{prefix.strip('/')}/{uuid.uuid4().hex}/{name}"


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _file(self, key: str) -> Path:
        base = self.root.resolve()
        target = (base / key.replace("\\", "/").lstrip("/")).resolve()
        if not target.is_relative_to(base):
            raise StorageError(f"Storage key escapes upload folder: {key!r}")
        return target

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        target = self._file(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def open(self, key: str) -> BinaryIO:
        target = self._file(key)
        if not target.is_file():
            raise FileNotFoundError(key)
        return target.open("rb")

    def delete(self, key: str) -> None:
        target = self._file(key)
        if target.exists():
            target.unlink()
        else:
            logger.info("Attachment already gone from local storage: %s", key)


@lru_cache(maxsize=4)
def _s3_client(endpoint: str, region: str, access_key_id: str, secret_access_key: str):
    import boto3

    return boto3.client(
        "s3",
        endpoint_url=f"https://{endpoint}" if endpoint else None,
        region_name=region or None,
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
    )


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str

    @property
    def client(self):
        if not self.bucket:
            raise StorageError("S3_BUCKET is not configured.")
        return _s3_client(self.endpoint, self.region, self.access_key_id, self.secret_access_key)

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        kwargs: dict[str, object] = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        self.client.put_object(**kwargs)

    def open(self, key: str) -> BinaryIO:
        from botocore.exceptions import ClientError

        try:
            return self.client.get_object(Bucket=self.bucket, Key=key)["Body"]  # type: ignore[return-value]
        except ClientError as e:
            raise FileNotFoundError(key) from e

    def delete(self, key: str) -> None:
        # S3 deletes are idempotent
        self.client.delete_object(Bucket=self.bucket, Key=key)


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
        )
    if backend != "local":
        raise StorageError(f"Unknown STORAGE_BACKEND: {backend!r}")
    return LocalStorage(root=Path(config["UPLOADS_PATH"]))
