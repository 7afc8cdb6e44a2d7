"""Durable storage for generated images and narration audio.

Stores return a stable URL for each saved asset. Format and size checks are
done by the caller with ``validate_asset`` before ``save`` is called.
"""

import logging
import os
import uuid
from dataclasses import dataclass
from typing import Protocol

from google.cloud import storage as gcs

from . import config
from .errors import AssetRejectedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetConstraints:
    kind: str
    formats: dict[str, str]
    max_bytes: int


IMAGE_CONSTRAINTS = AssetConstraints(
    kind="images",
    formats={"png": "image/png", "jpg": "image/jpeg", "jpeg": "image/jpeg", "webp": "image/webp"},
    max_bytes=config.MAX_IMAGE_MB * 1024 * 1024,
)

AUDIO_CONSTRAINTS = AssetConstraints(
    kind="audio",
    formats={"mp3": "audio/mpeg"},
    max_bytes=config.MAX_AUDIO_MB * 1024 * 1024,
)

ASSET_KINDS = (IMAGE_CONSTRAINTS.kind, AUDIO_CONSTRAINTS.kind)


class AssetStore(Protocol):
    def save(self, data: bytes, fmt: str, constraints: AssetConstraints) -> str: ...

    def exists(self, name: str, constraints: AssetConstraints) -> bool: ...

    def delete(self, url: str) -> None: ...


def normalize_format(fmt: str) -> str:
    return fmt.lower().lstrip(".")


def is_format_supported(name: str, constraints: AssetConstraints) -> bool:
    """Accepts a bare format ("png") or a file name ("abc.png")."""
    return normalize_format(os.path.splitext(name)[1] or name) in constraints.formats


def validate_asset(data: bytes, fmt: str, constraints: AssetConstraints) -> str:
    """Returns the normalized format, or raises ``AssetRejectedError``."""
    fmt = normalize_format(fmt)
    if fmt not in constraints.formats:
        raise AssetRejectedError(
            f"Unsupported {constraints.kind} format: {fmt}. "
            f"Supported formats: {', '.join(constraints.formats)}"
        )
    if not data:
        raise AssetRejectedError(f"Empty {constraints.kind} asset")
    if len(data) > constraints.max_bytes:
        raise AssetRejectedError(
            f"{constraints.kind} asset of {len(data)} bytes exceeds the {constraints.max_bytes} byte limit"
        )
    return fmt


def new_asset_name(fmt: str) -> str:
    return f"{uuid.uuid4()}.{normalize_format(fmt)}"


class LocalAssetStore:
    """Writes assets under ``root/<kind>/`` and returns ``/<kind>/<name>`` URLs."""

    def __init__(self, root: str = config.ASSET_ROOT):
        self.root = root

    def _path(self, kind: str, name: str) -> str:
        return os.path.join(self.root, kind, os.path.basename(name))

    def save(self, data: bytes, fmt: str, constraints: AssetConstraints) -> str:
        name = new_asset_name(fmt)
        path = self._path(constraints.kind, name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        logger.info("Saved %s asset %s (%d bytes).", constraints.kind, name, len(data))
        return f"/{constraints.kind}/{name}"

    def exists(self, name: str, constraints: AssetConstraints) -> bool:
        return is_format_supported(name, constraints) and os.path.isfile(self._path(constraints.kind, name))

    def delete(self, url: str) -> None:
        kind, _, name = url.lstrip("/").partition("/")
        if kind not in ASSET_KINDS:
            return
        path = self._path(kind, name)
        if os.path.isfile(path):
            os.remove(path)


class GCSAssetStore:
    """Uploads assets to a Google Cloud Storage bucket and returns their public URLs."""

    def __init__(self, bucket_name: str = config.GCS_BUCKET_NAME, client=None):
        self.bucket_name = bucket_name
        self._client = client

    def _bucket(self):
        if self._client is None:
            logger.info("Initializing GCS client for bucket: %s.", self.bucket_name)
            self._client = gcs.Client()
        return self._client.bucket(self.bucket_name)

    def save(self, data: bytes, fmt: str, constraints: AssetConstraints) -> str:
        fmt = normalize_format(fmt)
        blob = self._bucket().blob(f"{constraints.kind}/{new_asset_name(fmt)}")
        blob.upload_from_string(data, content_type=constraints.formats[fmt])
        logger.info("Uploaded %s to gs://%s.", blob.name, self.bucket_name)
        return blob.public_url

    def exists(self, name: str, constraints: AssetConstraints) -> bool:
        if not is_format_supported(name, constraints):
            return False
        return self._bucket().blob(f"{constraints.kind}/{os.path.basename(name)}").exists()

    def delete(self, url: str) -> None:
        prefix = f"/{self.bucket_name}/"
        _, _, blob_name = url.partition(prefix)
        if blob_name:
            blob = self._bucket().blob(blob_name)
            if blob.exists():
                blob.delete()


def build_asset_store(backend: str = config.STORAGE_BACKEND):
    if backend == "gcs":
        return GCSAssetStore()
    if backend == "local":
        return LocalAssetStore()
    raise ValueError(f"Unknown storage backend: {backend}")
