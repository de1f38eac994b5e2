"""Filesystem image hosting: download product images and serve them from a base URL."""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath

import httpx

from catalog_sync.sync.errors import ErrorKind, PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_IMAGE_BYTES = 20 * 1024 * 1024


class FilesystemBlobStore:
    """Copy remote images under ``root`` and return ``{public_base_url}/{key}``.

    Keys are relative POSIX paths; anything that would escape ``root`` is
    rejected.
    """

    def __init__(
        self,
        root: Path,
        *,
        public_base_url: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        self.root = root
        self.public_base_url = (public_base_url or root.resolve().as_uri()).rstrip("/")
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            follow_redirects=True,
        )

    def upload_image(self, url: str, key: str) -> str:
        target = self._target_path(key)
        try:
            response = self._client.get(url)
        except httpx.TransportError as error:
            raise PersistenceError(
                message=f"Could not download image {url}: {error}",
                code="image_download_failed",
                kind=ErrorKind.UNREACHABLE,
            ) from error
        if response.is_error:
            raise PersistenceError(
                message=f"Image download {url} returned HTTP {response.status_code}",
                code="image_download_failed",
                status=response.status_code,
            )
        content = response.content
        if len(content) > MAX_IMAGE_BYTES:
            raise PersistenceError(
                message=f"Image {url} is larger than {MAX_IMAGE_BYTES} bytes",
                code="image_too_large",
                kind=ErrorKind.INVALID,
            )

        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".part")
        partial.write_bytes(content)
        partial.replace(target)
        logger.debug("Stored image %s -> %s (%d bytes)", url, target, len(content))
        return f"{self.public_base_url}/{key}"

    def close(self) -> None:
        self._client.close()

    def _target_path(self, key: str) -> Path:
        relative = PurePosixPath(key)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise PersistenceError(
                message=f"Invalid blob key: {key!r}",
                code="invalid_blob_key",
                kind=ErrorKind.INVALID,
            )
        return self.root.joinpath(*relative.parts)
