import asyncio
import logging
from pathlib import Path
from typing import Optional, Tuple

import requests

from errors import LoadError, UnsupportedFormatError
from schemas import Asset

logger = logging.getLogger("photobook-orders")

SUPPORTED_EXTENSIONS = {"jpg": "jpg", "jpeg": "jpg", "png": "png"}
CONTENT_TYPE_EXTENSIONS = {"image/jpeg": "jpg", "image/jpg": "jpg", "image/png": "png"}


def normalize_extension(value: str) -> Optional[str]:
    return SUPPORTED_EXTENSIONS.get(value.lower().lstrip("."))


def _read_local(path: Path) -> bytes:
    return path.read_bytes()


def _download(url: str, timeout: float) -> Tuple[bytes, str]:
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    content_type = response.headers.get("Content-Type", "").split(";")[0].strip()
    return response.content, content_type


class LocalAssetLoader:
    """Produces raw image bytes for on-device files and remote photos."""

    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout

    async def image_data(self, asset: Asset) -> Tuple[bytes, str]:
        if asset.local_path:
            return await self._load_local(asset)
        if asset.remote_url:
            return await self._load_remote(asset)
        raise LoadError(f"Asset {asset.identifier} has no source")

    async def _load_local(self, asset: Asset) -> Tuple[bytes, str]:
        path = Path(asset.local_path)
        extension = normalize_extension(path.suffix)
        if extension is None:
            raise UnsupportedFormatError(f"Unsupported file type {path.suffix!r}")
        try:
            data = await asyncio.to_thread(_read_local, path)
        except OSError as exc:
            raise LoadError(f"Cannot read {path}: {exc}") from exc
        if not data:
            raise LoadError(f"{path} is empty")
        return data, extension

    async def _load_remote(self, asset: Asset) -> Tuple[bytes, str]:
        try:
            data, content_type = await asyncio.to_thread(
                _download, asset.remote_url, self.timeout
            )
        except requests.RequestException as exc:
            logger.warning("Download of asset %s failed: %s", asset.identifier, exc)
            raise LoadError(str(exc)) from exc
        extension = CONTENT_TYPE_EXTENSIONS.get(content_type) or normalize_extension(
            Path(asset.remote_url.split("?")[0]).suffix
        )
        if extension is None:
            raise UnsupportedFormatError(f"Unsupported content type {content_type!r}")
        return data, extension
