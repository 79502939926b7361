import asyncio
import logging
from pathlib import Path

import httpx

from gemini_image_mcp.errors import SizeLimitExceeded, SourceUnavailable, UnsupportedFormat
from gemini_image_mcp.schemas import ImageAsset, ImageSource, LocalSource, RemoteSource

logger = logging.getLogger(__name__)

DEFAULT_MAX_IMAGE_BYTES = 20 * 1024 * 1024

SUPPORTED_MIME_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
_MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}


def sniff_mime_type(data: bytes) -> str | None:
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def normalize_content_type(value: str | None) -> str | None:
    if not value:
        return None
    base = value.split(";", 1)[0].strip().lower()
    base = _MIME_ALIASES.get(base, base)
    return base if base in SUPPORTED_MIME_TYPES else None


class ImageAcquirer:
    """Turns an image source into bytes plus MIME type under a size ceiling."""

    def __init__(
        self,
        max_bytes: int = DEFAULT_MAX_IMAGE_BYTES,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.max_bytes = max_bytes
        self.timeout_s = timeout_s
        self._transport = transport

    async def acquire(self, source: ImageSource) -> ImageAsset:
        if isinstance(source, RemoteSource):
            data, declared = await self._fetch_remote(source.url)
            label = source.url
        else:
            data = await self._read_local(source)
            declared = None
            label = str(source.path)

        if not data:
            raise UnsupportedFormat(f"Image is empty: {label}")

        mime_type = declared or sniff_mime_type(data)
        if mime_type is None:
            raise UnsupportedFormat(
                f"Unrecognized image format for {label} (supported: jpeg, png, gif, webp)"
            )
        logger.debug("acquired %s (%s, %d bytes)", label, mime_type, len(data))
        return ImageAsset(data=data, mime_type=mime_type)

    async def _fetch_remote(self, url: str) -> tuple[bytes, str | None]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_s,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    if not response.is_success:
                        raise SourceUnavailable(
                            f"Failed to fetch image from {url}: HTTP {response.status_code}",
                            status=response.status_code,
                        )
                    declared_length = response.headers.get("content-length")
                    if declared_length and declared_length.isdigit():
                        if int(declared_length) > self.max_bytes:
                            raise self._too_large(url)

                    chunks: list[bytes] = []
                    total = 0
                    async for chunk in response.aiter_bytes():
                        total += len(chunk)
                        if total > self.max_bytes:
                            raise self._too_large(url)
                        chunks.append(chunk)
                    declared = normalize_content_type(response.headers.get("content-type"))
        except httpx.HTTPError as exc:
            raise SourceUnavailable(
                f"Failed to fetch image from {url}: {type(exc).__name__}", cause=str(exc)
            ) from exc
        return b"".join(chunks), declared

    async def _read_local(self, source: LocalSource) -> bytes:
        path = source.path
        try:
            return await asyncio.to_thread(self._read_bounded, path)
        except OSError as exc:
            raise SourceUnavailable(
                f"Cannot read image file {path}: {exc.strerror or exc}", cause=str(exc)
            ) from exc

    def _read_bounded(self, path: Path) -> bytes:
        if not path.exists():
            raise FileNotFoundError(2, "File not found", str(path))
        if not path.is_file():
            raise IsADirectoryError(21, "Path is not a file", str(path))
        if path.stat().st_size > self.max_bytes:
            raise self._too_large(str(path))
        with path.open("rb") as handle:
            data = handle.read(self.max_bytes + 1)
        if len(data) > self.max_bytes:
            raise self._too_large(str(path))
        return data

    def _too_large(self, label: str) -> SizeLimitExceeded:
        limit_mib = self.max_bytes / (1024 * 1024)
        return SizeLimitExceeded(
            f"Image too large: {label} exceeds {limit_mib:g} MiB",
            limit_bytes=self.max_bytes,
        )
