"""Download resolved media URLs with content-type and size validation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from services.ingest_errors import InvalidMediaError, MediaFetchError
from services.ingest_types import FetchedMedia

logger = logging.getLogger(__name__)

# Several source CDNs reject default client identifiers.
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class FetcherConfig:
    timeout_seconds: float = 180.0
    video_max_bytes: Optional[int] = None
    thumbnail_max_bytes: int = 50 * 1024 * 1024

    @classmethod
    def from_settings(cls, settings: Any) -> "FetcherConfig":
        return cls(
            timeout_seconds=float(settings.MEDIA_FETCH_TIMEOUT_SECONDS),
            video_max_bytes=int(settings.MEDIA_MAX_BYTES) or None,
            thumbnail_max_bytes=int(settings.THUMBNAIL_MAX_BYTES),
        )


def _format_mb(size_bytes: int) -> str:
    return f"{size_bytes / (1024 * 1024):.2f} MB"


class MediaFetcher:
    """Streams a media URL into memory, rejecting mislabeled or oversized payloads."""

    def __init__(
        self,
        config: FetcherConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": BROWSER_USER_AGENT},
            transport=self._transport,
        )

    async def fetch(
        self,
        media_url: str,
        *,
        max_bytes: Optional[int] = None,
        expected_type_prefix: Optional[str] = "video/",
    ) -> FetchedMedia:
        """Download ``media_url`` and validate status, content type and size."""
        try:
            async with self._client(self.config.timeout_seconds) as client:
                async with client.stream("GET", media_url) as response:
                    if response.status_code < 200 or response.status_code >= 300:
                        raise MediaFetchError(
                            f"Media download failed with HTTP {response.status_code}",
                            stage="downloading",
                        )

                    content_type = (response.headers.get("content-type") or "").split(";")[0].strip().lower()
                    if expected_type_prefix and not content_type.startswith(expected_type_prefix):
                        # Scrapers sometimes hand back a thumbnail URL labeled as the video URL.
                        raise InvalidMediaError(
                            f"Invalid content type {content_type or 'missing'!r} (expected {expected_type_prefix}*)",
                            stage="downloading",
                        )

                    declared = response.headers.get("content-length")
                    declared_length = int(declared) if declared and declared.isdigit() else 0
                    if max_bytes and declared_length > max_bytes:
                        raise InvalidMediaError(
                            f"Media too large: {_format_mb(declared_length)} exceeds {_format_mb(max_bytes)}",
                            stage="downloading",
                        )

                    chunks = []
                    received = 0
                    async for chunk in response.aiter_bytes():
                        received += len(chunk)
                        if max_bytes and received > max_bytes:
                            raise InvalidMediaError(
                                f"Media too large: stream exceeded {_format_mb(max_bytes)}",
                                stage="downloading",
                            )
                        chunks.append(chunk)
        except httpx.HTTPError as exc:
            raise MediaFetchError(f"Media download error: {exc}", stage="downloading") from exc

        content = b"".join(chunks)
        if not content:
            raise InvalidMediaError("Media download returned an empty body", stage="downloading")

        logger.info("Fetched media %s (%s, %s)", media_url[:100], content_type, _format_mb(len(content)))
        return FetchedMedia(
            content=content,
            content_type=content_type,
            content_length=len(content),
            source_url=media_url,
        )

    async def fetch_video(self, media_url: str) -> FetchedMedia:
        return await self.fetch(media_url, max_bytes=self.config.video_max_bytes)

    async def fetch_thumbnail(self, thumbnail_url: str) -> FetchedMedia:
        return await self.fetch(
            thumbnail_url,
            max_bytes=self.config.thumbnail_max_bytes,
            expected_type_prefix=None,
        )
