"""Bunny Stream publishing: two-phase video upload, URL derivation and thumbnails."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
)

from services.ingest_errors import PipelineConfigError, PublishError, ThumbnailPublishError
from services.ingest_types import PublishedMedia
from services.media_fetcher import MediaFetcher

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


def normalize_cdn_hostname(hostname: str) -> str:
    """Strip scheme/slashes and ensure the ``vz-`` pull-zone prefix."""
    host = str(hostname or "").strip()
    for prefix in ("https://", "http://"):
        if host.lower().startswith(prefix):
            host = host[len(prefix):]
    host = host.strip("/")
    if host and not host.startswith("vz-"):
        host = f"vz-{host}"
    return host


@dataclass(frozen=True)
class CdnConfig:
    library_id: str
    api_key: str
    hostname: str
    api_base_url: str = "https://video.bunnycdn.com"
    playback_url_template: str = "https://iframe.mediadelivery.net/embed/{library_id}/{remote_id}"
    direct_url_template: str = "https://{hostname}/{remote_id}/play_720p.mp4"
    thumbnail_url_template: str = "https://{hostname}/{remote_id}/thumbnail.jpg"
    max_attempts: int = 3
    thumbnail_max_attempts: int = 2
    base_timeout_seconds: float = 120.0
    timeout_step_seconds: float = 60.0
    thumbnail_timeout_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings: Any) -> "CdnConfig":
        return cls(
            library_id=str(settings.BUNNY_STREAM_LIBRARY_ID or "").strip(),
            api_key=str(settings.BUNNY_STREAM_API_KEY or "").strip(),
            hostname=normalize_cdn_hostname(settings.BUNNY_CDN_HOSTNAME),
            api_base_url=settings.BUNNY_API_BASE_URL,
            playback_url_template=settings.CDN_PLAYBACK_URL_TEMPLATE,
            direct_url_template=settings.CDN_DIRECT_URL_TEMPLATE,
            thumbnail_url_template=settings.CDN_THUMBNAIL_URL_TEMPLATE,
            max_attempts=max(int(settings.CDN_MAX_ATTEMPTS), 1),
            thumbnail_max_attempts=max(int(settings.THUMBNAIL_MAX_ATTEMPTS), 1),
        )

    def attempt_timeout(self, attempt: int) -> float:
        return self.base_timeout_seconds + self.timeout_step_seconds * (attempt - 1)


def failure_backoff_seconds(attempt: int) -> float:
    """Delay after a non-2xx response on ``attempt`` (1-based)."""
    return float(min(30, 2 * 2 ** (attempt - 1)))


def exception_backoff_seconds(attempt: int) -> float:
    """Delay after a transport-level error on ``attempt`` (1-based)."""
    return float(min(60, 3 * 2 ** (attempt - 1)))


def thumbnail_backoff_seconds(attempt: int) -> float:
    return float(min(10, 1 * 2 ** (attempt - 1)))


def _publish_wait(retry_state: RetryCallState) -> float:
    if retry_state.outcome is not None and retry_state.outcome.failed:
        return exception_backoff_seconds(retry_state.attempt_number)
    return failure_backoff_seconds(retry_state.attempt_number)


def _title_from_filename(filename: str) -> str:
    base = os.path.basename(filename or "")
    stem = os.path.splitext(base)[0]
    return stem or base or "video"


class CdnPublisher:
    """Uploads media payloads to a Bunny Stream library."""

    def __init__(
        self,
        config: CdnConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: SleepFn = asyncio.sleep,
        fetcher: Optional[MediaFetcher] = None,
    ) -> None:
        missing = [
            name
            for name, value in (
                ("BUNNY_STREAM_LIBRARY_ID", config.library_id),
                ("BUNNY_STREAM_API_KEY", config.api_key),
                ("BUNNY_CDN_HOSTNAME", config.hostname),
            )
            if not value
        ]
        if missing:
            raise PipelineConfigError(f"CDN configuration missing: {', '.join(missing)}")
        self.config = config
        self._transport = transport
        self._sleep = sleep
        self._fetcher = fetcher

    # URL derivation

    def playback_url(self, remote_id: str) -> str:
        return self.config.playback_url_template.format(
            library_id=self.config.library_id,
            hostname=self.config.hostname,
            remote_id=remote_id,
        )

    def direct_url(self, remote_id: str) -> str:
        return self.config.direct_url_template.format(
            library_id=self.config.library_id,
            hostname=self.config.hostname,
            remote_id=remote_id,
        )

    def default_thumbnail_url(self, remote_id: str) -> str:
        return self.config.thumbnail_url_template.format(
            library_id=self.config.library_id,
            hostname=self.config.hostname,
            remote_id=remote_id,
        )

    # Upload

    def _videos_endpoint(self) -> str:
        return f"{self.config.api_base_url.rstrip('/')}/library/{self.config.library_id}/videos"

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout,
            headers={"AccessKey": self.config.api_key},
            transport=self._transport,
        )

    async def _attempt_publish(self, title: str, payload: bytes, timeout: float) -> Optional[str]:
        """Create a remote object and upload into it. Returns the GUID, or None on a rejected attempt."""
        async with self._client(timeout) as client:
            create_response = await client.post(
                self._videos_endpoint(),
                json={"title": title},
                headers={"Accept": "application/json"},
            )
            if not create_response.is_success:
                logger.warning(
                    "CDN create failed: HTTP %s %s",
                    create_response.status_code,
                    create_response.text[:300],
                )
                return None
            try:
                created = create_response.json()
            except ValueError:
                logger.warning("CDN create returned a non-JSON body: %s", create_response.text[:300])
                return None
            remote_id = str(created.get("guid") or "").strip() if isinstance(created, dict) else ""
            if not remote_id:
                logger.warning("CDN create response carried no guid")
                return None

            upload_response = await client.put(
                f"{self._videos_endpoint()}/{remote_id}",
                content=payload,
                headers={"Content-Type": "application/octet-stream"},
            )
            if not upload_response.is_success:
                # The created object stays behind empty; it is not rolled back.
                logger.warning(
                    "CDN upload into %s failed: HTTP %s %s",
                    remote_id,
                    upload_response.status_code,
                    upload_response.text[:300],
                )
                return None
            return remote_id

    async def publish(self, payload: bytes, filename: str) -> PublishedMedia:
        """Upload ``payload`` with up to ``max_attempts`` fresh create+upload attempts."""
        title = _title_from_filename(filename)
        size_mb = len(payload) / (1024 * 1024)
        max_attempts = self.config.max_attempts
        remote_id: Optional[str] = None

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=_publish_wait,
                retry=retry_if_exception_type(httpx.HTTPError) | retry_if_result(lambda result: result is None),
                sleep=self._sleep,
                reraise=False,
            ):
                attempt_number = attempt.retry_state.attempt_number
                timeout = self.config.attempt_timeout(attempt_number)
                logger.info(
                    "Publishing %s (%.2f MB) attempt %s/%s, timeout %ss",
                    title,
                    size_mb,
                    attempt_number,
                    max_attempts,
                    int(timeout),
                )
                with attempt:
                    remote_id = await self._attempt_publish(title, payload, timeout)
                outcome = attempt.retry_state.outcome
                if outcome.failed:
                    logger.warning("CDN publish attempt %s raised %r", attempt_number, outcome.exception())
                else:
                    attempt.retry_state.set_result(remote_id)
        except RetryError as exc:
            last = exc.last_attempt
            reason = f"{type(last.exception()).__name__}: {last.exception()}" if last.failed else "CDN rejected the upload"
            raise PublishError(
                f"CDN publish failed after {max_attempts} attempts: {reason}",
                stage="publishing",
            ) from exc

        logger.info("Published %s as %s", title, remote_id)
        return PublishedMedia(
            remote_id=remote_id,
            playback_url=self.playback_url(remote_id),
            direct_url=self.direct_url(remote_id),
            thumbnail_url=self.default_thumbnail_url(remote_id),
        )

    # Thumbnails

    async def _upload_thumbnail(self, remote_id: str, thumbnail_url: str) -> None:
        if self._fetcher is None:
            raise ThumbnailPublishError("No media fetcher configured for thumbnails", stage="thumbnail_publishing")
        image = await self._fetcher.fetch_thumbnail(thumbnail_url)
        content_type = image.content_type if image.content_type.startswith("image/") else "image/jpeg"
        async with self._client(self.config.thumbnail_timeout_seconds) as client:
            response = await client.post(
                f"{self._videos_endpoint()}/{remote_id}/thumbnail",
                content=image.content,
                headers={"Content-Type": content_type},
            )
        if not response.is_success:
            raise ThumbnailPublishError(
                f"Thumbnail upload failed: HTTP {response.status_code} {response.text[:200]}",
                stage="thumbnail_publishing",
            )

    async def publish_thumbnail(self, remote_id: str, thumbnail_url: Optional[str]) -> bool:
        """Replace the auto-generated thumbnail of ``remote_id``. Never raises."""
        if not thumbnail_url:
            return False
        max_attempts = self.config.thumbnail_max_attempts
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=lambda retry_state: thumbnail_backoff_seconds(retry_state.attempt_number),
                retry=retry_if_exception_type(Exception),
                sleep=self._sleep,
                reraise=False,
            ):
                with attempt:
                    await self._upload_thumbnail(remote_id, thumbnail_url)
                outcome = attempt.retry_state.outcome
                if outcome.failed:
                    error = outcome.exception()
                    logger.warning(
                        "Thumbnail attempt %s/%s for %s failed [%s]: %s",
                        attempt.retry_state.attempt_number,
                        max_attempts,
                        remote_id,
                        getattr(error, "code", ThumbnailPublishError.code),
                        error,
                    )
        except RetryError:
            return False
        logger.info("Custom thumbnail set for %s", remote_id)
        return True
