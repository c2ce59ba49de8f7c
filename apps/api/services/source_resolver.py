"""Resolve source-platform URLs into directly fetchable media plus metadata."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import yt_dlp

from services.ingest_errors import PipelineConfigError, ResolutionError
from services.ingest_types import MediaMetrics, Platform, ScrapedMedia
from services.platform_detector import detect_platform

logger = logging.getLogger(__name__)

TIKTOK_ACTOR = "clockworks~tiktok-scraper"
INSTAGRAM_ACTOR = "apify~instagram-scraper"


@dataclass(frozen=True)
class ResolverConfig:
    backend: str = "auto"
    apify_token: str = ""
    apify_base_url: str = "https://api.apify.com/v2"
    timeout_seconds: float = 120.0

    @classmethod
    def from_settings(cls, settings: Any) -> "ResolverConfig":
        return cls(
            backend=settings.SOURCE_RESOLVER_BACKEND,
            apify_token=settings.APIFY_TOKEN,
            apify_base_url=settings.APIFY_BASE_URL,
            timeout_seconds=float(settings.APIFY_TIMEOUT_SECONDS),
        )


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _first_text(*values: Any) -> Optional[str]:
    for value in values:
        text = str(value or "").strip()
        if text:
            return text
    return None


def _dig(data: Dict[str, Any], *keys: str) -> Any:
    current: Any = data
    for key in keys:
        if isinstance(current, list):
            if not current:
                return None
            current = current[0]
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


class SourceResolver(ABC):
    @abstractmethod
    async def resolve(self, url: str) -> ScrapedMedia:
        raise NotImplementedError


def tiktok_item_to_media(item: Dict[str, Any]) -> ScrapedMedia:
    """Map a clockworks TikTok dataset item onto ``ScrapedMedia``."""
    media_urls = item.get("mediaUrls") or []
    # downloadAddr/playAddr need TikTok session cookies; mediaUrls is the public re-hosted copy.
    media_url = _first_text(
        media_urls[0] if media_urls else None,
        item.get("videoUrl"),
        _dig(item, "videoMeta", "downloadAddr"),
        item.get("playAddr"),
    )
    if not media_url:
        raise ResolutionError("No TikTok video URL returned by scraper", stage="downloading")

    stats = item.get("stats") if isinstance(item.get("stats"), dict) else {}
    hashtags = [
        str(tag.get("name") or tag.get("hashtagName") or "").strip()
        for tag in (item.get("hashtags") or item.get("textExtra") or [])
        if isinstance(tag, dict)
    ]
    create_time = item.get("createTime")
    published_at = item.get("createTimeISO")
    if not published_at and create_time:
        published_at = datetime.fromtimestamp(_safe_int(create_time), tz=timezone.utc).isoformat()

    text = _first_text(item.get("text"), item.get("desc"), item.get("title"))
    author = _first_text(_dig(item, "authorMeta", "name"), _dig(item, "author", "uniqueId"))
    return ScrapedMedia(
        platform="tiktok",
        media_url=media_url,
        thumbnail_url=_first_text(
            _dig(item, "videoMeta", "coverUrl"),
            (item.get("covers") or [None])[0],
            item.get("dynamicCover"),
            item.get("originCover"),
        ),
        title=text or (f"TikTok by @{author}" if author else None),
        author=author,
        description=text,
        hashtags=tuple(tag for tag in hashtags if tag),
        metrics=MediaMetrics(
            views=_safe_int(item.get("playCount", stats.get("playCount"))),
            likes=_safe_int(item.get("diggCount", stats.get("diggCount"))),
            comments=_safe_int(item.get("commentCount", stats.get("commentCount"))),
            shares=_safe_int(item.get("shareCount", stats.get("shareCount"))),
            saves=_safe_int(item.get("collectCount", stats.get("collectCount"))),
        ),
        duration_seconds=_safe_int(_dig(item, "videoMeta", "duration")) or None,
        published_at=published_at,
        short_code=_first_text(item.get("id")),
    )


def instagram_item_to_media(item: Dict[str, Any]) -> ScrapedMedia:
    """Map an apify instagram-scraper dataset item onto ``ScrapedMedia``."""
    media_url = _first_text(item.get("videoUrl"), item.get("videoUrlBackup"))
    if not media_url:
        raise ResolutionError("Instagram item has no video URL (not a video post?)", stage="downloading")

    author = _first_text(item.get("ownerUsername"))
    caption = _first_text(item.get("caption"))
    return ScrapedMedia(
        platform="instagram",
        media_url=media_url,
        thumbnail_url=_first_text(item.get("thumbnailUrl"), item.get("imageUrl"), item.get("displayUrl")),
        title=caption or (f"Video by @{author}" if author else None),
        author=author,
        description=caption,
        hashtags=tuple(str(tag) for tag in (item.get("hashtags") or []) if tag),
        metrics=MediaMetrics(
            views=_safe_int(item.get("videoViewCount") or item.get("videoPlayCount")),
            likes=_safe_int(item.get("likesCount")),
            comments=_safe_int(item.get("commentsCount")),
            # Instagram does not expose shares.
            shares=0,
        ),
        duration_seconds=_safe_int(item.get("videoDurationSeconds")) or None,
        published_at=_first_text(item.get("timestamp")),
        short_code=_first_text(item.get("shortCode")),
    )


class ApifyResolver(SourceResolver):
    """Resolves TikTok and Instagram URLs through synchronous Apify actor runs."""

    def __init__(
        self,
        config: ResolverConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not config.apify_token:
            raise PipelineConfigError("APIFY_TOKEN is not configured")
        self.config = config
        self._transport = transport

    async def _run_actor(self, actor_id: str, actor_input: Dict[str, Any]) -> List[Dict[str, Any]]:
        endpoint = f"{self.config.apify_base_url.rstrip('/')}/acts/{actor_id}/run-sync-get-dataset-items"
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    endpoint,
                    params={"token": self.config.apify_token},
                    json=actor_input,
                )
        except httpx.TimeoutException as exc:
            raise ResolutionError(f"Scraper request timed out ({actor_id})", stage="downloading") from exc
        except httpx.HTTPError as exc:
            raise ResolutionError(f"Scraper request failed ({actor_id}): {exc}", stage="downloading") from exc

        if response.status_code >= 400:
            raise ResolutionError(
                f"Scraper API error {response.status_code}: {response.text[:300]}",
                stage="downloading",
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ResolutionError("Scraper returned a non-JSON response", stage="downloading") from exc
        items = payload if isinstance(payload, list) else [payload]
        return [item for item in items if isinstance(item, dict)]

    async def resolve(self, url: str) -> ScrapedMedia:
        detection = detect_platform(url)
        if detection.platform == "tiktok":
            items = await self._run_actor(
                TIKTOK_ACTOR,
                {
                    "postURLs": [detection.url],
                    "resultsPerPage": 1,
                    "shouldDownloadVideos": True,
                    "shouldDownloadCovers": True,
                    "scrapeRelatedVideos": False,
                },
            )
            mapper = tiktok_item_to_media
        elif detection.platform == "instagram":
            items = await self._run_actor(
                INSTAGRAM_ACTOR,
                {
                    "directUrls": [detection.url],
                    "resultsType": "details",
                    "resultsLimit": 1,
                    "proxyConfiguration": {"useApifyProxy": True},
                },
            )
            mapper = instagram_item_to_media
        else:
            raise ResolutionError(f"No scraper available for platform {detection.platform}", stage="downloading")

        if not items:
            raise ResolutionError(f"No {detection.platform} data returned from scraper", stage="downloading")
        if items[0].get("error"):
            raise ResolutionError(f"Scraper error: {items[0].get('error')}", stage="downloading")
        media = mapper(items[0])
        logger.info("Resolved %s URL %s via Apify", media.platform, detection.url)
        return media


def _pick_public_format(info: Dict[str, Any]) -> Optional[str]:
    """Choose a progressive mp4 format that needs no session cookies."""
    if info.get("url") and "Cookie" not in (info.get("http_headers") or {}):
        return str(info["url"])
    candidates = []
    for fmt in info.get("formats") or []:
        if not fmt.get("url") or "Cookie" in (fmt.get("http_headers") or {}):
            continue
        if fmt.get("vcodec") in (None, "none") or fmt.get("acodec") in (None, "none"):
            continue
        candidates.append(fmt)
    if not candidates:
        return None
    candidates.sort(key=lambda fmt: (fmt.get("ext") == "mp4", fmt.get("height") or 0), reverse=True)
    return str(candidates[0]["url"])


def info_to_media(platform: Platform, info: Dict[str, Any]) -> ScrapedMedia:
    media_url = _pick_public_format(info)
    if not media_url:
        raise ResolutionError("No publicly fetchable media format found", stage="downloading")
    upload_date = str(info.get("upload_date") or "")
    published_at = None
    if len(upload_date) == 8 and upload_date.isdigit():
        published_at = f"{upload_date[:4]}-{upload_date[4:6]}-{upload_date[6:]}T00:00:00+00:00"
    description = _first_text(info.get("description"))
    return ScrapedMedia(
        platform=platform,
        media_url=media_url,
        thumbnail_url=_first_text(info.get("thumbnail")),
        title=_first_text(info.get("title"), description),
        author=_first_text(info.get("uploader"), info.get("channel"), info.get("uploader_id")),
        description=description,
        hashtags=tuple(str(tag) for tag in (info.get("tags") or []) if tag),
        metrics=MediaMetrics(
            views=_safe_int(info.get("view_count")),
            likes=_safe_int(info.get("like_count")),
            comments=_safe_int(info.get("comment_count")),
            shares=_safe_int(info.get("repost_count")),
        ),
        duration_seconds=_safe_int(info.get("duration")) or None,
        published_at=published_at,
        short_code=_first_text(info.get("id")),
    )


class YtDlpResolver(SourceResolver):
    """Resolves URLs with yt-dlp metadata extraction (no download)."""

    def __init__(self, config: ResolverConfig) -> None:
        self.config = config

    def _extract(self, url: str) -> Dict[str, Any]:
        ydl_opts = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "format": "best[ext=mp4]/best",
            "socket_timeout": self.config.timeout_seconds,
        }
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            return ydl.extract_info(url, download=False) or {}

    async def resolve(self, url: str) -> ScrapedMedia:
        detection = detect_platform(url)
        try:
            info = await asyncio.to_thread(self._extract, detection.url)
        except yt_dlp.utils.DownloadError as exc:
            raise ResolutionError(f"yt-dlp could not resolve {detection.url}: {exc}", stage="downloading") from exc
        media = info_to_media(detection.platform, info)
        logger.info("Resolved %s URL %s via yt-dlp", media.platform, detection.url)
        return media


def build_source_resolver(config: ResolverConfig) -> SourceResolver:
    """Return the resolver selected by ``config.backend``."""
    backend = (config.backend or "auto").lower()
    if backend == "apify" or (backend == "auto" and config.apify_token):
        return ApifyResolver(config)
    return YtDlpResolver(config)
