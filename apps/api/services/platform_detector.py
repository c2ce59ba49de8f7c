"""Source platform detection for submitted video URLs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional, Pattern, Sequence
from urllib.parse import unquote, urlparse

from services.ingest_types import Platform


SUPPORTED_HINT = "Currently supported: TikTok videos and Instagram reels or posts."

TIKTOK_PATTERNS: Sequence[Pattern[str]] = (
    re.compile(r"^https?://(www\.|m\.)?tiktok\.com/@[\w.-]+/video/(\d+)", re.I),
    re.compile(r"^https?://(www\.|m\.)?tiktok\.com/.*/video/(\d+)", re.I),
    re.compile(r"^https?://(vm|vt)\.tiktok\.com/[\w-]+/?", re.I),
    re.compile(r"^https?://(www\.|m\.)?tiktok\.com/.*\?.*shareId=(\d+)", re.I),
    re.compile(r"^https?://(www\.|m\.)?tiktok\.com/embed(/v2)?/(\d+)", re.I),
    re.compile(r"^https?://(www\.|m\.)?tiktok\.com/v/(\d+)", re.I),
    re.compile(r"^https?://(www\.|m\.)?tiktok\.com/t/[\w-]+/?", re.I),
)

INSTAGRAM_PATTERNS: Sequence[Pattern[str]] = (
    re.compile(r"^https?://(www\.)?instagram\.com/(p|reel|reels|tv)/[\w-]+/?", re.I),
    re.compile(r"^https?://(www\.)?instagram\.com/stories/[\w.-]+/\d+", re.I),
    re.compile(r"^https?://(www\.)?instagr\.am/p/[\w-]+/?", re.I),
    re.compile(r"^https?://(www\.)?instagram\.com/[\w.-]+/?(\?.*)?$", re.I),
)

YOUTUBE_PATTERNS: Sequence[Pattern[str]] = (
    re.compile(r"^https?://(www\.|m\.)?youtube\.com/watch\?(.*&)?v=[\w-]+", re.I),
    re.compile(r"^https?://(www\.|m\.)?youtube\.com/(shorts|embed|live)/[\w-]+", re.I),
    re.compile(r"^https?://youtu\.be/[\w-]+", re.I),
    re.compile(r"^https?://(www\.)?youtube\.com/playlist\?list=[\w-]+", re.I),
    re.compile(r"^https?://(www\.)?youtube\.com/(c/|channel/|user/|@)[\w.-]+", re.I),
)

TIKTOK_ID_PATTERNS: Sequence[Pattern[str]] = (
    re.compile(r"/video/(\d+)"),
    re.compile(r"shareId=(\d+)"),
    re.compile(r"/embed(?:/v2)?/(\d+)"),
    re.compile(r"/v/(\d+)"),
    re.compile(r"(?:vm|vt)\.tiktok\.com/([\w-]+)"),
    re.compile(r"tiktok\.com/t/([\w-]+)"),
)
INSTAGRAM_ID_PATTERN = re.compile(r"/(p|reel|reels|tv)/([A-Za-z0-9_-]+)")
YOUTUBE_ID_PATTERNS: Sequence[Pattern[str]] = (
    re.compile(r"[?&]v=([\w-]{11})"),
    re.compile(r"youtu\.be/([\w-]{11})"),
    re.compile(r"youtube\.com/(?:shorts|embed|live)/([\w-]{11})"),
)

SUPPORTED_INSTAGRAM_TYPES = {"reel", "post"}


@dataclass(frozen=True)
class PlatformDetection:
    platform: Platform
    supported: bool
    reason: str
    content_type: str
    url: str
    external_id: Optional[str] = None


def _unsupported(url: str, reason: str, *, platform: Platform = "unknown", content_type: str = "unknown") -> PlatformDetection:
    return PlatformDetection(
        platform=platform,
        supported=False,
        reason=reason,
        content_type=content_type,
        url=url,
    )


def _first_group(patterns: Sequence[Pattern[str]], url: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def _instagram_type(url: str) -> str:
    lowered = url.lower()
    if "/reel/" in lowered or "/reels/" in lowered:
        return "reel"
    if "/p/" in lowered:
        return "post"
    if "/stories/" in lowered:
        return "story"
    if "/tv/" in lowered:
        return "tv"
    return "profile"


def _youtube_type(url: str) -> str:
    lowered = url.lower()
    if "/shorts/" in lowered:
        return "shorts"
    if "/live/" in lowered:
        return "live"
    if "/playlist?" in lowered:
        return "playlist"
    if re.search(r"/(c/|channel/|user/|@)", lowered):
        return "channel"
    return "video"


def normalize_source_url(raw: Any) -> str:
    """Trim and percent-decode a submitted URL; non-strings become empty."""
    if not isinstance(raw, str):
        return ""
    cleaned = raw.strip()
    try:
        return unquote(cleaned)
    except Exception:
        return cleaned


def detect_platform(raw_url: Any) -> PlatformDetection:
    """Classify a URL by source platform. Never raises."""
    if not isinstance(raw_url, str) or not raw_url.strip():
        return _unsupported("", "Invalid URL provided - must be a non-empty string.")

    url = normalize_source_url(raw_url)
    try:
        parsed = urlparse(url)
    except ValueError:
        return _unsupported(url, "Invalid URL format - please provide a valid HTTP/HTTPS URL.")
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.netloc:
        return _unsupported(url, "Invalid URL format - please provide a valid HTTP/HTTPS URL.")

    if any(pattern.search(url) for pattern in TIKTOK_PATTERNS):
        return PlatformDetection(
            platform="tiktok",
            supported=True,
            reason="",
            content_type="video",
            url=url,
            external_id=_first_group(TIKTOK_ID_PATTERNS, url),
        )

    if any(pattern.search(url) for pattern in INSTAGRAM_PATTERNS):
        content_type = _instagram_type(url)
        id_match = INSTAGRAM_ID_PATTERN.search(url)
        supported = content_type in SUPPORTED_INSTAGRAM_TYPES
        return PlatformDetection(
            platform="instagram",
            supported=supported,
            reason="" if supported else (
                f"Instagram {content_type} URLs are not currently supported. Please use Instagram reels or posts."
            ),
            content_type=content_type,
            url=url,
            external_id=id_match.group(2) if id_match else None,
        )

    if any(pattern.search(url) for pattern in YOUTUBE_PATTERNS):
        return PlatformDetection(
            platform="youtube",
            supported=False,
            reason=f"YouTube video processing is coming soon. {SUPPORTED_HINT}",
            content_type=_youtube_type(url),
            url=url,
            external_id=_first_group(YOUTUBE_ID_PATTERNS, url),
        )

    if "." in parsed.netloc:
        return _unsupported(
            url,
            f"Web page processing is not supported. {SUPPORTED_HINT}",
            content_type="web",
        )

    return _unsupported(url, f"URL format not recognized. {SUPPORTED_HINT}")
