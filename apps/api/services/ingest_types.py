"""Value objects exchanged between ingestion pipeline stages."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Literal, Optional, Tuple


Platform = Literal["tiktok", "instagram", "youtube", "unknown"]


@dataclass(frozen=True)
class MediaMetrics:
    views: int = 0
    likes: int = 0
    comments: int = 0
    shares: int = 0
    saves: Optional[int] = None

    def to_dict(self) -> Dict[str, int]:
        payload = {
            "views": self.views,
            "likes": self.likes,
            "comments": self.comments,
            "shares": self.shares,
        }
        if self.saves is not None:
            payload["saves"] = self.saves
        return payload


@dataclass(frozen=True)
class ScrapedMedia:
    platform: Platform
    media_url: str
    thumbnail_url: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    hashtags: Tuple[str, ...] = ()
    metrics: MediaMetrics = field(default_factory=MediaMetrics)
    duration_seconds: Optional[int] = None
    published_at: Optional[str] = None
    short_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["hashtags"] = list(self.hashtags)
        payload["metrics"] = self.metrics.to_dict()
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScrapedMedia":
        metrics = data.get("metrics") or {}
        return cls(
            platform=data.get("platform") or "unknown",
            media_url=str(data.get("media_url") or ""),
            thumbnail_url=data.get("thumbnail_url") or None,
            title=data.get("title") or None,
            author=data.get("author") or None,
            description=data.get("description") or None,
            hashtags=tuple(str(tag) for tag in (data.get("hashtags") or []) if tag),
            metrics=MediaMetrics(
                views=int(metrics.get("views") or 0),
                likes=int(metrics.get("likes") or 0),
                comments=int(metrics.get("comments") or 0),
                shares=int(metrics.get("shares") or 0),
                saves=metrics.get("saves"),
            ),
            duration_seconds=data.get("duration_seconds"),
            published_at=data.get("published_at") or None,
            short_code=data.get("short_code") or None,
        )


@dataclass(frozen=True)
class IngestionRequest:
    source_url: str
    user_id: str
    interest: Optional[str] = None
    collection_id: Optional[str] = None
    title: Optional[str] = None
    scraped: Optional[ScrapedMedia] = None


@dataclass(frozen=True)
class IngestionAck:
    job_id: str
    status: str = "processing"


@dataclass(frozen=True)
class FetchedMedia:
    content: bytes
    content_type: str
    content_length: int
    source_url: str


@dataclass(frozen=True)
class PublishedMedia:
    remote_id: str
    playback_url: str
    direct_url: str
    thumbnail_url: Optional[str] = None


@dataclass(frozen=True)
class ScriptComponents:
    hook: str = ""
    bridge: str = ""
    nugget: str = ""
    call_to_action: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "hook": self.hook,
            "bridge": self.bridge,
            "nugget": self.nugget,
            "callToAction": self.call_to_action,
        }


@dataclass(frozen=True)
class ContentMetadata:
    author: Optional[str] = None
    description: Optional[str] = None
    hashtags: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "author": self.author,
            "description": self.description,
            "hashtags": list(self.hashtags),
        }


@dataclass(frozen=True)
class TranscriptionResult:
    transcript: str = ""
    components: ScriptComponents = field(default_factory=ScriptComponents)
    content_metadata: ContentMetadata = field(default_factory=ContentMetadata)
    visual_context: str = ""
    degraded: bool = False
    raw_response: str = ""
    duration_seconds: int = 0
