import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class NoteSummary:
    id: str
    title: str = ""
    summary: str = ""
    cover: str = ""
    create_time: str = ""
    link: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "cover": self.cover,
            "createTime": self.create_time,
            "link": self.link,
        }


@dataclass
class ImageRef:
    original_url: str
    relay_url: Optional[str] = None
    media_id: Optional[str] = None
    platform_url: Optional[str] = None  # url returned by the platform upload, used inside article html
    relay_failed: bool = False

    @property
    def public_url(self) -> str:
        return self.relay_url or self.original_url

    def with_relay(self, relay_url: str, *, failed: bool = False) -> "ImageRef":
        return replace(self, relay_url=relay_url, relay_failed=failed)


@dataclass
class NoteDetail:
    title: str
    content: str
    source_url: str
    images: List[ImageRef] = field(default_factory=list)
    cover_image: Optional[ImageRef] = None

    def ordered_images(self) -> List[ImageRef]:
        """Cover first (when present), then body images in DOM order."""
        if self.cover_image is None:
            return list(self.images)
        return [self.cover_image] + list(self.images)

    def replace_images(self, ordered: List[ImageRef]) -> None:
        """Inverse of ordered_images(): write back refs produced for each slot."""
        if self.cover_image is not None:
            self.cover_image = ordered[0]
            self.images = list(ordered[1:])
        else:
            self.images = list(ordered)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "content": self.content,
            "images": [img.public_url for img in self.images],
            "coverImage": self.cover_image.public_url if self.cover_image else None,
            "sourceUrl": self.source_url,
        }


@dataclass
class PublishToken:
    value: str
    expires_at: float

    def is_valid(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return bool(self.value) and now < self.expires_at


@dataclass(frozen=True)
class DraftArticle:
    title: str
    author: str
    digest: str
    html_content: str
    thumb_media_id: str
    content_source_url: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "author": self.author,
            "digest": self.digest,
            "content": self.html_content,
            "content_source_url": self.content_source_url,
            "thumb_media_id": self.thumb_media_id,
            "need_open_comment": 0,
            "only_fans_can_comment": 0,
        }


@dataclass
class PublishResult:
    media_id: str
    stages: List[str] = field(default_factory=list)
    thumb_media_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"success": True, "media_id": self.media_id}
