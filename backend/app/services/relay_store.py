"""Relay targets for rehosted note images.

Either store returns a publicly fetchable URL; that is the only property the
publisher relies on.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import threading
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import quote, unquote

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image, ImageDraw

from app.core.config import Settings

logger = logging.getLogger("xhs-draft-relay")

PLACEHOLDER_NAME = "placeholder.png"

_EXT_BY_CTYPE = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
}


def asset_name(key: str, content_type: str) -> str:
    digest = hashlib.sha1((key or "").encode("utf-8")).hexdigest()
    return f"{digest}.{_EXT_BY_CTYPE.get(content_type, 'jpg')}"


def render_placeholder_png(size: tuple[int, int] = (800, 800)) -> bytes:
    img = Image.new("RGB", size, (238, 238, 238))
    draw = ImageDraw.Draw(img)
    w, h = size
    inset = min(w, h) // 4
    draw.rectangle([inset, inset, w - inset, h - inset], outline=(190, 190, 190), width=6)
    draw.line([inset, h - inset, w // 2, h // 2, w - inset, h - inset], fill=(190, 190, 190), width=6)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class RelayStore(Protocol):
    def save(self, key: str, data: bytes, content_type: str) -> str: ...

    def read(self, url: str) -> Optional[bytes]: ...

    def placeholder_url(self) -> str: ...


class LocalRelayStore:
    """Writes under a statically served directory (mounted at /images)."""

    def __init__(self, root_dir: str, public_base_url: str, *, placeholder_url: str = ""):
        self.root = Path(root_dir).expanduser()
        self.public_base = (public_base_url or "").rstrip("/")
        self._placeholder_url = placeholder_url

    def _url_for(self, name: str) -> str:
        return f"{self.public_base}/images/{name}"

    def save(self, key: str, data: bytes, content_type: str) -> str:
        name = asset_name(key, content_type)
        self.root.mkdir(parents=True, exist_ok=True)
        target = self.root / name
        tmp = target.with_name(f"{name}.tmp.{os.getpid()}")
        tmp.write_bytes(data)
        os.replace(tmp, target)
        return self._url_for(name)

    def _local_path(self, url: str) -> Optional[Path]:
        prefix = self._url_for("")
        if not url.startswith(prefix):
            return None
        name = url[len(prefix):]
        if not name or "/" in name or name.startswith("."):
            return None
        return self.root / name

    def read(self, url: str) -> Optional[bytes]:
        path = self._local_path(url or "")
        if path is None or not path.is_file():
            return None
        return path.read_bytes()

    def placeholder_url(self) -> str:
        if self._placeholder_url:
            return self._placeholder_url
        target = self.root / PLACEHOLDER_NAME
        if not target.exists():
            self.root.mkdir(parents=True, exist_ok=True)
            target.write_bytes(render_placeholder_png())
            logger.info("relay placeholder generated at %s", target)
        return self._url_for(PLACEHOLDER_NAME)


class S3RelayStore:
    def __init__(self, bucket: str, *, prefix: str = "", region: str = "", public_base_url: str = "", placeholder_url: str = "", client=None):
        if not bucket:
            raise ValueError("RELAY_S3_BUCKET is required when RELAY_MODE=s3")
        self.bucket = bucket
        self.prefix = (prefix or "").strip("/")
        self.region = region
        self.public_base = (public_base_url or "").rstrip("/")
        self._placeholder_url = placeholder_url
        self._placeholder_lock = threading.Lock()
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("s3", region_name=self.region or None)
        return self._client

    def _key(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def _url_for(self, key: str) -> str:
        if self.public_base:
            return f"{self.public_base}/{quote(key)}"
        if self.region:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quote(key)}"
        return f"https://{self.bucket}.s3.amazonaws.com/{quote(key)}"

    def save(self, key: str, data: bytes, content_type: str) -> str:
        object_key = self._key(asset_name(key, content_type))
        self.client.put_object(
            Bucket=self.bucket,
            Key=object_key,
            Body=data,
            ContentType=content_type,
            CacheControl="public, max-age=31536000",
        )
        return self._url_for(object_key)

    def read(self, url: str) -> Optional[bytes]:
        base = self._url_for("")
        if not (url or "").startswith(base):
            return None
        object_key = unquote(url[len(base):])
        try:
            resp = self.client.get_object(Bucket=self.bucket, Key=object_key)
            return resp["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise OSError(f"s3 read failed for {object_key}: {exc}") from exc

    def placeholder_url(self) -> str:
        # Uploaded once per store; configured urls are never uploaded.
        with self._placeholder_lock:
            if not self._placeholder_url:
                self._placeholder_url = self.save(PLACEHOLDER_NAME, render_placeholder_png(), "image/png")
            return self._placeholder_url


def build_relay_store(settings: Settings) -> RelayStore:
    if settings.relay_mode == "s3":
        return S3RelayStore(
            settings.relay_s3_bucket,
            prefix=settings.relay_s3_prefix,
            region=settings.relay_s3_region,
            public_base_url=settings.relay_s3_public_base_url,
            placeholder_url=settings.relay_placeholder_url,
        )
    if settings.relay_mode != "local":
        raise ValueError(f"unknown RELAY_MODE: {settings.relay_mode}")
    return LocalRelayStore(
        settings.relay_local_dir,
        settings.relay_public_base_url,
        placeholder_url=settings.relay_placeholder_url,
    )
