from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

# backend/app/core/config.py -> backend
BACKEND_DIR = Path(__file__).resolve().parents[2]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off"}:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw.strip())
    except Exception:
        return default


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(p.strip().lower() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    # source site
    cookie: str = ""
    user_agent: str = DEFAULT_USER_AGENT
    source_origin: str = "https://www.xiaohongshu.com/"
    headless: bool = True
    nav_timeout_ms: int = 30000
    content_wait_ms: int = 10000
    poll_interval_ms: int = 500
    scroll_pause_ms: int = 1200
    max_scrolls: int = 30
    viewport_width: int = 1920
    viewport_height: int = 1080
    block_resource_types: tuple[str, ...] = ("stylesheet", "font", "media")
    block_host_markers: tuple[str, ...] = (
        "google-analytics",
        "googletagmanager",
        "doubleclick",
        "apm-fe.xiaohongshu.com",
        "t2.xiaohongshu.com",
        "fe-static.xhscdn.com/data/formula-static",
    )

    # relay
    relay_mode: str = "local"
    relay_local_dir: str = str(BACKEND_DIR / "public" / "images")
    relay_public_base_url: str = "http://localhost:8000"
    relay_s3_bucket: str = ""
    relay_s3_prefix: str = "xhs-relay"
    relay_s3_region: str = ""
    relay_s3_public_base_url: str = ""
    relay_placeholder_url: str = ""
    relay_failure_policy: str = "placeholder"
    relay_max_attempts: int = 3
    relay_backoff_s: float = 0.5
    relay_concurrency: int = 4
    relay_timeout_s: float = 20.0

    # publish platform
    wechat_app_id: str = ""
    wechat_app_secret: str = field(default="", repr=False)
    wechat_author: str = ""
    wechat_default_thumb_media_id: str = ""
    wechat_api_base: str = "https://api.weixin.qq.com"
    wechat_timeout_s: float = 30.0

    pipeline_timeout_s: float = 180.0
    app_env: str = "development"

    @property
    def production(self) -> bool:
        return self.app_env.lower() in {"prod", "production"}

    @property
    def wechat_configured(self) -> bool:
        return bool(self.wechat_app_id and self.wechat_app_secret)

    @classmethod
    def from_env(cls) -> "Settings":
        d = cls()
        return cls(
            cookie=_env_str("XHS_COOKIE"),
            user_agent=_env_str("XHS_USER_AGENT", DEFAULT_USER_AGENT),
            source_origin=_env_str("XHS_SOURCE_ORIGIN", d.source_origin),
            headless=_env_bool("XHS_PLAYWRIGHT_HEADLESS", True),
            nav_timeout_ms=max(_env_int("XHS_NAV_TIMEOUT_MS", d.nav_timeout_ms), 1000),
            content_wait_ms=max(_env_int("XHS_CONTENT_WAIT_MS", d.content_wait_ms), 0),
            poll_interval_ms=max(_env_int("XHS_POLL_INTERVAL_MS", d.poll_interval_ms), 100),
            scroll_pause_ms=max(_env_int("XHS_SCROLL_PAUSE_MS", d.scroll_pause_ms), 0),
            max_scrolls=max(_env_int("XHS_MAX_SCROLLS", d.max_scrolls), 1),
            block_resource_types=_env_csv("XHS_BLOCK_RESOURCE_TYPES", d.block_resource_types),
            block_host_markers=_env_csv("XHS_BLOCK_HOST_MARKERS", d.block_host_markers),
            relay_mode=_env_str("RELAY_MODE", d.relay_mode).lower(),
            relay_local_dir=_env_str("RELAY_LOCAL_DIR", d.relay_local_dir),
            relay_public_base_url=_env_str("RELAY_PUBLIC_BASE_URL", d.relay_public_base_url).rstrip("/"),
            relay_s3_bucket=_env_str("RELAY_S3_BUCKET"),
            relay_s3_prefix=_env_str("RELAY_S3_PREFIX", d.relay_s3_prefix).strip("/"),
            relay_s3_region=_env_str("RELAY_S3_REGION"),
            relay_s3_public_base_url=_env_str("RELAY_S3_PUBLIC_BASE_URL").rstrip("/"),
            relay_placeholder_url=_env_str("RELAY_PLACEHOLDER_URL"),
            relay_failure_policy=_env_str("RELAY_FAILURE_POLICY", d.relay_failure_policy).lower(),
            relay_max_attempts=max(_env_int("RELAY_MAX_ATTEMPTS", d.relay_max_attempts), 1),
            relay_backoff_s=max(_env_float("RELAY_BACKOFF_S", d.relay_backoff_s), 0.0),
            relay_concurrency=max(_env_int("RELAY_CONCURRENCY", d.relay_concurrency), 1),
            relay_timeout_s=max(_env_float("RELAY_TIMEOUT_S", d.relay_timeout_s), 1.0),
            wechat_app_id=_env_str("WECHAT_APP_ID"),
            wechat_app_secret=_env_str("WECHAT_APP_SECRET"),
            wechat_author=_env_str("WECHAT_AUTHOR"),
            wechat_default_thumb_media_id=_env_str("WECHAT_DEFAULT_THUMB_MEDIA_ID"),
            wechat_api_base=_env_str("WECHAT_API_BASE", d.wechat_api_base).rstrip("/"),
            wechat_timeout_s=max(_env_float("WECHAT_TIMEOUT_S", d.wechat_timeout_s), 1.0),
            pipeline_timeout_s=max(_env_float("PIPELINE_TIMEOUT_S", d.pipeline_timeout_s), 1.0),
            app_env=_env_str("APP_ENV", d.app_env),
        )
