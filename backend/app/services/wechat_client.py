from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Optional

import requests

from app.core.config import Settings
from app.domain.errors import CredentialRejected, PlatformError
from app.domain.note import DraftArticle, PublishToken

logger = logging.getLogger("xhs-draft-relay")

# invalid credential / invalid access_token / access_token expired
CREDENTIAL_ERRCODES = {40001, 40014, 42001}


class TokenCache:
    """Process-wide access token with explicit expiry."""

    def __init__(self, clock: Callable[[], float] = time.time, margin_s: float = 300.0):
        self._clock = clock
        self._margin_s = margin_s
        self._token: Optional[PublishToken] = None
        self._lock = threading.Lock()

    def get(self) -> Optional[PublishToken]:
        with self._lock:
            if self._token is not None and self._token.is_valid(self._clock()):
                return self._token
            return None

    def put(self, value: str, expires_in: float) -> PublishToken:
        ttl = max(float(expires_in) - self._margin_s, 0.0)
        token = PublishToken(value=value, expires_at=self._clock() + ttl)
        with self._lock:
            self._token = token
        return token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None


class WeChatClient:
    def __init__(self, settings: Settings, *, token_cache: Optional[TokenCache] = None, http=None):
        self.settings = settings
        self.base = settings.wechat_api_base
        self.timeout = settings.wechat_timeout_s
        self.tokens = token_cache or TokenCache()
        self.http = http or requests.Session()
        self._refresh_lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return self.settings.wechat_configured

    def _check(self, resp, what: str) -> dict[str, Any]:
        try:
            payload = resp.json()
        except ValueError as exc:
            raise PlatformError(f"{what}: non-JSON response (status={resp.status_code})") from exc
        if not isinstance(payload, dict):
            raise PlatformError(f"{what}: unexpected response {payload!r}")
        errcode = int(payload.get("errcode") or 0)
        if errcode in CREDENTIAL_ERRCODES:
            raise CredentialRejected(f"{what}: {payload.get('errmsg') or errcode}", payload=payload)
        if errcode != 0:
            raise PlatformError(f"{what}: errcode={errcode} {payload.get('errmsg') or ''}".strip(), payload=payload)
        return payload

    def fetch_token(self) -> PublishToken:
        if not self.configured:
            raise CredentialRejected("WeChat not configured (need WECHAT_APP_ID + WECHAT_APP_SECRET)")
        resp = self.http.get(
            f"{self.base}/cgi-bin/token",
            params={
                "grant_type": "client_credential",
                "appid": self.settings.wechat_app_id,
                "secret": self.settings.wechat_app_secret,
            },
            timeout=self.timeout,
        )
        payload = self._check(resp, "token")
        value = str(payload.get("access_token") or "")
        if not value:
            raise CredentialRejected("token: response has no access_token", payload=payload)
        token = self.tokens.put(value, payload.get("expires_in") or 7200)
        logger.info("wechat access token refreshed (expires_at=%.0f)", token.expires_at)
        return token

    def access_token(self) -> str:
        token = self.tokens.get()
        if token is not None:
            return token.value
        with self._refresh_lock:
            token = self.tokens.get()
            if token is None:
                token = self.fetch_token()
        return token.value

    def upload_image(self, data: bytes, *, filename: str, content_type: str) -> dict[str, Any]:
        """Permanent image material; returns ``{"media_id", "url"}``."""
        resp = self.http.post(
            f"{self.base}/cgi-bin/material/add_material",
            params={"access_token": self.access_token(), "type": "image"},
            files={"media": (filename, data, content_type)},
            timeout=self.timeout,
        )
        payload = self._check(resp, "upload")
        if not payload.get("media_id"):
            raise PlatformError("upload: response has no media_id", payload=payload)
        return payload

    def add_draft(self, article: DraftArticle) -> str:
        # ensure_ascii=False: the draft API stores \uXXXX escapes literally.
        body = json.dumps({"articles": [article.to_payload()]}, ensure_ascii=False).encode("utf-8")
        resp = self.http.post(
            f"{self.base}/cgi-bin/draft/add",
            params={"access_token": self.access_token()},
            data=body,
            headers={"Content-Type": "application/json; charset=utf-8"},
            timeout=self.timeout,
        )
        payload = self._check(resp, "draft")
        media_id = str(payload.get("media_id") or "")
        if not media_id:
            raise PlatformError("draft: response has no media_id", payload=payload)
        return media_id
