from __future__ import annotations

from typing import Any, Optional


class PipelineError(Exception):
    """Base error carrying the HTTP status the API layer should report."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        return {"message": str(self), "error_type": type(self).__name__}


class NavigationTimeout(PipelineError):
    status_code = 504


class NavigationError(PipelineError):
    status_code = 502


class ExtractionEmpty(PipelineError):
    status_code = 404


class ExtractionFailed(PipelineError):
    status_code = 422


class RelayFailed(PipelineError):
    status_code = 502

    def __init__(self, message: str, url: str = "", attempts: int = 0):
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class CredentialRejected(PipelineError):
    """Platform refused the access token (expired or revoked)."""

    status_code = 401

    def __init__(self, message: str, payload: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.payload = payload or {}


class PlatformError(PipelineError):
    """Platform answered with a non-zero error code."""

    status_code = 502

    def __init__(self, message: str, payload: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.payload = payload or {}


class PublishFailed(PipelineError):
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        image_index: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.stage = stage
        self.image_index = image_index
        self.payload = payload or {}

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out.update(
            {
                "success": False,
                "stage": self.stage,
                "image_index": self.image_index,
                "platform_error": self.payload or None,
            }
        )
        return out
