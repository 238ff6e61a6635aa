from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from usage import TokenUsage


class ErrorKind(str, Enum):
    CONFIG_MISSING = "config_missing"
    PROCESS_UNAVAILABLE = "process_unavailable"
    TRANSPORT_FAILURE = "transport_failure"
    UPSTREAM_STATUS = "upstream_status"
    MALFORMED_RESPONSE = "malformed_response"
    PARSE_FAILURE = "parse_failure"
    VALIDATION_FAILURE = "validation_failure"


def now_rfc3339() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProviderError(RuntimeError):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status_code: int | None = None,
        error_type: str = "",
        raw_body: str | None = None,
        endpoint: str = "",
        request_size: int = 0,
        timestamp: str = "",
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        self.raw_body = raw_body
        self.endpoint = endpoint
        self.request_size = request_size
        self.timestamp = timestamp or now_rfc3339()

    @classmethod
    def upstream_status(
        cls,
        *,
        status_code: int,
        error_type: str,
        raw_body: str,
        endpoint: str,
        request_size: int,
    ) -> ProviderError:
        return cls(
            ErrorKind.UPSTREAM_STATUS,
            f"Gemini API {error_type} ({status_code}): {raw_body or 'No details'}",
            status_code=status_code,
            error_type=error_type,
            raw_body=raw_body,
            endpoint=endpoint,
            request_size=request_size,
        )

    def details(self) -> dict[str, Any] | None:
        if self.kind is not ErrorKind.UPSTREAM_STATUS:
            return None
        return {
            "status_code": self.status_code,
            "error_type": self.error_type,
            "raw_response": self.raw_body,
            "request_size": self.request_size,
            "timestamp": self.timestamp,
            "api_endpoint": self.endpoint,
        }

    def __str__(self) -> str:
        return self.message


@dataclass
class ProviderResult:
    success: bool
    text: str | None = None
    usage: TokenUsage | None = None
    error: ProviderError | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, text: str, usage: TokenUsage | None = None, details: dict[str, Any] | None = None) -> ProviderResult:
        return cls(success=True, text=text, usage=usage, details=dict(details or {}))

    @classmethod
    def failed(cls, error: ProviderError, usage: TokenUsage | None = None) -> ProviderResult:
        return cls(success=False, error=error, usage=usage)

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None
