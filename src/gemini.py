from __future__ import annotations

import http.client
import json
import logging
import socket
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from provider_result import ErrorKind, ProviderError, ProviderResult
from usage import TokenUsage, normalize
from utils.json_path import JsonPath


LOG = logging.getLogger(__name__)

CONNECTION_TEST_PROMPT = "Hello, please respond with 'API test successful'"

_ERROR_TYPES = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    429: "Rate Limited",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
}


def classify_status(status_code: int) -> str:
    return _ERROR_TYPES.get(status_code, "Unknown Error")


def mask_api_key(api_key: str) -> str:
    if len(api_key) >= 8:
        return f"{api_key[:4]}...{api_key[-4:]}"
    return "****"


def redact_endpoint(url: str) -> str:
    parts = urllib.parse.urlsplit(url)
    query = urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
    redacted = "&".join(f"{k}=***" if k == "key" else f"{k}={v}" for k, v in query)
    return urllib.parse.urlunsplit((parts.scheme, parts.netloc, parts.path, redacted, parts.fragment))


@dataclass(frozen=True)
class GeminiConfig:
    model: str = "gemini-2.5-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout_seconds: int = 60
    temperature: float = 0.3
    top_k: int = 40
    top_p: float = 0.95
    max_output_tokens: int = 8192


class GeminiClient:
    def __init__(self, config: GeminiConfig | None = None) -> None:
        self.config = config or GeminiConfig()

    def _endpoint(self, api_key: str) -> str:
        model = urllib.parse.quote(self.config.model, safe="-._")
        key = urllib.parse.quote(api_key, safe="")
        return f"{self.config.base_url}/models/{model}:generateContent?key={key}"

    def _build_body(self, prompt: str) -> dict[str, Any]:
        return {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                    ]
                }
            ],
            "generationConfig": {
                "temperature": self.config.temperature,
                "topK": self.config.top_k,
                "topP": self.config.top_p,
                "maxOutputTokens": self.config.max_output_tokens,
            },
        }

    def _post(self, url: str, raw_body: bytes) -> tuple[int, str]:
        req = urllib.request.Request(
            url,
            data=raw_body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.config.timeout_seconds) as resp:
                return int(resp.status), resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            try:
                error_text = exc.read().decode("utf-8", errors="replace")
            except OSError:
                error_text = "Unable to read error response"
            return int(exc.code), error_text
        except (socket.timeout, TimeoutError) as exc:
            raise ProviderError(
                ErrorKind.TRANSPORT_FAILURE,
                f"Gemini API request timed out after {self.config.timeout_seconds}s",
            ) from exc
        except http.client.HTTPException as exc:
            raise ProviderError(
                ErrorKind.TRANSPORT_FAILURE,
                f"Gemini API connection dropped while reading the response: {exc!r}",
            ) from exc
        except (urllib.error.URLError, OSError) as exc:
            reason = getattr(exc, "reason", exc)
            if isinstance(reason, (socket.timeout, TimeoutError)):
                raise ProviderError(
                    ErrorKind.TRANSPORT_FAILURE,
                    f"Gemini API request timed out after {self.config.timeout_seconds}s",
                ) from exc
            raise ProviderError(
                ErrorKind.TRANSPORT_FAILURE,
                f"Failed to make request to Gemini API: {reason}",
            ) from exc

    def _request(self, api_key: str, prompt: str) -> tuple[str, TokenUsage | None]:
        url = self._endpoint(api_key)
        safe_url = redact_endpoint(url)
        raw_body = json.dumps(self._build_body(prompt)).encode("utf-8")
        request_size = len(raw_body)

        LOG.info("Making Gemini API request - Size: %s bytes, URL: %s", request_size, safe_url)
        started = time.monotonic()
        status_code, response_text = self._post(url, raw_body)
        LOG.info("Gemini API response - Status: %s, Duration: %.2fs", status_code, time.monotonic() - started)

        if not 200 <= status_code < 300:
            error = ProviderError.upstream_status(
                status_code=status_code,
                error_type=classify_status(status_code),
                raw_body=response_text,
                endpoint=safe_url,
                request_size=request_size,
            )
            LOG.warning("Gemini API error details: %s", error.details())
            raise error

        try:
            payload = json.loads(response_text)
        except json.JSONDecodeError as exc:
            raise ProviderError(
                ErrorKind.MALFORMED_RESPONSE,
                f"Failed to parse Gemini API response: {exc}",
                raw_body=response_text,
            ) from exc

        cursor = JsonPath(payload).key("candidates").index(0).key("content").key("parts").index(0).key("text")
        text = cursor.text()
        if text is None:
            pretty = json.dumps(payload, indent=2, ensure_ascii=False)
            raise ProviderError(
                ErrorKind.MALFORMED_RESPONSE,
                f"Invalid Gemini API response format (missing {cursor.missing_at or cursor.path}). Response: {pretty}",
                raw_body=pretty,
            )
        LOG.info("Gemini API text extracted successfully - Length: %s chars", len(text))

        usage_metadata = JsonPath(payload).key("usageMetadata").mapping()
        usage = normalize(usage_metadata) if usage_metadata is not None else None
        if usage is not None:
            LOG.info(
                "Token usage - Prompt: %s, Completion: %s, Total: %s",
                usage.prompt_tokens,
                usage.completion_tokens,
                usage.total_tokens,
            )
        return text, usage

    def generate(self, api_key: str, prompt: str) -> ProviderResult:
        try:
            text, usage = self._request(api_key, prompt)
        except ProviderError as exc:
            LOG.error("Gemini API Error: %s", exc.kind.value)
            return ProviderResult.failed(exc)
        return ProviderResult.ok(text, usage)

    def test_connection(self, api_key: str, key_present: bool) -> dict[str, Any]:
        if not key_present:
            return {
                "success": False,
                "message": "Gemini API key not configured",
                "api_key_present": False,
                "api_key_preview": None,
                "error": "Please set GEMINI_API_KEY in the environment or gemini.api_key in config.yaml",
            }

        preview = mask_api_key(api_key)
        result = self.generate(api_key, CONNECTION_TEST_PROMPT)
        if not result.success:
            return {
                "success": False,
                "message": "Gemini API key present but API call failed",
                "api_key_present": True,
                "api_key_preview": preview,
                "error": str(result.error),
            }

        response = result.text or ""
        if "api test successful" in response.lower():
            return {
                "success": True,
                "message": "Gemini API connection successful",
                "api_key_present": True,
                "api_key_preview": preview,
                "error": None,
            }
        return {
            "success": True,
            "message": "Gemini API responded but with unexpected content",
            "api_key_present": True,
            "api_key_preview": preview,
            "error": f"Expected test response, got: {response[:100]}",
        }
