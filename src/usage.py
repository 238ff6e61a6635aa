from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping


DEFAULT_FALLBACK_COMPLETION_TOKENS = 50

# Provider-specific spellings, first match wins.
_PROMPT_KEYS = ("prompt_tokens", "promptTokenCount", "input_tokens", "inputTokens", "promptTokens")
_COMPLETION_KEYS = ("completion_tokens", "candidatesTokenCount", "output_tokens", "outputTokens", "completionTokens")
_TOTAL_KEYS = ("total_tokens", "totalTokenCount", "totalTokens")


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None

    @property
    def is_empty(self) -> bool:
        return self.prompt_tokens is None and self.completion_tokens is None and self.total_tokens is None

    def to_dict(self) -> dict[str, int | None]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


def coerce_count(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        count = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if count < 0:
        return None
    return count


def _pick(payload: Mapping[str, Any], keys: tuple[str, ...]) -> int | None:
    for key in keys:
        if key in payload:
            value = coerce_count(payload.get(key))
            if value is not None:
                return value
    return None


def normalize(provider_usage: Any) -> TokenUsage:
    """Map a provider usage object onto ``TokenUsage``.

    Fields the provider did not report stay ``None``; a missing count must not
    read as zero usage.
    """
    if isinstance(provider_usage, TokenUsage):
        return provider_usage
    if not isinstance(provider_usage, Mapping):
        return TokenUsage()
    return TokenUsage(
        prompt_tokens=_pick(provider_usage, _PROMPT_KEYS),
        completion_tokens=_pick(provider_usage, _COMPLETION_KEYS),
        total_tokens=_pick(provider_usage, _TOTAL_KEYS),
    )


def estimate_tokens(text: str) -> int:
    # Rough estimate: 4 chars per token.
    return len(text or "") // 4


def estimate(prompt_text: str, fallback_completion_tokens: int = DEFAULT_FALLBACK_COMPLETION_TOKENS) -> TokenUsage:
    prompt_tokens = estimate_tokens(prompt_text)
    completion_tokens = max(0, int(fallback_completion_tokens))
    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )


def estimate_exchange(prompt_text: str, output_text: str) -> TokenUsage:
    prompt_tokens = estimate_tokens(prompt_text)
    completion_tokens = estimate_tokens(output_text)
    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )
