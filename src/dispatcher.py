from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from claude_session import ClaudeSession
from gemini import GeminiClient
from prompts import build_data_analysis_prompt
from provider_result import ErrorKind, ProviderError, ProviderResult
from runtime_config import ConfigHolder
from usage import estimate


LOG = logging.getLogger(__name__)

# No outbound call was made for these, so there is nothing to estimate.
_NO_ESTIMATE_KINDS = {ErrorKind.CONFIG_MISSING, ErrorKind.VALIDATION_FAILURE}


class Provider(str, Enum):
    GEMINI = "gemini"
    CLAUDE = "claude"

    @classmethod
    def parse(cls, tag: Any) -> Provider:
        if isinstance(tag, cls):
            return tag
        try:
            return cls(tag)
        except ValueError:
            raise ProviderError(
                ErrorKind.VALIDATION_FAILURE,
                f"Invalid provider: {tag}. Use 'gemini' or 'claude'",
            ) from None


class ProviderDispatcher:
    def __init__(self, config: ConfigHolder, gemini: GeminiClient, claude: ClaudeSession) -> None:
        self.config = config
        self.gemini = gemini
        self.claude = claude

    def _call_gemini(self, prompt: str) -> ProviderResult:
        current = self.config.current()
        if not current.gemini_api_key_present:
            return ProviderResult.failed(ProviderError(ErrorKind.CONFIG_MISSING, "Gemini API key not configured"))
        return self.gemini.generate(current.gemini_api_key, prompt)

    def call(self, provider_tag: Any, prompt_text: str, context: Any = None) -> ProviderResult:
        try:
            provider = Provider.parse(provider_tag)
        except ProviderError as exc:
            return ProviderResult.failed(exc)

        prompt = prompt_text if context is None else build_data_analysis_prompt(prompt_text, context)
        if provider is Provider.GEMINI:
            result = self._call_gemini(prompt)
        elif provider is Provider.CLAUDE:
            result = self.claude.complete(prompt)
        else:  # pragma: no cover - Provider is closed
            raise AssertionError(provider)

        if not result.success and result.usage is None and result.error_kind not in _NO_ESTIMATE_KINDS:
            result.usage = estimate(prompt_text)
        return result

    def analyze(self, provider_tag: Any, prompt_text: str, context: Any = None) -> dict[str, Any]:
        result = self.call(provider_tag, prompt_text, context)
        usage = result.usage.to_dict() if result.usage is not None else None
        if result.success:
            return {
                "success": True,
                "analysis": result.text,
                "error": None,
                "error_details": None,
                "token_usage": usage,
            }

        error = result.error
        if error is None:
            error = ProviderError(ErrorKind.TRANSPORT_FAILURE, "Provider call failed")
        message = str(error)
        if provider_tag == Provider.CLAUDE.value and error.kind is not ErrorKind.VALIDATION_FAILURE:
            message = f"Claude Code CLI execution failed: {message}"
        LOG.warning("Analysis via %s failed (%s): %s", provider_tag, error.kind.value, message)
        return {
            "success": False,
            "analysis": None,
            "error": message,
            "error_details": error.details(),
            "error_kind": error.kind.value,
            "token_usage": usage,
        }
