from __future__ import annotations

import json
import logging
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from provider_result import ErrorKind, ProviderError, ProviderResult
from usage import coerce_count, estimate_exchange, normalize


LOG = logging.getLogger(__name__)

ONE_SHOT_USAGE_PROMPT = "What is 1+1?"


def usage_probe_prompt(prompt_count: int) -> str:
    return f"This is prompt #{prompt_count} in our persistent session. What is 2+2?"


@dataclass(frozen=True)
class ClaudeCliConfig:
    command: str = "claude"
    args: list[str] = field(default_factory=list)
    prompt_mode: str = "arg"
    # None keeps the CLI call unbounded.
    timeout_seconds: int | None = None
    max_output_bytes: int = 4 * 1024 * 1024


def _has_flag(args: list[str], flag: str) -> bool:
    if flag in args:
        return True
    prefix = flag + "="
    return any(arg.startswith(prefix) for arg in args)


class ClaudeSession:
    """Lock-guarded pseudo-session around the local Claude CLI.

    The CLI itself is stateless between calls; this object keeps the prompt
    counter and token accumulators that make repeated ``invoke`` calls look
    like one session. ``invoke`` holds the lock for the full CLI call, so
    concurrent stateful calls are serialized.
    """

    def __init__(self, config: ClaudeCliConfig | None = None, *, clock: Callable[[], float] = time.time) -> None:
        self.config = config or ClaudeCliConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self.started_at = int(clock())
        self.active = False
        self.prompt_count = 0
        self.cumulative_input_tokens = 0
        self.cumulative_output_tokens = 0
        self.last_usage: dict[str, Any] | None = None

    def _build_command(self, prompt: str, *, json_output: bool) -> list[str]:
        cmd = [self.config.command, *self.config.args]
        if not any(arg in {"-p", "--print"} for arg in cmd):
            cmd.append("--print")
        if json_output and not _has_flag(cmd, "--output-format"):
            cmd.extend(["--output-format", "json"])
        if self.config.prompt_mode == "arg":
            cmd.append(prompt)
        return cmd

    def _run_process(self, command: list[str], *, prompt: str) -> tuple[int, str, str]:
        stdin_payload = prompt if self.config.prompt_mode == "stdin" else None
        try:
            proc = subprocess.Popen(
                command,
                stdin=subprocess.PIPE if stdin_payload is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            raise ProviderError(
                ErrorKind.PROCESS_UNAVAILABLE,
                f"Failed to execute {self.config.command} command. "
                f"Make sure Claude Code CLI is installed and accessible. ({exc})",
            ) from exc

        try:
            stdout, stderr = proc.communicate(stdin_payload, timeout=self.config.timeout_seconds)
        except subprocess.TimeoutExpired as exc:
            proc.kill()
            proc.communicate()
            raise ProviderError(
                ErrorKind.TRANSPORT_FAILURE,
                f"Claude CLI timed out after {self.config.timeout_seconds}s",
            ) from exc

        stdout = stdout or ""
        if len(stdout.encode("utf-8")) > self.config.max_output_bytes:
            raise ProviderError(
                ErrorKind.MALFORMED_RESPONSE,
                f"Claude CLI output exceeded {self.config.max_output_bytes} bytes",
            )
        return proc.returncode, stdout, stderr or ""

    def _run_json(self, prompt: str) -> Any:
        returncode, stdout, stderr = self._run_process(self._build_command(prompt, json_output=True), prompt=prompt)
        if returncode != 0:
            raise ProviderError(ErrorKind.TRANSPORT_FAILURE, f"Claude CLI command failed: {stderr.strip()}")
        text = stdout.strip()
        if not text:
            raise ProviderError(ErrorKind.MALFORMED_RESPONSE, "Claude CLI returned empty response")
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProviderError(
                ErrorKind.MALFORMED_RESPONSE,
                f"Claude CLI response could not be parsed as JSON: {text[:1000]}",
            ) from exc

    def _session_info(self) -> dict[str, Any]:
        return {
            "prompt_count": self.prompt_count,
            "session_duration_seconds": max(0, int(self._clock()) - self.started_at),
            "total_accumulated_output_tokens": self.cumulative_output_tokens,
            "session_start_timestamp": self.started_at,
        }

    def _apply_usage(self, usage: dict[str, Any]) -> dict[str, Any]:
        input_tokens = coerce_count(usage.get("input_tokens"))
        if input_tokens is not None:
            self.cumulative_input_tokens = input_tokens
        output_tokens = coerce_count(usage.get("output_tokens"))
        if output_tokens is not None:
            self.cumulative_output_tokens += output_tokens
        self.last_usage = dict(usage)
        return {
            "input_tokens": usage.get("input_tokens", 0),
            "output_tokens": usage.get("output_tokens", 0),
            "cache_creation_input_tokens": usage.get("cache_creation_input_tokens", 0),
            "cache_read_input_tokens": usage.get("cache_read_input_tokens", 0),
            "service_tier": usage.get("service_tier", "standard"),
            "session_info": self._session_info(),
        }

    def invoke(self, prompt_text: str | None = None) -> ProviderResult:
        with self._lock:
            if not self.active:
                LOG.info("Starting new persistent Claude CLI session...")
                self.prompt_count = 0
                self.cumulative_input_tokens = 0
                self.cumulative_output_tokens = 0
                self.active = True

            # Counts attempts, not successes.
            self.prompt_count += 1
            prompt = prompt_text if prompt_text is not None else usage_probe_prompt(self.prompt_count)
            LOG.info("Sending prompt #%s to Claude CLI persistent session...", self.prompt_count)

            try:
                decoded = self._run_json(prompt)
            except ProviderError as exc:
                LOG.warning("Claude CLI session call failed (%s): %s", exc.kind.value, exc)
                return ProviderResult.failed(exc)

            usage = decoded.get("usage") if isinstance(decoded, dict) else None
            if isinstance(usage, dict):
                LOG.debug("Found usage data in Claude CLI response: %s", usage)
                details = self._apply_usage(usage)
                return ProviderResult.ok("", normalize(usage), details)

            details = {
                "connection_status": "connected",
                "session_info": self._session_info(),
                "note": "Claude CLI is connected and working, but usage data is not available through the CLI",
            }
            LOG.info("Claude CLI persistent session active, no usage data in response.")
            return ProviderResult.ok("", None, details)

    def invoke_once(self, prompt_text: str = ONE_SHOT_USAGE_PROMPT) -> ProviderResult:
        LOG.info("Using fallback one-time Claude CLI request...")
        try:
            decoded = self._run_json(prompt_text)
        except ProviderError as exc:
            return ProviderResult.failed(exc)
        usage = decoded.get("usage") if isinstance(decoded, dict) else None
        if not isinstance(usage, dict):
            return ProviderResult.failed(ProviderError(ErrorKind.MALFORMED_RESPONSE, "Could not extract usage data"))
        return ProviderResult.ok("", normalize(usage), dict(usage))

    def query_usage(self) -> dict[str, Any]:
        result = self.invoke()
        if result.success:
            return {"success": True, "usage": result.details}

        LOG.info("Persistent session failed, falling back to one-time request: %s", result.error)
        fallback = self.invoke_once()
        if fallback.success:
            return {"success": True, "usage": fallback.details}
        return {"success": False, "error": f"Failed to get Claude CLI usage: {fallback.error}"}

    def is_available(self) -> bool:
        return shutil.which(self.config.command) is not None

    def complete(self, prompt: str) -> ProviderResult:
        if not self.is_available():
            return ProviderResult.failed(
                ProviderError(
                    ErrorKind.PROCESS_UNAVAILABLE,
                    "Claude CLI not installed. To use this feature, install the Claude CLI or use the Gemini API instead.",
                )
            )

        LOG.info("Executing Claude Code CLI analysis...")
        try:
            returncode, stdout, stderr = self._run_process(
                self._build_command(prompt, json_output=False),
                prompt=prompt,
            )
        except ProviderError as exc:
            return ProviderResult.failed(exc)

        if returncode != 0:
            return ProviderResult.failed(
                ProviderError(ErrorKind.TRANSPORT_FAILURE, f"Claude Code CLI failed: {stderr.strip()}")
            )

        analysis = stdout.strip()
        if not analysis:
            return ProviderResult.failed(
                ProviderError(ErrorKind.MALFORMED_RESPONSE, "Claude Code CLI returned empty response")
            )

        LOG.info("Claude Code CLI analysis completed successfully")
        return ProviderResult.ok(analysis, estimate_exchange(prompt, analysis))

    def status(self) -> dict[str, Any]:
        busy = not self._lock.acquire(timeout=0.5)
        try:
            return {
                "active": self.active,
                "busy": busy,
                "command": self.config.command,
                "available": self.is_available(),
                "cumulative_input_tokens": self.cumulative_input_tokens,
                "last_usage": dict(self.last_usage) if self.last_usage else None,
                **self._session_info(),
            }
        finally:
            if not busy:
                self._lock.release()
