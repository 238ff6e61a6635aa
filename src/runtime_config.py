from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml


LOG = logging.getLogger(__name__)

API_KEY_PLACEHOLDERS = frozenset({"", "dummy_key", "get-key-at-aistudio.google.com"})

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class GatewayConfig:
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_timeout_seconds: int = 60
    claude_command: str = "claude"
    claude_args: list[str] = field(default_factory=list)
    claude_prompt_mode: str = "arg"
    claude_timeout_seconds: int | None = None
    claude_max_output_bytes: int = 4 * 1024 * 1024
    search_default_max_results: int = 30
    http_enabled: bool = True
    http_host: str = "127.0.0.1"
    http_port: int = 8081
    mcp_enabled: bool = True
    watch_config: bool = True

    @property
    def gemini_api_key_present(self) -> bool:
        return self.gemini_api_key.strip() not in API_KEY_PLACEHOLDERS


def _section(raw: Mapping[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    if not isinstance(value, dict):
        return {}
    return value


def _env_flag(environ: Mapping[str, str], name: str) -> bool | None:
    value = environ.get(name, "").strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return None


def load_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    return raw or {}


def build_config(raw: Mapping[str, Any], environ: Mapping[str, str] | None = None) -> GatewayConfig:
    env = os.environ if environ is None else environ
    gemini = _section(raw, "gemini")
    claude = _section(raw, "claude")
    search = _section(raw, "search")
    http = _section(raw, "http")
    mcp = _section(raw, "mcp")

    api_key = env.get("GEMINI_API_KEY", "").strip() or str(gemini.get("api_key", "") or "").strip()

    claude_timeout_raw = claude.get("timeout_seconds")
    claude_timeout = int(claude_timeout_raw) if claude_timeout_raw else None

    prompt_mode = str(claude.get("prompt_mode", "arg")).strip().lower()
    if prompt_mode not in {"arg", "stdin"}:
        LOG.warning("Unsupported claude.prompt_mode %r; using 'arg'.", prompt_mode)
        prompt_mode = "arg"

    http_enabled = _env_flag(env, "AI_GATEWAY_HTTP")
    if http_enabled is None:
        http_enabled = bool(http.get("enabled", True))

    return GatewayConfig(
        gemini_api_key=api_key,
        gemini_model=str(gemini.get("model", "gemini-2.5-flash")),
        gemini_base_url=str(gemini.get("base_url", "https://generativelanguage.googleapis.com/v1beta")).rstrip("/"),
        gemini_timeout_seconds=int(gemini.get("timeout_seconds", 60)),
        claude_command=str(claude.get("command", "claude")),
        claude_args=[str(arg) for arg in claude.get("args", []) or []],
        claude_prompt_mode=prompt_mode,
        claude_timeout_seconds=claude_timeout,
        claude_max_output_bytes=int(claude.get("max_output_bytes", 4 * 1024 * 1024)),
        search_default_max_results=max(0, int(search.get("default_max_results", 30))),
        http_enabled=http_enabled,
        http_host=str(http.get("host", "127.0.0.1")),
        http_port=int(http.get("port", 8081)),
        mcp_enabled=bool(mcp.get("enabled", True)),
        watch_config=bool(raw.get("watch_config", True)),
    )


class ConfigHolder:
    """Process-wide configuration, replaced as a whole value on reload."""

    def __init__(self, config: GatewayConfig, config_path: Path | None = None) -> None:
        self._lock = threading.Lock()
        self._config = config
        self._config_path = config_path

    @classmethod
    def from_path(cls, config_path: Path) -> ConfigHolder:
        return cls(build_config(load_config(config_path)), config_path=config_path)

    @property
    def config_path(self) -> Path | None:
        return self._config_path

    def current(self) -> GatewayConfig:
        with self._lock:
            return self._config

    def replace(self, config: GatewayConfig) -> None:
        with self._lock:
            self._config = config

    def reload(self) -> GatewayConfig:
        if self._config_path is None:
            return self.current()
        try:
            config = build_config(load_config(self._config_path))
        except (OSError, yaml.YAMLError, ValueError, TypeError) as exc:
            LOG.error("Failed to reload configuration from %s: %s", self._config_path, exc)
            return self.current()
        self.replace(config)
        LOG.info("Configuration reloaded from %s", self._config_path)
        return config
