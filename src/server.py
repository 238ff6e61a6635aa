from __future__ import annotations

import atexit
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastmcp import FastMCP

from claude_session import ClaudeCliConfig, ClaudeSession
from config_watch import ConfigWatcher
from dispatcher import Provider, ProviderDispatcher
from gemini import GeminiClient, GeminiConfig
from http_api import start_api_server
from projects import SearchFilters, parse_projects
from provider_result import ErrorKind
from runtime_config import ConfigHolder, GatewayConfig
from search import SearchPipeline, SearchResult


LOG = logging.getLogger(__name__)


def _require_prompt(payload: dict[str, Any]) -> str:
    prompt = payload.get("prompt")
    if not isinstance(prompt, str):
        raise ValueError("prompt must be a string")
    return prompt


def _gemini_config(current: GatewayConfig) -> GeminiConfig:
    return GeminiConfig(
        model=current.gemini_model,
        base_url=current.gemini_base_url,
        timeout_seconds=current.gemini_timeout_seconds,
    )


def _claude_config(current: GatewayConfig) -> ClaudeCliConfig:
    return ClaudeCliConfig(
        command=current.claude_command,
        args=list(current.claude_args),
        prompt_mode=current.claude_prompt_mode,
        timeout_seconds=current.claude_timeout_seconds,
        max_output_bytes=current.claude_max_output_bytes,
    )


class GatewayEngine:
    def __init__(self, config: ConfigHolder, *, claude_session: ClaudeSession | None = None) -> None:
        self.config = config
        current = config.current()
        self.gemini = GeminiClient(_gemini_config(current))
        self.claude = claude_session or ClaudeSession(_claude_config(current))
        self.dispatcher = ProviderDispatcher(config, self.gemini, self.claude)
        self.pipeline = SearchPipeline(self.dispatcher)
        self._http_server: Any | None = None
        self._watcher: ConfigWatcher | None = None
        self._stop_lock = threading.Lock()
        self._stopped = False
        self._shutdown_event = threading.Event()

    def apply_config(self, current: GatewayConfig) -> None:
        # HTTP and MCP settings only take effect on restart.
        self.gemini.config = _gemini_config(current)
        if isinstance(self.claude, ClaudeSession):
            self.claude.config = _claude_config(current)
        LOG.info(
            "Provider settings refreshed (gemini model=%s, claude command=%s)",
            current.gemini_model,
            current.claude_command,
        )

    def start(self) -> None:
        self._start_watcher()
        self._start_http()

    def _start_watcher(self) -> None:
        config_path = self.config.config_path
        if config_path is None or self._watcher is not None or not self.config.current().watch_config:
            return
        self._watcher = ConfigWatcher(self.config, config_path, on_reload=self.apply_config)
        self._watcher.start()

    def _start_http(self) -> None:
        current = self.config.current()
        if not current.http_enabled or self._http_server is not None:
            return
        try:
            self._http_server = start_api_server(
                host=current.http_host,
                port=current.http_port,
                get_routes={
                    "/api/health": self.health,
                    "/api/config/current": self.current_config,
                    "/api/config/gemini": self.test_gemini_connection,
                    "/api/claude/usage/cli": self.claude_usage,
                },
                post_routes={
                    "/api/gemini/analyze": self.http_analyze_gemini,
                    "/api/claude/analyze": self.http_analyze_claude,
                    "/api/search": self.http_search,
                    "/api/config/reload": self.http_reload_config,
                },
            )
            LOG.info("AI gateway HTTP API running at http://%s:%s", current.http_host, current.http_port)
        except OSError as exc:
            LOG.warning("HTTP API did not start on %s:%s (%s)", current.http_host, current.http_port, exc)

    def stop(self) -> None:
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True
            self._shutdown_event.set()
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
        if self._http_server is not None:
            self._http_server.shutdown()
            self._http_server.server_close()
            self._http_server = None

    def wait(self) -> None:
        self._shutdown_event.wait()

    @property
    def http_address(self) -> tuple[str, int] | None:
        if self._http_server is None:
            return None
        host, port = self._http_server.server_address[:2]
        return str(host), int(port)

    def health(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "providers": [provider.value for provider in Provider],
        }

    def current_config(self) -> dict[str, Any]:
        current: GatewayConfig = self.config.current()
        return {
            "server_host": current.http_host,
            "server_port": current.http_port,
            "gemini_api_key_present": current.gemini_api_key_present,
            "gemini_model": current.gemini_model,
            "claude_command": current.claude_command,
            "claude_cli_available": self.claude.is_available(),
        }

    def status(self) -> dict[str, Any]:
        return {
            **self.current_config(),
            "claude_session": self.claude.status(),
        }

    def reload_config(self) -> dict[str, Any]:
        self.apply_config(self.config.reload())
        return {"success": True, **self.current_config()}

    def analyze(self, provider: str, prompt: str, context: Any = None) -> dict[str, Any]:
        return self.dispatcher.analyze(provider, prompt, context)

    def test_gemini_connection(self) -> dict[str, Any]:
        current = self.config.current()
        return self.gemini.test_connection(current.gemini_api_key, current.gemini_api_key_present)

    def claude_usage(self) -> dict[str, Any]:
        return self.claude.query_usage()

    def run_search(
        self,
        query: Any,
        provider: Any = Provider.GEMINI.value,
        filters: Any = None,
        projects: Any = None,
    ) -> dict[str, Any]:
        default_max = self.config.current().search_default_max_results
        try:
            search_filters = SearchFilters.from_dict(filters, default_max_results=default_max)
            all_projects = parse_projects(projects)
        except ValueError as exc:
            result = SearchResult.failed(ErrorKind.VALIDATION_FAILURE, str(exc))
        else:
            result = self.pipeline.search(query if isinstance(query, str) else "", provider, search_filters, all_projects)
        return result.to_dict()

    def http_analyze_gemini(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self.analyze(Provider.GEMINI.value, _require_prompt(payload), payload.get("data_context"))

    def http_analyze_claude(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self.analyze(Provider.CLAUDE.value, _require_prompt(payload), payload.get("dataset_info"))

    def http_search(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self.run_search(
            query=payload.get("query"),
            provider=payload.get("provider") or Provider.GEMINI.value,
            filters=payload.get("filters"),
            projects=payload.get("projects"),
        )

    def http_reload_config(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self.reload_config()


def resolve_server_home() -> Path:
    return Path(os.environ.get("AI_GATEWAY_HOME", Path(__file__).resolve().parents[1].as_posix())).resolve()


def build_mcp(engine: GatewayEngine) -> FastMCP:
    mcp = FastMCP("AI_Gateway")

    @mcp.tool(name="gateway.analyze")
    def tool_analyze(prompt: str, provider: str = "gemini", context: dict | list | None = None) -> dict:
        return engine.analyze(provider, prompt, context)

    @mcp.tool(name="gateway.test_connection")
    def tool_test_connection() -> dict:
        return engine.test_gemini_connection()

    @mcp.tool(name="gateway.search")
    def tool_search(
        query: str,
        projects: list[dict],
        provider: str = "gemini",
        max_results: int | None = None,
        teams: list[str] | None = None,
        status: list[str] | None = None,
    ) -> dict:
        filters: dict[str, Any] = {"teams": teams, "status": status}
        if max_results is not None:
            filters["max_results"] = max_results
        return engine.run_search(query=query, provider=provider, filters=filters, projects=projects)

    @mcp.tool(name="gateway.claude_usage")
    def tool_claude_usage() -> dict:
        return engine.claude_usage()

    @mcp.tool(name="gateway.status")
    def tool_status() -> dict:
        return engine.status()

    @mcp.tool(name="gateway.reload_config")
    def tool_reload_config() -> dict:
        return engine.reload_config()

    return mcp


def main() -> None:
    server_home = resolve_server_home()
    config = ConfigHolder.from_path(server_home / "config.yaml")
    current = config.current()

    # Keep stdio transport quiet for MCP clients that are sensitive to noisy startup logs.
    default_level = "ERROR" if current.mcp_enabled else "INFO"
    logging.basicConfig(level=os.environ.get("AI_GATEWAY_LOG_LEVEL", default_level).upper())

    engine = GatewayEngine(config)
    engine.start()
    atexit.register(engine.stop)

    if current.mcp_enabled:
        mcp = build_mcp(engine)
        mcp.run(show_banner=False, log_level="ERROR")
        return

    try:
        engine.wait()
    except KeyboardInterrupt:
        LOG.info("Shutting down AI gateway.")
        engine.stop()


if __name__ == "__main__":
    main()
