from __future__ import annotations

import json
import subprocess
import sys
import threading

from claude_session import ClaudeCliConfig, ClaudeSession
from dispatcher import ProviderDispatcher
from gemini import GeminiClient
from provider_result import ErrorKind
from runtime_config import ConfigHolder, GatewayConfig


class ScriptedPopen:
    """Stands in for subprocess.Popen, replaying (returncode, stdout, stderr) tuples."""

    def __init__(self, script: list) -> None:
        self.script = list(script)
        self.commands: list[list[str]] = []
        self.inputs: list[str | None] = []

    def __call__(self, command, **kwargs):
        self.commands.append(list(command))
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return _FakeProcess(self, step)


class _FakeProcess:
    def __init__(self, owner: ScriptedPopen, step) -> None:
        self._owner = owner
        self.returncode, self._stdout, self._stderr = step

    def communicate(self, input=None, timeout=None):
        self._owner.inputs.append(input)
        return self._stdout, self._stderr

    def kill(self) -> None:
        return None


def _install(monkeypatch, script: list) -> ScriptedPopen:
    fake = ScriptedPopen(script)
    monkeypatch.setattr("claude_session.subprocess.Popen", fake)
    return fake


def _usage_reply(input_tokens: int, output_tokens: int) -> tuple[int, str, str]:
    return 0, json.dumps({"result": "4", "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens}}), ""


def _session(**config) -> ClaudeSession:
    clock = iter(range(1000, 2000, 5))
    return ClaudeSession(ClaudeCliConfig(**config), clock=lambda: next(clock))


def test_prompt_count_counts_attempts_not_successes(monkeypatch) -> None:
    _install(monkeypatch, [_usage_reply(10, 2), (1, "", "boom"), _usage_reply(12, 3)])
    session = _session()

    first = session.invoke()
    second = session.invoke()
    third = session.invoke()

    assert first.success is True
    assert second.success is False
    assert second.error.kind is ErrorKind.TRANSPORT_FAILURE
    assert "boom" in str(second.error)
    assert third.success is True
    assert session.prompt_count == 3


def test_invoke_accumulates_output_and_overwrites_input(monkeypatch) -> None:
    _install(monkeypatch, [_usage_reply(100, 7), (2, "", "fail"), _usage_reply(40, 5)])
    session = _session()

    session.invoke()
    session.invoke()
    result = session.invoke()

    assert session.cumulative_input_tokens == 40
    assert session.cumulative_output_tokens == 12
    assert session.last_usage == {"input_tokens": 40, "output_tokens": 5}
    assert result.text == ""
    assert result.usage.prompt_tokens == 40
    assert result.usage.completion_tokens == 5
    info = result.details["session_info"]
    assert info["prompt_count"] == 3
    assert info["total_accumulated_output_tokens"] == 12
    assert info["session_start_timestamp"] == session.started_at
    assert info["session_duration_seconds"] >= 0
    assert result.details["service_tier"] == "standard"
    assert result.details["cache_read_input_tokens"] == 0


def test_invoke_becomes_active_once(monkeypatch) -> None:
    _install(monkeypatch, [_usage_reply(1, 1), _usage_reply(1, 1)])
    session = _session()
    assert session.active is False
    session.invoke()
    assert session.active is True
    session.invoke()
    assert session.cumulative_output_tokens == 2


def test_invoke_without_usage_returns_session_status(monkeypatch) -> None:
    _install(monkeypatch, [(0, json.dumps({"result": "4"}), "")])
    result = _session().invoke()
    assert result.success is True
    assert result.usage is None
    assert result.details["connection_status"] == "connected"
    assert result.details["session_info"]["prompt_count"] == 1


def test_invoke_empty_and_non_json_output_are_malformed(monkeypatch) -> None:
    _install(monkeypatch, [(0, "   \n", ""), (0, "plain text answer", "")])
    session = _session()
    empty = session.invoke()
    garbage = session.invoke()
    assert empty.error.kind is ErrorKind.MALFORMED_RESPONSE
    assert garbage.error.kind is ErrorKind.MALFORMED_RESPONSE
    assert session.prompt_count == 2
    assert session.cumulative_output_tokens == 0


def test_invoke_builds_json_print_command_with_probe_prompt(monkeypatch) -> None:
    fake = _install(monkeypatch, [_usage_reply(1, 1)])
    _session().invoke()
    assert fake.commands[0] == [
        "claude",
        "--print",
        "--output-format",
        "json",
        "This is prompt #1 in our persistent session. What is 2+2?",
    ]


def test_stdin_prompt_mode_sends_prompt_on_stdin(monkeypatch) -> None:
    fake = _install(monkeypatch, [(0, "answer", "")])
    monkeypatch.setattr("claude_session.shutil.which", lambda name: "/usr/bin/claude")
    _session(prompt_mode="stdin").complete("hello there")
    assert fake.commands[0] == ["claude", "--print"]
    assert fake.inputs == ["hello there"]


def test_missing_binary_on_spawn_is_process_unavailable(monkeypatch) -> None:
    _install(monkeypatch, [FileNotFoundError("claude")])
    session = _session()
    result = session.invoke()
    assert result.error.kind is ErrorKind.PROCESS_UNAVAILABLE
    assert session.prompt_count == 1


def test_timeout_ceiling_kills_and_reports_transport_failure(monkeypatch) -> None:
    killed: list[bool] = []

    class SlowProcess:
        returncode = None

        def __init__(self) -> None:
            self.calls = 0

        def communicate(self, input=None, timeout=None):
            self.calls += 1
            if self.calls == 1:
                raise subprocess.TimeoutExpired(cmd="claude", timeout=timeout)
            return "", ""

        def kill(self) -> None:
            killed.append(True)

    monkeypatch.setattr("claude_session.subprocess.Popen", lambda command, **kwargs: SlowProcess())
    result = _session(timeout_seconds=2).invoke()
    assert result.error.kind is ErrorKind.TRANSPORT_FAILURE
    assert "timed out after 2s" in str(result.error)
    assert killed == [True]


def test_invoke_once_leaves_session_state_untouched(monkeypatch) -> None:
    fake = _install(monkeypatch, [_usage_reply(9, 4)])
    session = _session()
    result = session.invoke_once()
    assert result.success is True
    assert result.details == {"input_tokens": 9, "output_tokens": 4}
    assert session.prompt_count == 0
    assert session.active is False
    assert session.cumulative_output_tokens == 0
    assert fake.commands[0][-1] == "What is 1+1?"


def test_query_usage_falls_back_to_one_shot_once(monkeypatch) -> None:
    fake = _install(monkeypatch, [(1, "", "session broken"), _usage_reply(3, 2)])
    session = _session()
    payload = session.query_usage()
    assert payload == {"success": True, "usage": {"input_tokens": 3, "output_tokens": 2}}
    assert len(fake.commands) == 2
    assert session.prompt_count == 1
    assert session.cumulative_output_tokens == 0


def test_query_usage_reports_fallback_failure(monkeypatch) -> None:
    _install(monkeypatch, [(1, "", "broken"), (0, json.dumps({"result": "2"}), "")])
    payload = _session().query_usage()
    assert payload["success"] is False
    assert "Could not extract usage data" in payload["error"]


def test_complete_requires_binary_on_path(monkeypatch) -> None:
    fake = _install(monkeypatch, [])
    monkeypatch.setattr("claude_session.shutil.which", lambda name: None)
    result = _session().complete("analyze this")
    assert result.error.kind is ErrorKind.PROCESS_UNAVAILABLE
    assert fake.commands == []


def test_complete_returns_stdout_with_estimated_usage(monkeypatch) -> None:
    fake = _install(monkeypatch, [(0, "  " + "a" * 40 + "\n", "")])
    monkeypatch.setattr("claude_session.shutil.which", lambda name: "/usr/local/bin/claude")
    result = _session().complete("p" * 100)
    assert result.success is True
    assert result.text == "a" * 40
    assert result.usage.prompt_tokens == 25
    assert result.usage.completion_tokens == 10
    assert result.usage.total_tokens == 35
    assert fake.commands[0] == ["claude", "--print", "p" * 100]


def test_complete_failures(monkeypatch) -> None:
    _install(monkeypatch, [(1, "", "auth required"), (0, "  \n", "")])
    monkeypatch.setattr("claude_session.shutil.which", lambda name: "/usr/local/bin/claude")
    session = _session()
    failed = session.complete("x")
    empty = session.complete("x")
    assert failed.error.kind is ErrorKind.TRANSPORT_FAILURE
    assert "auth required" in str(failed.error)
    assert empty.error.kind is ErrorKind.MALFORMED_RESPONSE
    assert session.prompt_count == 0


def test_output_limit_is_malformed(monkeypatch) -> None:
    _install(monkeypatch, [(0, "x" * 64, "")])
    monkeypatch.setattr("claude_session.shutil.which", lambda name: "/usr/local/bin/claude")
    result = _session(max_output_bytes=16).complete("x")
    assert result.error.kind is ErrorKind.MALFORMED_RESPONSE


def test_invoke_serializes_concurrent_calls(monkeypatch) -> None:
    inside = threading.Event()
    release = threading.Event()
    active = {"count": 0, "max": 0}
    lock = threading.Lock()

    class BlockingProcess:
        returncode = 0

        def communicate(self, input=None, timeout=None):
            with lock:
                active["count"] += 1
                active["max"] = max(active["max"], active["count"])
            inside.set()
            release.wait(timeout=5)
            with lock:
                active["count"] -= 1
            return json.dumps({"usage": {"input_tokens": 1, "output_tokens": 1}}), ""

        def kill(self) -> None:
            return None

    monkeypatch.setattr("claude_session.subprocess.Popen", lambda command, **kwargs: BlockingProcess())
    session = _session()
    threads = [threading.Thread(target=session.invoke) for _ in range(3)]
    for thread in threads:
        thread.start()
    assert inside.wait(timeout=5)
    release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert active["max"] == 1
    assert session.prompt_count == 3
    assert session.cumulative_output_tokens == 3


def _byte_writing_cli(stdout: bytes, stderr: bytes = b"", exit_code: int = 0) -> ClaudeCliConfig:
    script = (
        "import sys; "
        f"sys.stdout.buffer.write({stdout!r}); "
        f"sys.stderr.buffer.write({stderr!r}); "
        f"sys.exit({exit_code})"
    )
    return ClaudeCliConfig(command=sys.executable, args=["-c", script])


def test_complete_decodes_invalid_utf8_lossily() -> None:
    session = ClaudeSession(_byte_writing_cli(b"caf\xe9 ok\n"))
    result = session.complete("hello")
    assert result.success is True
    assert result.text == "caf\ufffd ok"
    assert result.usage.prompt_tokens == 1


def test_invoke_with_invalid_utf8_stderr_is_transport_failure() -> None:
    session = ClaudeSession(_byte_writing_cli(b"", stderr=b"bad \xff byte", exit_code=1))
    result = session.invoke()
    assert result.success is False
    assert result.error.kind is ErrorKind.TRANSPORT_FAILURE
    assert "bad \ufffd byte" in str(result.error)
    assert session.prompt_count == 1


def test_dispatcher_returns_envelope_for_non_utf8_cli_output() -> None:
    session = ClaudeSession(_byte_writing_cli(b"caf\xe9 ok\n"))
    dispatcher = ProviderDispatcher(ConfigHolder(GatewayConfig()), GeminiClient(), session)
    payload = dispatcher.analyze("claude", "hello")
    assert payload["success"] is True
    assert payload["analysis"] == "caf\ufffd ok"
