"""Tests for engine adapters and registry."""

from __future__ import annotations

import sys
import threading
import time
from unittest.mock import patch

import pytest

from parabranch.engines.base import EngineBase, EngineResult
from parabranch.engines.claude import ClaudeEngine
from parabranch.engines.codex import CodexEngine
from parabranch.engines.registry import ENGINE_NAMES, get_engine


class TestEngineRegistry:
    @pytest.mark.parametrize(("name", "expected_cls"), [("claude", ClaudeEngine), ("codex", CodexEngine)])
    def test_get_engine_returns_expected_adapter(self, name: str, expected_cls: type) -> None:
        assert isinstance(get_engine(name), expected_cls)

    def test_engine_names(self) -> None:
        assert set(ENGINE_NAMES) == {"claude", "codex"}

    def test_unknown_engine_raises(self) -> None:
        with pytest.raises(ValueError):
            get_engine("unknown-provider")


class TestClaudeEngine:
    def test_build_cmd_uses_resolved_path_when_available(self) -> None:
        with patch("parabranch.engines.claude.shutil.which", return_value="/usr/bin/claude"):
            cmd = ClaudeEngine().build_cmd("hello")
        assert cmd[0] == "/usr/bin/claude"
        assert cmd[-1] == "hello"
        assert "--print" in cmd

    def test_parse_output_extracts_result_and_usage(self) -> None:
        raw = '{"type":"result","result":"done","usage":{"input_tokens":12,"output_tokens":7}}'
        result = ClaudeEngine().parse_output(raw)
        assert result.text == "done"
        assert (result.input_tokens, result.output_tokens) == (12, 7)
        assert result.ok

    def test_parse_output_error_flag(self) -> None:
        result = ClaudeEngine().parse_output('{"result":"quota hit","is_error":true}')
        assert result.error == "quota hit"
        assert not result.ok

    def test_parse_output_plain_text(self) -> None:
        assert ClaudeEngine().parse_output("just text\n").text == "just text"

    def test_check_available(self) -> None:
        with patch("parabranch.engines.claude.shutil.which", return_value=None):
            assert "not found" in ClaudeEngine().check_available()


class TestCodexEngine:
    def test_build_cmd(self) -> None:
        with patch("parabranch.engines.codex.shutil.which", return_value=None):
            cmd = CodexEngine().build_cmd("do it")
        assert cmd[0] == "codex"
        assert cmd[-2:] == ["--json", "do it"]

    def test_parse_output_collects_messages_and_usage(self) -> None:
        raw = "\n".join([
            '{"item":{"type":"agent_message","text":"first"}}',
            "not json",
            '{"item":{"type":"agent_message","content":[{"text":"sec"},{"text":"ond"}]}}',
            '{"type":"turn.completed","usage":{"input_tokens":5,"output_tokens":3}}',
        ])
        result = CodexEngine().parse_output(raw)
        assert result.text == "first\n\nsecond"
        assert (result.input_tokens, result.output_tokens) == (5, 3)

    def test_parse_output_error_item(self) -> None:
        result = CodexEngine().parse_output('{"item":{"type":"error","text":"sandbox denied"}}')
        assert result.error == "sandbox denied"
        assert result.text == "Task completed"


class TestEngineBase:
    def test_check_errors_rate_limit(self) -> None:
        raw = '{"error":{"type":"rate_limit_error","message":""}}'
        assert EngineBase._check_errors(raw) == "Rate limit exceeded"

    def test_check_errors_error_event(self) -> None:
        assert EngineBase._check_errors('{"type":"error","message":"bad auth"}') == "bad auth"

    def test_check_errors_clean(self) -> None:
        assert EngineBase._check_errors('{"type":"result"}\nplain') == ""

    def test_run_sync_missing_binary(self, tmp_path) -> None:
        class _Missing(EngineBase):
            def build_cmd(self, prompt: str) -> list[str]:
                return ["definitely-not-a-real-engine", prompt]

            def parse_output(self, raw: str) -> EngineResult:
                return EngineResult(text=raw)

        result = _Missing().run_sync("hi", cwd=tmp_path)
        assert result.return_code == -1
        assert "not found" in result.error


class _Sleeper(EngineBase):
    """Engine whose CLI is a Python child that sleeps for a while."""

    def build_cmd(self, prompt: str) -> list[str]:
        return [sys.executable, "-c", "import time; time.sleep(30)"]

    def parse_output(self, raw: str) -> EngineResult:
        return EngineResult(text=raw)


class TestRunSyncCancellation:
    def test_cancel_terminates_running_engine(self, tmp_path) -> None:
        cancel = threading.Event()
        timer = threading.Timer(0.2, cancel.set)
        timer.start()
        start = time.monotonic()
        try:
            result = _Sleeper().run_sync("hi", cwd=tmp_path, timeout=60, cancel=cancel)
        finally:
            timer.cancel()
        assert result.error == "cancelled"
        assert result.return_code == -1
        assert time.monotonic() - start < 10

    def test_timeout_still_applies_with_cancel_event(self, tmp_path) -> None:
        result = _Sleeper().run_sync("hi", cwd=tmp_path, timeout=1, cancel=threading.Event())
        assert result.error == "timeout after 1s"
