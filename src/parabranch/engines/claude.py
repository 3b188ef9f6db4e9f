"""Claude Code engine adapter."""

from __future__ import annotations

import json
import shutil

from parabranch.engines.base import EngineBase, EngineResult


class ClaudeEngine(EngineBase):
    name = "claude"

    def build_cmd(self, prompt: str) -> list[str]:
        # Resolved path: child processes may see a different PATH.
        claude = shutil.which("claude") or "claude"
        return [
            claude,
            "--print",
            "--permission-mode",
            "bypassPermissions",
            "--output-format",
            "json",
            prompt,
        ]

    def parse_output(self, raw: str) -> EngineResult:
        result = EngineResult()
        for line in raw.splitlines():
            stripped = line.strip()
            if not stripped.startswith("{") or '"result"' not in stripped:
                continue
            try:
                obj = json.loads(stripped)
            except json.JSONDecodeError:
                continue
            result.text = str(obj.get("result", ""))
            usage = obj.get("usage") or {}
            result.input_tokens = int(usage.get("input_tokens", 0) or 0)
            result.output_tokens = int(usage.get("output_tokens", 0) or 0)
            if obj.get("is_error"):
                result.error = result.text or "Claude reported an error"
        if not result.text:
            result.text = raw.strip() or "Task completed"
        return result

    def check_available(self) -> str | None:
        if not shutil.which("claude"):
            return "Claude Code CLI not found. Install it and make sure 'claude' is in your PATH."
        return None
