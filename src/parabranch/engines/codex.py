"""Codex CLI engine adapter."""

from __future__ import annotations

import json
import shutil

from parabranch.engines.base import EngineBase, EngineResult


def _extract_text(payload: dict[str, object]) -> str:
    text = payload.get("text")
    if isinstance(text, str) and text.strip():
        return text.strip()
    content = payload.get("content")
    if isinstance(content, list):
        merged = "".join(
            part["text"] for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ).strip()
        if merged:
            return merged
    return ""


class CodexEngine(EngineBase):
    name = "codex"

    def build_cmd(self, prompt: str) -> list[str]:
        codex = shutil.which("codex") or "codex"
        return [codex, "-a", "never", "-s", "workspace-write", "exec", "--json", prompt]

    def parse_output(self, raw: str) -> EngineResult:
        result = EngineResult()
        messages: list[str] = []
        for line in raw.splitlines():
            stripped = line.strip()
            if not stripped:
                continue
            try:
                obj = json.loads(stripped)
            except json.JSONDecodeError:
                continue
            if not isinstance(obj, dict):
                continue

            item = obj.get("item")
            if isinstance(item, dict):
                item_text = _extract_text(item)
                if item.get("type") == "agent_message" and item_text:
                    messages.append(item_text)
                elif item.get("type") == "error" and item_text and not result.error:
                    result.error = item_text
            elif obj.get("type") == "agent_message":
                text = _extract_text(obj)
                if text:
                    messages.append(text)

            usage = obj.get("usage")
            if isinstance(usage, dict):
                result.input_tokens += int(usage.get("input_tokens", 0) or 0)
                result.output_tokens += int(usage.get("output_tokens", 0) or 0)

        result.text = "\n\n".join(messages).strip() or "Task completed"
        return result

    def check_available(self) -> str | None:
        if not shutil.which("codex"):
            return "Codex CLI not found. Make sure 'codex' is in your PATH."
        return None
