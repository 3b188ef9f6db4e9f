"""Base class for the AI CLI engines that implement tasks."""

from __future__ import annotations

import json
import shutil
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from parabranch.failures import looks_like_rate_limit
from parabranch.io_utils import open_text

_CANCEL_POLL_SECONDS = 0.5


@dataclass
class EngineResult:
    """Uniform result from any engine invocation."""

    text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0
    error: str = ""
    return_code: int = 0

    @property
    def ok(self) -> bool:
        return self.return_code == 0 and not self.error


class EngineBase(ABC):
    """Abstract engine adapter.  Subclasses implement ``build_cmd``."""

    name: str = "base"

    @abstractmethod
    def build_cmd(self, prompt: str) -> list[str]:
        """Return the CLI command list for the given prompt."""
        ...

    @abstractmethod
    def parse_output(self, raw: str) -> EngineResult:
        """Parse raw stdout into an :class:`EngineResult`."""
        ...

    def check_available(self) -> str | None:
        """Return an error message if the engine CLI is not available, else None."""
        cmd_name = self.build_cmd("test")[0]
        if not shutil.which(cmd_name):
            return f"{cmd_name} not found in PATH"
        return None

    def run_sync(
        self,
        prompt: str,
        *,
        cwd: Path | None = None,
        log_file: Path | None = None,
        timeout: int | None = None,
        cancel: threading.Event | None = None,
    ) -> EngineResult:
        """Execute the engine synchronously and return parsed result.

        When *cancel* is set while the engine runs, the process is terminated
        and an error result is returned.
        """
        cmd = self.build_cmd(prompt)
        start = time.monotonic()

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
            )
        except FileNotFoundError:
            return EngineResult(error=f"{cmd[0]} not found", return_code=-1)

        deadline = None if timeout is None else start + timeout
        while True:
            wait_for = timeout if cancel is None else _CANCEL_POLL_SECONDS
            if cancel is not None and deadline is not None:
                wait_for = max(min(wait_for, deadline - time.monotonic()), 0)
            try:
                proc_stdout, proc_stderr = proc.communicate(timeout=wait_for)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    self._terminate_process(proc)
                    return EngineResult(error="cancelled", return_code=-1)
                if deadline is not None and time.monotonic() >= deadline:
                    self._terminate_process(proc)
                    return EngineResult(error=f"timeout after {timeout}s", return_code=-1)

        elapsed_ms = int((time.monotonic() - start) * 1000)

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            with open_text(log_file, "a") as f:
                if proc_stderr:
                    f.write(proc_stderr)

        result = self.parse_output(proc_stdout or "")
        result.return_code = proc.returncode
        if not result.duration_ms:
            result.duration_ms = elapsed_ms

        error = self._check_errors(proc_stdout or "")
        if error and not result.error:
            result.error = error

        # Some CLIs report argument/permission issues only on stderr.
        if proc.returncode != 0 and not result.error:
            stderr = (proc_stderr or "").strip()
            result.error = stderr.splitlines()[0] if stderr else f"exit code {proc.returncode}"

        return result

    @staticmethod
    def _terminate_process(proc: subprocess.Popen[str]) -> None:
        """Terminate a subprocess promptly (best effort)."""
        if proc.poll() is None:
            proc.terminate()
        try:
            proc.wait(timeout=2)
            return
        except subprocess.TimeoutExpired:
            pass
        if proc.poll() is None:
            proc.kill()
        try:
            proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            pass

    @staticmethod
    def _check_errors(raw: str) -> str:
        """Detect structured error events in engine output."""
        if not raw:
            return ""

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

            err = obj.get("error")
            if isinstance(err, dict):
                msg = str(err.get("message", "")).strip()
                code = str(err.get("type", "") or err.get("code", "")).strip().lower()
                if looks_like_rate_limit(code):
                    return msg or "Rate limit exceeded"
                if msg:
                    return msg
            if isinstance(err, str) and err.strip():
                return "Rate limit exceeded" if looks_like_rate_limit(err) else err.strip()

            if str(obj.get("type", "")).lower() == "error":
                msg = obj.get("message") or obj.get("text") or ""
                return str(msg).strip() or "Unknown error"

        return ""
