"""Shared test fixtures."""

from __future__ import annotations

import io
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

import pytest

from tdguest.errors import TdGuestError
from tdguest.models import RuntimePaths
from tdguest.observability import StructuredLogger
from tdguest.runner import command_context

Hook = Callable[[list[str], Path | None, IO[bytes] | None, IO[bytes] | None], None]


@dataclass(slots=True)
class RecordingRunner:
    """Runner double that records argv lists instead of executing tools."""

    fail: Callable[[list[str]], bool] = lambda _: False
    outputs: dict[str, bytes] = field(default_factory=dict)
    hooks: dict[str, Hook] = field(default_factory=dict)
    calls: list[list[str]] = field(default_factory=list)

    def run(
        self,
        argv: Sequence[str],
        *,
        error: type[TdGuestError] | None = None,
        message: str = "",
        hint: str | None = None,
        cwd: Path | None = None,
        log: bool = True,
        stdin: IO[bytes] | None = None,
        stdout: IO[bytes] | None = None,
    ) -> subprocess.CompletedProcess[bytes]:
        cmd = [str(arg) for arg in argv]
        self.calls.append(cmd)
        hook = self.hooks.get(cmd[0])
        if hook is not None:
            hook(cmd, cwd, stdin, stdout)
        returncode = 1 if self.fail(cmd) else 0
        result = subprocess.CompletedProcess(
            cmd,
            returncode,
            stdout=self.outputs.get(cmd[0], b""),
            stderr=b"simulated failure" if returncode else b"",
        )
        if returncode and error is not None:
            raise error(message or f"`{cmd[0]}` failed.", hint=hint, context=command_context(cmd, result))
        return result

    def programs(self) -> list[str]:
        return [call[0] for call in self.calls]

    def calls_to(self, program: str) -> list[list[str]]:
        return [call for call in self.calls if call[0] == program]


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger(stream=io.StringIO(), color=False)


@pytest.fixture
def runtime_paths(tmp_path: Path) -> RuntimePaths:
    paths = RuntimePaths(tmp_dir=tmp_path / "tmp", mnt_dir=tmp_path / "mnt")
    paths.tmp_dir.mkdir()
    paths.mnt_dir.mkdir()
    return paths


@pytest.fixture
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    slept: list[float] = []
    monkeypatch.setattr("tdguest.cloud_init.time.sleep", slept.append)
    return slept
