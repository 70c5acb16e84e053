"""Subprocess execution for the external virtualization tools.

Every pipeline step shells out through a :class:`Runner`.  The default
:class:`SubprocessRunner` blocks until the tool exits and, when a log file is
configured, appends the tool's combined output to it instead of the console.
"""

from __future__ import annotations

import shlex
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Protocol

from tdguest.errors import PreconditionError, TdGuestError

STDERR_TAIL = 2000


class Runner(Protocol):
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
        """Run *argv*; raise *error* on a non-zero exit when it is given."""


@dataclass(slots=True)
class SubprocessRunner:
    log_path: Path | None = None

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
        if stdout is not None:
            result = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                stdin=stdin,
                stdout=stdout,
                stderr=subprocess.PIPE,
                check=False,
            )
        elif log and self.log_path is not None:
            with self.log_path.open("ab") as handle:
                handle.write(f"$ {shlex.join(cmd)}\n".encode())
                handle.flush()
                result = subprocess.run(
                    cmd,
                    cwd=str(cwd) if cwd else None,
                    stdin=stdin,
                    stdout=handle,
                    stderr=subprocess.STDOUT,
                    check=False,
                )
        else:
            result = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                stdin=stdin,
                capture_output=True,
                check=False,
            )

        if result.returncode != 0 and error is not None:
            raise error(
                message or f"`{cmd[0]}` failed.",
                hint=hint,
                context=command_context(cmd, result, log_path=self.log_path if log else None),
            )
        return result


def command_context(
    cmd: Sequence[str],
    result: subprocess.CompletedProcess[bytes],
    *,
    log_path: Path | None = None,
) -> Mapping[str, str]:
    stderr = result.stderr.decode(errors="replace") if result.stderr else ""
    context = {
        "command": shlex.join(cmd),
        "returncode": str(result.returncode),
        "stderr": stderr[-STDERR_TAIL:],
    }
    if log_path is not None:
        context["log"] = str(log_path)
    return context


def require_tools(*names: str) -> None:
    for name in names:
        if shutil.which(name) is None:
            raise PreconditionError(
                f"{name} is not installed",
                hint="Install the host packages (or pass --install-deps) and retry.",
                context={"tool": name},
            )


__all__ = ["Runner", "SubprocessRunner", "command_context", "require_tools"]
