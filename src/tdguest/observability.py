"""Structured logging and console reporting helpers."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, TextIO

Level = Literal["ok", "info", "warn", "error"]

_COLORS: dict[str, str] = {
    "ok": "\033[1;32m",
    "warn": "\033[1;33m",
    "error": "\033[1;31m",
}
_LABELS: dict[str, str] = {
    "ok": "SUCCESS",
    "warn": "WARN",
    "error": "ERROR",
}
_RESET = "\033[0;0m"


@dataclass(slots=True)
class StructuredLogger:
    """Collects step records and echoes them to the console.

    ``ok``/``warn``/``error`` records are printed as colored one-liners;
    ``info`` records are printed plain.
    """

    stream: TextIO | None = None
    color: bool = True
    records: list[dict[str, Any]] = field(default_factory=list)

    def log(
        self,
        *,
        operation: str,
        step: str | None,
        message: str,
        level: Level = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "level": level,
            "operation": operation,
            "step": step,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        self.records.append(record)
        self._echo(level, message)

    def ok(self, message: str, *, operation: str = "create", step: str | None = None) -> None:
        self.log(operation=operation, step=step, message=message, level="ok")

    def info(self, message: str, *, operation: str = "create", step: str | None = None) -> None:
        self.log(operation=operation, step=step, message=message, level="info")

    def warn(self, message: str, *, operation: str = "create", step: str | None = None) -> None:
        self.log(operation=operation, step=step, message=message, level="warn")

    def error(self, message: str, *, operation: str = "create", step: str | None = None) -> None:
        self.log(operation=operation, step=step, message=message, level="error")

    def records_for_step(self, step: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("step") == step]

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path

    def _echo(self, level: str, message: str) -> None:
        stream = self.stream or (sys.stderr if level == "error" else sys.stdout)
        label = _LABELS.get(level)
        if label is None:
            print(message, file=stream)
            return
        if self.color:
            print(f"{_COLORS[level]}{label}: {message}{_RESET}", file=stream)
        else:
            print(f"{label}: {message}", file=stream)
