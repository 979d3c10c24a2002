"""Output truncation and the result payload returned to callers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from sandbash.engine.base import RawResult

TRUNCATION_MARKER = "\n... [{removed} characters truncated]"
_MARKER_RE = re.compile(r"\n\.\.\. \[\d+ characters truncated\]\Z")


@dataclass(frozen=True)
class ExecutionResult:
    """Normalized outcome of one command."""

    stdout: str
    stderr: str
    exit_code: int
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.exit_code != 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "env": dict(self.env),
        }


def truncate_output(text: str, max_length: int) -> str:
    """Keep the first ``max_length`` characters and note how many were cut.

    Text that is already a truncated payload for the same limit comes back
    unchanged.
    """
    if max_length <= 0:
        raise ValueError(f"max_length must be positive, got {max_length}")
    if len(text) <= max_length:
        return text
    marker = _MARKER_RE.search(text)
    if marker is not None and marker.start() == max_length:
        return text
    removed = len(text) - max_length
    return text[:max_length] + TRUNCATION_MARKER.format(removed=removed)


def normalize(raw: RawResult, max_length: int) -> ExecutionResult:
    """Truncate stdout and stderr independently; exit code and env pass through."""
    return ExecutionResult(
        stdout=truncate_output(raw.stdout, max_length),
        stderr=truncate_output(raw.stderr, max_length),
        exit_code=raw.exit_code,
        env=dict(raw.env),
    )
