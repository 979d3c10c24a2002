"""Execution engine interface.

The engine owns everything the sandbox core treats as a black box: the
shell interpreter, filesystem storage and enforcement of the policy. The
core only builds contexts, runs commands through them and releases them.

Example:
    class EchoEngine(ShellEngine):
        name = "echo"

        def create_context(self, policy, filesystem, cwd, lifecycle, files=None):
            return ExecutionContext(policy=policy, filesystem=filesystem,
                                    cwd=cwd, lifecycle=lifecycle)

        async def execute(self, context, command, cwd=None, env=None, stdin=None):
            return RawResult(stdout=command + "\\n")

        def release(self, context):
            pass
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from sandbash.filesystem import FilesystemBinding
from sandbash.policy import ExecutionPolicy


class Lifecycle(str, Enum):
    """Who owns a context and how long it lives."""

    EPHEMERAL = "ephemeral"
    """Owned by one tool call, released when it completes."""

    PERSISTENT = "persistent"
    """Owned by the session manager, released on reset."""


@dataclass
class ExecutionContext:
    """A live sandbox bound to one filesystem and one policy."""

    policy: ExecutionPolicy
    filesystem: FilesystemBinding
    cwd: str
    lifecycle: Lifecycle
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    # Engine-private handle (scratch directories, mount table, ...)
    state: Any = None
    released: bool = False


@dataclass(frozen=True)
class RawResult:
    """Unnormalized outcome of one command."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    env: Mapping[str, str] = field(default_factory=dict)


def preview_command(command: str, limit: int = 120) -> str:
    """One-line form of ``command`` for log records."""
    flat = " ".join(command.split())
    if len(flat) <= limit:
        return flat
    return f"{flat[:limit]}... (+{len(flat) - limit} chars)"


class ShellEngine(ABC):
    """Creates execution contexts and runs commands inside them."""

    name: str = "unnamed_engine"

    @abstractmethod
    def create_context(
        self,
        policy: ExecutionPolicy,
        filesystem: FilesystemBinding,
        cwd: str,
        lifecycle: Lifecycle,
        files: Mapping[str, str] | None = None,
    ) -> ExecutionContext:
        """Build a context, materializing ``files`` before returning.

        Raises:
            ConfigurationError: If a filesystem root is inaccessible or the
                policy cannot be enforced.
        """

    @abstractmethod
    async def execute(
        self,
        context: ExecutionContext,
        command: str,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        stdin: str | None = None,
    ) -> RawResult:
        """Run ``command`` in a fresh shell inside ``context``.

        ``stdin``, when given, is fed to the command on standard input; it
        never counts against argument length limits.

        Environment variables, functions and directory changes made by the
        command never carry over to the next call; filesystem changes do.
        Command failure is reported through ``exit_code``.
        """

    @abstractmethod
    def release(self, context: ExecutionContext) -> None:
        """Discard the context's private storage. Safe to call twice."""

    def is_available(self) -> bool:
        """Check once, before serving, that the engine can run commands here."""
        return True

    def describe(self) -> dict[str, Any]:
        """Engine facts shown by the environment description tool."""
        return {"name": self.name}
