"""Tool operations exposed over MCP.

Each operation returns a ``ToolResponse``: failures are data, never raised.
Command failure sets ``is_error`` alongside the normal result; configuration
and engine errors become a text description with ``is_error`` set.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from typing import Any, Mapping

from sandbash.config import SandboxConfig
from sandbash.engine.base import ShellEngine, preview_command
from sandbash.errors import ConfigurationError
from sandbash.filesystem import describe_binding, select_filesystem
from sandbash.output import ExecutionResult, normalize
from sandbash.policy import build_execution_limits, build_network_policy, describe_network
from sandbash.session import EphemeralContextFactory, SessionManager

logger = logging.getLogger(__name__)

SUPPORTED_COMMANDS = [
    "File Operations: cat, cp, ln, ls, mkdir, mv, readlink, rm, stat, touch, tree",
    "Text Processing: awk, base64, cut, diff, grep, head, jq, printf, sed, sort, tail, tr, uniq, wc, xargs",
    "Navigation & Environment: basename, cd, dirname, du, echo, env, export, find, printenv, pwd, tee",
    "Shell Utilities: alias, bash, chmod, date, expr, false, seq, sh, sleep, timeout, true, which",
]
NETWORK_COMMANDS = ["curl", "wget"]


@dataclass(frozen=True)
class ToolResponse:
    """Payload returned by every tool."""

    text: str = ""
    is_error: bool = False
    result: ExecutionResult | None = None
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"is_error": self.is_error, "text": self.text}
        if self.result is not None:
            payload["result"] = self.result.to_dict()
        if self.data is not None:
            payload["data"] = self.data
        return payload


def _error_text(prefix: str, exc: Exception) -> str:
    if isinstance(exc, ConfigurationError):
        return f"Configuration error: {exc}"
    return f"{prefix} error: {exc}"


class SandboxTools:
    """Routes tool invocations to ephemeral contexts or the persistent slot."""

    def __init__(
        self,
        config: SandboxConfig,
        engine: ShellEngine,
        sessions: SessionManager | None = None,
        ephemeral: EphemeralContextFactory | None = None,
    ):
        self.config = config
        self.engine = engine
        self.sessions = sessions or SessionManager(engine, config)
        self.ephemeral = ephemeral or EphemeralContextFactory(engine, config)
        # One persistent-slot operation at a time
        self._lock = asyncio.Lock()

    def _execution_response(self, result: ExecutionResult) -> ToolResponse:
        return ToolResponse(text="", is_error=result.is_error, result=result)

    async def execute_isolated(
        self,
        command: str,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        files: Mapping[str, str] | None = None,
    ) -> ToolResponse:
        """Run ``command`` in a brand-new context seeded with ``files``."""
        logger.debug("execute isolated command=%s", preview_command(command))
        try:
            with self.ephemeral.scoped(files) as context:
                raw = await self.engine.execute(context, command, cwd=cwd, env=env)
        except Exception as e:
            logger.exception("execute isolated failed command=%s", preview_command(command))
            return ToolResponse(text=_error_text("Execution", e), is_error=True)
        result = normalize(raw, self.config.max_output_length)
        logger.debug("execute isolated exit_code=%s", result.exit_code)
        return self._execution_response(result)

    async def execute_persistent(
        self,
        command: str,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ToolResponse:
        """Run ``command`` against the persistent filesystem."""
        logger.debug("execute persistent command=%s", preview_command(command))
        async with self._lock:
            try:
                context = self.sessions.get_or_create()
                raw = await self.engine.execute(context, command, cwd=cwd, env=env)
            except Exception as e:
                logger.exception("execute persistent failed command=%s", preview_command(command))
                return ToolResponse(text=_error_text("Execution", e), is_error=True)
        result = normalize(raw, self.config.max_output_length)
        logger.debug("execute persistent exit_code=%s", result.exit_code)
        return self._execution_response(result)

    async def reset_persistent(self) -> ToolResponse:
        """Throw away the persistent context and all of its files."""
        logger.info("reset persistent")
        async with self._lock:
            try:
                self.sessions.reset()
            except Exception as e:
                logger.exception("reset persistent failed")
                return ToolResponse(text=_error_text("Reset", e), is_error=True)
        return ToolResponse(text="Persistent bash environment has been reset.")

    async def _run_persistent(self, command: str, stdin: str | None = None) -> ExecutionResult:
        async with self._lock:
            context = self.sessions.get_or_create()
            raw = await self.engine.execute(context, command, stdin=stdin)
        return normalize(raw, self.config.max_output_length)

    async def write_file(self, path: str, content: str) -> ToolResponse:
        """Write ``content`` verbatim to ``path`` in the persistent context."""
        logger.debug("write file path=%s bytes=%s", path, len(content))
        # Content travels on stdin so its size is not bound by argument limits
        command = f"cat > {shlex.quote(path)}"
        try:
            result = await self._run_persistent(command, stdin=content)
        except Exception as e:
            logger.exception("write file failed path=%s", path)
            return ToolResponse(text=_error_text("Write", e), is_error=True)
        if result.is_error:
            return ToolResponse(text=f"Failed to write file: {result.stderr}", is_error=True)
        return ToolResponse(text=f"Successfully wrote {len(content)} bytes to {path}")

    async def read_file(self, path: str) -> ToolResponse:
        """Return the contents of ``path`` from the persistent context."""
        logger.debug("read file path=%s", path)
        try:
            result = await self._run_persistent(f"cat -- {shlex.quote(path)}")
        except Exception as e:
            logger.exception("read file failed path=%s", path)
            return ToolResponse(text=_error_text("Read", e), is_error=True)
        if result.is_error:
            return ToolResponse(text=f"Failed to read file: {result.stderr}", is_error=True)
        return ToolResponse(text=result.stdout)

    async def list_files(
        self,
        path: str = ".",
        recursive: bool = False,
        show_hidden: bool = False,
    ) -> ToolResponse:
        """List a directory in the persistent context."""
        logger.debug("list files path=%s recursive=%s hidden=%s", path, recursive, show_hidden)
        quoted = shlex.quote(path or ".")
        if recursive:
            command = f"find {quoted} -type f"
            if not show_hidden:
                command += " -not -path '*/.*'"
        else:
            command = f"ls -l{'a' if show_hidden else ''} {quoted}"
        try:
            result = await self._run_persistent(command)
        except Exception as e:
            logger.exception("list files failed path=%s", path)
            return ToolResponse(text=_error_text("List", e), is_error=True)
        if result.is_error:
            return ToolResponse(text=result.stderr or result.stdout, is_error=True)
        return ToolResponse(text=result.stdout or "(empty directory)")

    def describe_environment(self) -> ToolResponse:
        """Report configuration, policy and what the sandbox offers."""
        network = build_network_policy(self.config)
        limits = build_execution_limits(self.config)
        info = {
            "engine": self.engine.describe(),
            "filesystem": describe_binding(select_filesystem(self.config)),
            "overlay_root": self.config.overlay_root,
            "read_write_root": self.config.read_write_root,
            "initial_cwd": self.config.initial_cwd,
            "network_enabled": network.enabled,
            "network": describe_network(network),
            "allowed_url_prefixes": list(self.config.allowed_url_prefixes) or None,
            "allowed_methods": list(self.config.allowed_methods) if network.enabled else None,
            "execution_limits": {
                "max_call_depth": limits.max_call_depth,
                "max_command_count": limits.max_command_count,
                "max_loop_iterations": limits.max_loop_iterations,
                "max_awk_iterations": limits.max_awk_iterations,
                "max_sed_iterations": limits.max_sed_iterations,
                "max_jq_iterations": limits.max_jq_iterations,
            },
            "max_output_length": self.config.max_output_length,
            "persistent_session_active": self.sessions.active,
            "supported_commands": SUPPORTED_COMMANDS,
            "network_commands": NETWORK_COMMANDS if network.enabled else [],
        }
        return ToolResponse(text="", data=info)
