"""FastMCP server exposing the sandboxed bash tools.

Stdout carries the MCP stdio transport; diagnostics go to stderr.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from sandbash.config import SandboxConfig
from sandbash.engine.bwrap import BwrapEngine
from sandbash.errors import ConfigurationError
from sandbash.tools import SandboxTools, ToolResponse

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def create_tools(config: SandboxConfig | None = None) -> SandboxTools:
    """Build the tool dispatcher with the bubblewrap engine."""
    config = config or SandboxConfig.from_env()
    engine = BwrapEngine(state_dir=config.state_dir, timeout=config.command_timeout)
    return SandboxTools(config, engine)


def _deliver(response: ToolResponse) -> dict[str, Any]:
    payload = response.to_dict()
    if response.is_error:
        # Sets isError on the MCP result; its text content is this same payload
        raise ToolError(json.dumps(payload))
    return payload


def create_server(
    name: str = "sandbash",
    tools: SandboxTools | None = None,
) -> FastMCP:
    """Create and configure the FastMCP server.

    Args:
        name: Name for the MCP server.
        tools: Dispatcher to serve. Built from the environment if omitted.

    Returns:
        Configured FastMCP instance with the sandbox tools.
    """
    mcp = FastMCP(name)
    tools = tools or create_tools()

    @mcp.tool()
    async def bash_exec(
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        files: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Execute a bash command in a fresh, isolated sandbox.

        Nothing is shared with other calls or with the persistent
        environment: files, variables and functions all start clean.

        Args:
            command: The bash command to execute.
            cwd: Working directory for the command.
            env: Environment variables to set.
            files: Files to create before execution (path -> content).

        Returns:
            Dict with:
            - is_error: True if the command exited non-zero or failed to run
            - result: stdout, stderr, exit_code and exported env
            - text: Error description when the command could not run
        """
        response = await tools.execute_isolated(command, cwd=cwd, env=env, files=files)
        return _deliver(response)

    @mcp.tool()
    async def bash_exec_persistent(
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Execute a bash command in the persistent sandbox.

        The filesystem persists across calls, but env vars, functions, and
        cwd are reset each call.

        Args:
            command: The bash command to execute.
            cwd: Working directory for the command.
            env: Environment variables to set.
        """
        response = await tools.execute_persistent(command, cwd=cwd, env=env)
        return _deliver(response)

    @mcp.tool()
    async def bash_reset() -> dict[str, Any]:
        """Reset the persistent bash environment, clearing all files and state."""
        response = await tools.reset_persistent()
        return _deliver(response)

    @mcp.tool()
    async def bash_write_file(path: str, content: str) -> dict[str, Any]:
        """Write content to a file in the persistent bash environment.

        Args:
            path: The file path to write to.
            content: The content to write (written verbatim).
        """
        response = await tools.write_file(path, content)
        return _deliver(response)

    @mcp.tool()
    async def bash_read_file(path: str) -> dict[str, Any]:
        """Read content from a file in the persistent bash environment.

        Args:
            path: The file path to read.
        """
        response = await tools.read_file(path)
        return _deliver(response)

    @mcp.tool()
    async def bash_list_files(
        path: str = ".",
        recursive: bool = False,
        show_hidden: bool = False,
    ) -> dict[str, Any]:
        """List files and directories in the persistent bash environment.

        Args:
            path: The directory path to list (defaults to current directory).
            recursive: Whether to list files recursively.
            show_hidden: Whether to show hidden files.
        """
        response = await tools.list_files(path, recursive=recursive, show_hidden=show_hidden)
        return _deliver(response)

    @mcp.tool()
    def bash_info() -> dict[str, Any]:
        """Get information about the bash environment configuration.

        Returns:
            Dict whose ``data`` holds the filesystem binding, network policy,
            execution limits, and the supported and network commands.
        """
        return _deliver(tools.describe_environment())

    return mcp


# Global server instance
_server: FastMCP | None = None


def get_server(tools: SandboxTools | None = None) -> FastMCP:
    """Get or create the global server instance."""
    global _server
    if _server is None:
        _server = create_server(tools=tools)
    return _server


def setup_logging(level: str | None, log_file: str | None) -> None:
    """Send ``sandbash`` records to stderr, or to ``log_file`` when given.

    With neither a level nor a file, logging is left unconfigured.
    """
    if not level and not log_file:
        return
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(path)
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    package_logger = logging.getLogger("sandbash")
    package_logger.setLevel(level or logging.WARNING)
    package_logger.propagate = False
    package_logger.handlers = [handler]


def main(argv: list[str] | None = None):
    """Entry point for running the sandbox as an MCP server."""
    parser = argparse.ArgumentParser(description="sandbash MCP server")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (overrides SANDBASH_LOG_LEVEL).",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Log file path (overrides SANDBASH_LOG_FILE; defaults to stderr).",
    )
    args = parser.parse_args(argv)

    try:
        config = SandboxConfig.from_env()
    except ConfigurationError as exc:
        print(f"[sandbash] configuration error: {exc}", file=sys.stderr)
        sys.exit(2)

    level = args.log_level.upper() if args.log_level else config.log_level
    if level is not None and not isinstance(logging.getLevelName(level), int):
        parser.error(f"invalid log level: {args.log_level}")
    setup_logging(level, args.log_file or config.log_file)

    tools = create_tools(config)
    # Check the engine before serving; the check blocks and must not run on the event loop
    if not tools.engine.is_available():
        logger.warning("engine unavailable engine=%s", tools.engine.name)
        print(
            f"[sandbash] warning: {tools.engine.name} engine cannot run commands on this host",
            file=sys.stderr,
        )
    server = get_server(tools)
    logger.info(
        "starting server engine=%s state_dir=%s",
        tools.engine.name,
        config.state_dir,
    )
    print("[sandbash] server running on stdio", file=sys.stderr)
    try:
        server.run()
    finally:
        tools.sessions.close()


if __name__ == "__main__":
    main()
