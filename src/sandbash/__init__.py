"""sandbash: a sandboxed bash environment for MCP clients.

This package provides:
- Policy derivation (network access and execution limits) from configuration
- Filesystem selection (in-memory, overlay, read-write, or mounted roots)
- A persistent session whose filesystem survives across calls until reset
- Isolated one-shot contexts, optionally seeded with files
- Output truncation and structured results for transport

Key Components:
- SandboxConfig: Environment-sourced configuration
- SessionManager: Owns the persistent execution context
- EphemeralContextFactory: Fresh context per call
- SandboxTools: One operation per MCP tool
- BwrapEngine: Runs bash inside bubblewrap namespaces

Example:
    import asyncio
    from sandbash import BwrapEngine, SandboxConfig, SandboxTools

    config = SandboxConfig.from_env()
    tools = SandboxTools(config, BwrapEngine(config.state_dir))
    response = asyncio.run(tools.execute_isolated("echo hi"))
    print(response.result.stdout)
"""

from sandbash.config import SandboxConfig, parse_mounts, parse_seed_files
from sandbash.engine import (
    BwrapEngine,
    ExecutionContext,
    Lifecycle,
    RawResult,
    ShellEngine,
)
from sandbash.errors import ConfigurationError, EngineFault, SandboxError
from sandbash.filesystem import (
    FilesystemBinding,
    InMemoryFs,
    MountedFs,
    MountEntry,
    MountMode,
    OverlayFs,
    ReadWriteFs,
    default_cwd,
    select_filesystem,
)
from sandbash.output import ExecutionResult, normalize, truncate_output
from sandbash.policy import (
    AllowListedNetwork,
    ExecutionLimits,
    ExecutionPolicy,
    FullNetworkAccess,
    HttpMethod,
    NetworkDisabled,
    NetworkPolicy,
    build_execution_limits,
    build_network_policy,
    build_policy,
)
from sandbash.session import EphemeralContextFactory, SessionManager
from sandbash.tools import SandboxTools, ToolResponse

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "SandboxConfig",
    "parse_mounts",
    "parse_seed_files",
    # Errors
    "SandboxError",
    "ConfigurationError",
    "EngineFault",
    # Policy
    "HttpMethod",
    "NetworkPolicy",
    "NetworkDisabled",
    "AllowListedNetwork",
    "FullNetworkAccess",
    "ExecutionLimits",
    "ExecutionPolicy",
    "build_network_policy",
    "build_execution_limits",
    "build_policy",
    # Filesystem
    "FilesystemBinding",
    "InMemoryFs",
    "OverlayFs",
    "ReadWriteFs",
    "MountedFs",
    "MountEntry",
    "MountMode",
    "select_filesystem",
    "default_cwd",
    # Engine
    "ShellEngine",
    "ExecutionContext",
    "Lifecycle",
    "RawResult",
    "BwrapEngine",
    # Sessions
    "SessionManager",
    "EphemeralContextFactory",
    # Output
    "ExecutionResult",
    "normalize",
    "truncate_output",
    # Tools
    "SandboxTools",
    "ToolResponse",
]
