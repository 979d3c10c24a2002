"""Exception types shared across the sandbox core.

Ordinary command failure is never an exception: it is reported in-band
through a non-zero exit code on the result.
"""

from __future__ import annotations


class SandboxError(Exception):
    """Base class for sandbox errors."""


class ConfigurationError(SandboxError):
    """Invalid configuration or an inaccessible filesystem root.

    Raised while loading configuration or while constructing an execution
    context. It is fatal to the invocation that hit it, not to the process.
    """


class EngineFault(SandboxError):
    """The execution engine failed internally (not a command failure)."""
