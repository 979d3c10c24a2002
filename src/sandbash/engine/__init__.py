"""Execution engines for sandboxed bash contexts.

Key classes:
- ShellEngine: Interface the session core drives
- ExecutionContext: A live sandbox bound to a filesystem and policy
- BwrapEngine: GNU bash inside bubblewrap namespaces
"""

from sandbash.engine.base import ExecutionContext, Lifecycle, RawResult, ShellEngine
from sandbash.engine.bwrap import BwrapEngine, bwrap_available

__all__ = [
    "BwrapEngine",
    "ExecutionContext",
    "Lifecycle",
    "RawResult",
    "ShellEngine",
    "bwrap_available",
]
