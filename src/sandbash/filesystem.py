"""Filesystem bindings and backend selection.

A binding is a tagged value describing which filesystem a new execution
context gets. The engine switches on the variant when it builds the context
and is the one that checks the roots exist.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from sandbash.config import SandboxConfig


DEFAULT_OVERLAY_MOUNT = "/home/user/project"


class MountMode(str, Enum):
    """How a mounted host directory is exposed inside the sandbox."""

    OVERLAY = "overlay"
    """Read-only source with copy-on-write changes private to the context."""

    READWRITE = "readwrite"
    """Changes go straight to the host directory."""


@dataclass(frozen=True)
class MountEntry:
    mount_point: str
    root: Path
    mode: MountMode = MountMode.OVERLAY


@dataclass(frozen=True)
class InMemoryFs:
    """Private scratch filesystem, discarded with the context."""


@dataclass(frozen=True)
class OverlayFs:
    """Host directory shown read-only at ``mount_point``, writes kept private."""

    root: Path
    mount_point: str = DEFAULT_OVERLAY_MOUNT


@dataclass(frozen=True)
class ReadWriteFs:
    """Host directory bound read-write at its own path."""

    root: Path


@dataclass(frozen=True)
class MountedFs:
    """Several host directories, each at its own mount point."""

    entries: tuple[MountEntry, ...]


FilesystemBinding = Union[InMemoryFs, OverlayFs, ReadWriteFs, MountedFs]


def select_filesystem(config: "SandboxConfig") -> FilesystemBinding:
    """Pick the binding for a new context.

    Precedence is read-write root, then overlay root, then mounts, then the
    in-memory default.
    """
    if config.read_write_root:
        return ReadWriteFs(root=Path(config.read_write_root).expanduser().resolve())
    if config.overlay_root:
        return OverlayFs(
            root=Path(config.overlay_root).expanduser().resolve(),
            mount_point=config.overlay_mount_point,
        )
    if config.mounts:
        return MountedFs(entries=tuple(config.mounts))
    return InMemoryFs()


def default_cwd(binding: FilesystemBinding, config: "SandboxConfig") -> str:
    """Working directory a context starts in for ``binding``."""
    if isinstance(binding, ReadWriteFs):
        return str(binding.root)
    if isinstance(binding, OverlayFs):
        return binding.mount_point
    return config.initial_cwd


def describe_binding(binding: FilesystemBinding) -> dict[str, Any]:
    """JSON-friendly description of a binding."""
    if isinstance(binding, ReadWriteFs):
        return {"type": "readwrite", "root": str(binding.root)}
    if isinstance(binding, OverlayFs):
        return {
            "type": "overlay",
            "root": str(binding.root),
            "mount_point": binding.mount_point,
        }
    if isinstance(binding, MountedFs):
        return {
            "type": "mounted",
            "mounts": [
                {
                    "mount_point": entry.mount_point,
                    "root": str(entry.root),
                    "mode": entry.mode.value,
                }
                for entry in binding.entries
            ],
        }
    return {"type": "memory"}
