"""Bubblewrap-backed shell engine.

Every context owns a scratch directory on the host whose ``root/`` is bound
as the sandbox ``/``. Host system directories are layered on top read-only,
so commands see a normal Linux userland but can only write to private
storage (or to explicitly bound read-write roots).

Layout of a context directory::

    <state_dir>/<lifecycle>-<id>/
        root/              sandbox "/" (home, /tmp, anything else written)
        overlays/<n>/upper copy-on-write changes for overlay mount n
        overlays/<n>/work  overlayfs work directory

Each command runs in a fresh ``bash --noprofile --norc`` process, so shell
variables, functions and ``cd`` never survive a call while the files do.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import posixpath
import shlex
import shutil
import stat
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from sandbash.engine.base import ExecutionContext, Lifecycle, RawResult, ShellEngine, preview_command
from sandbash.errors import ConfigurationError, EngineFault
from sandbash.filesystem import (
    FilesystemBinding,
    InMemoryFs,
    MountedFs,
    MountMode,
    OverlayFs,
    ReadWriteFs,
)
from sandbash.paths import contexts_dir_default
from sandbash.policy import AllowListedNetwork, ExecutionLimits, ExecutionPolicy, NetworkDisabled

logger = logging.getLogger(__name__)

SYSTEM_DIRS = ("/usr", "/bin", "/sbin", "/lib", "/lib32", "/lib64", "/etc")
VIRTUAL_DIRS = ("/proc", "/dev")
HOME_DIR = "/home/user"
BASE_ENV = {
    "HOME": HOME_DIR,
    "USER": "user",
    "LOGNAME": "user",
    "SHELL": "/bin/bash",
    "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
    "LANG": "C.UTF-8",
    "TERM": "dumb",
}
TIMEOUT_EXIT_CODE = -1
COMMAND_LIMIT_EXIT_CODE = 126


@functools.lru_cache(maxsize=None)
def bwrap_available(binary: str = "bwrap") -> bool:
    """Check if bubblewrap is installed and can create namespaces here."""
    try:
        version = subprocess.run([binary, "--version"], capture_output=True, timeout=5)
        if version.returncode != 0:
            return False

        # Containers often ship bwrap without the privileges to use it.
        result = subprocess.run(
            [
                binary,
                "--unshare-user",
                "--unshare-pid",
                "--die-with-parent",
                "--ro-bind", "/", "/",
                "--proc", "/proc",
                "--dev", "/dev",
                "/bin/sh", "-c", "true",
            ],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (FileNotFoundError, PermissionError, subprocess.TimeoutExpired):
        return False


@dataclass(frozen=True)
class BoundDir:
    """A host directory mounted into the sandbox."""

    target: str
    source: Path
    # Host directory that receives writes under ``target``
    writable: Path
    overlay: bool = False
    workdir: Path | None = None

    def bwrap_args(self) -> list[str]:
        if self.overlay:
            return [
                "--overlay-src", str(self.source),
                "--overlay", str(self.writable), str(self.workdir), self.target,
            ]
        return ["--bind", str(self.source), self.target]


@dataclass
class ContextStorage:
    directory: Path
    mounts: list[BoundDir] = field(default_factory=list)

    @property
    def root(self) -> Path:
        return self.directory / "root"

    def mount_for(self, sandbox_path: str) -> BoundDir | None:
        """Return the most specific mount covering ``sandbox_path``."""
        normalized = posixpath.normpath(sandbox_path)
        best: BoundDir | None = None
        for mount in self.mounts:
            if normalized == mount.target or normalized.startswith(mount.target.rstrip("/") + "/"):
                if best is None or len(mount.target) > len(best.target):
                    best = mount
        return best

    def host_path(self, sandbox_path: str) -> Path:
        """Map an absolute sandbox path to the host file that backs it."""
        normalized = posixpath.normpath(sandbox_path)
        mount = self.mount_for(normalized)
        if mount is None:
            return self.root / normalized.lstrip("/")
        relative = posixpath.relpath(normalized, mount.target)
        return mount.writable if relative == "." else mount.writable / relative

    def contained_path(self, sandbox_path: str) -> Path:
        """Resolve the host file for ``sandbox_path`` without leaving its backing directory.

        Symlinks are followed as the host would follow them, so a link
        planted by an earlier command cannot redirect host-side writes.

        Raises:
            ConfigurationError: If the resolved path escapes the backing
                directory.
        """
        mount = self.mount_for(sandbox_path)
        base = (mount.writable if mount is not None else self.root).resolve()
        resolved = self.host_path(sandbox_path).resolve()
        if resolved != base and base not in resolved.parents:
            raise ConfigurationError(f"Path escapes the sandbox filesystem: {sandbox_path}")
        return resolved


def shadowed_by_host(storage: ContextStorage, sandbox_path: str) -> bool:
    """True if a host directory is mounted over ``sandbox_path``.

    Files written there on the host side would be hidden from commands.
    """
    if storage.mount_for(sandbox_path) is not None:
        return False
    normalized = posixpath.normpath(sandbox_path)
    return any(
        normalized == directory or normalized.startswith(directory + "/")
        for directory in SYSTEM_DIRS + VIRTUAL_DIRS
    )


def _check_root(root: Path, writable: bool) -> Path:
    resolved = root.expanduser().resolve()
    if not resolved.is_dir():
        raise ConfigurationError(f"Filesystem root does not exist or is not a directory: {root}")
    mode = os.R_OK | os.X_OK | (os.W_OK if writable else 0)
    if not os.access(resolved, mode):
        access = "read-write" if writable else "read"
        raise ConfigurationError(f"Filesystem root is not accessible for {access}: {root}")
    return resolved


def _force_rmtree(path: Path) -> None:
    # overlayfs leaves a mode-000 directory inside its work dir
    def on_error(func, failed_path, _exc_info):
        try:
            os.chmod(failed_path, stat.S_IRWXU)
            func(failed_path)
        except OSError:
            logger.warning("could not remove path=%s", failed_path)

    if path.exists():
        shutil.rmtree(path, onerror=on_error)


def build_script(command: str, cwd: str, limits: ExecutionLimits, env_fd: int) -> str:
    """Wrap ``command`` with limit enforcement and environment capture."""
    limit = limits.max_command_count
    guard = (
        f"((++__sandbash_commands > {limit})) && "
        f"{{ echo \"bash: command limit of {limit} exceeded\" >&2; exit {COMMAND_LIMIT_EXIT_CODE}; }}"
    )
    return "\n".join(
        [
            f"FUNCNEST={limits.max_call_depth}",
            "__sandbash_commands=0",
            f"trap 'env -0 >&{env_fd} 2>/dev/null' EXIT",
            "set -o functrace",
            f"trap {shlex.quote(guard)} DEBUG",
            f"cd -- {shlex.quote(cwd)} || exit 1",
            command,
        ]
    )


def system_bind_args() -> list[str]:
    args: list[str] = []
    for directory in SYSTEM_DIRS:
        path = Path(directory)
        if path.is_symlink():
            args.extend(["--symlink", os.readlink(path), directory])
        elif path.is_dir():
            args.extend(["--ro-bind", directory, directory])
    return args


def build_bwrap_argv(
    binary: str,
    storage: ContextStorage,
    policy: ExecutionPolicy,
    script_fd: int,
) -> list[str]:
    """Build the bubblewrap command line for one execution.

    bash reads its script from the inherited descriptor ``script_fd``, so
    commands of any length stay clear of the kernel limit on one argument.
    """
    argv = [
        binary,
        "--unshare-user",
        "--unshare-pid",
        "--unshare-uts",
        "--unshare-ipc",
        "--die-with-parent",
        "--new-session",
        "--hostname", "sandbash",
        "--bind", str(storage.root), "/",
    ]
    argv.extend(system_bind_args())
    argv.extend(["--proc", "/proc", "--dev", "/dev"])

    # Parents before children so nested mount points stack correctly
    for mount in sorted(storage.mounts, key=lambda m: m.target.count("/")):
        argv.extend(mount.bwrap_args())

    if isinstance(policy.network, NetworkDisabled):
        argv.append("--unshare-net")

    argv.extend(["--chdir", "/", "bash", "--noprofile", "--norc", f"/dev/fd/{script_fd}"])
    return argv


def parse_env_dump(data: bytes) -> dict[str, str]:
    """Parse ``env -0`` output."""
    env: dict[str, str] = {}
    for entry in data.decode("utf-8", errors="replace").split("\0"):
        if not entry or "=" not in entry:
            continue
        key, value = entry.split("=", 1)
        env[key] = value
    return env


class BwrapEngine(ShellEngine):
    """Run GNU bash inside bubblewrap namespaces."""

    name = "bwrap"

    def __init__(
        self,
        state_dir: Path | str | None = None,
        timeout: float = 30.0,
        binary: str = "bwrap",
    ):
        """Initialize the engine.

        Args:
            state_dir: Parent directory for per-context scratch storage.
            timeout: Maximum seconds a single command can run.
            binary: bubblewrap executable name or path.
        """
        self.state_dir = Path(state_dir) if state_dir else contexts_dir_default()
        self.timeout = timeout
        self.binary = shutil.which(binary) or binary

    def is_available(self) -> bool:
        available = bwrap_available(self.binary)
        logger.info("bwrap check binary=%s available=%s", self.binary, available)
        return available

    def describe(self) -> dict:
        return {
            "name": self.name,
            "binary": self.binary,
            "available": bwrap_available(self.binary),
            "timeout_seconds": self.timeout,
            "enforced_limits": ["max_call_depth", "max_command_count"],
        }

    def _bind_filesystem(self, binding: FilesystemBinding, directory: Path) -> list[BoundDir]:
        if isinstance(binding, InMemoryFs):
            return []
        if isinstance(binding, ReadWriteFs):
            root = _check_root(binding.root, writable=True)
            return [BoundDir(target=str(binding.root), source=root, writable=root)]
        if isinstance(binding, OverlayFs):
            entries = [(binding.mount_point, binding.root, MountMode.OVERLAY)]
        elif isinstance(binding, MountedFs):
            entries = [(e.mount_point, e.root, e.mode) for e in binding.entries]
        else:
            raise ConfigurationError(f"Unsupported filesystem binding: {binding!r}")

        mounts = []
        for index, (target, root, mode) in enumerate(entries):
            if mode is MountMode.READWRITE:
                source = _check_root(root, writable=True)
                mounts.append(BoundDir(target=target, source=source, writable=source))
                continue
            source = _check_root(root, writable=False)
            upper = directory / "overlays" / str(index) / "upper"
            work = directory / "overlays" / str(index) / "work"
            upper.mkdir(parents=True)
            work.mkdir(parents=True)
            mounts.append(
                BoundDir(target=target, source=source, writable=upper, overlay=True, workdir=work)
            )
        return mounts

    def create_context(
        self,
        policy: ExecutionPolicy,
        filesystem: FilesystemBinding,
        cwd: str,
        lifecycle: Lifecycle,
        files: Mapping[str, str] | None = None,
    ) -> ExecutionContext:
        if not bwrap_available(self.binary):
            raise ConfigurationError(
                "bubblewrap (bwrap) is not installed or cannot create namespaces on this host"
            )
        if isinstance(policy.network, AllowListedNetwork):
            raise ConfigurationError(
                "URL allow-listing needs an engine with request filtering; "
                "the bwrap engine supports only disabled or full network access"
            )

        context = ExecutionContext(
            policy=policy,
            filesystem=filesystem,
            cwd=cwd,
            lifecycle=lifecycle,
        )
        self.state_dir.mkdir(parents=True, exist_ok=True)
        directory = Path(tempfile.mkdtemp(prefix=f"{lifecycle.value}-{context.id}-", dir=self.state_dir))
        try:
            storage = ContextStorage(directory=directory)
            storage.mounts = self._bind_filesystem(filesystem, directory)
            storage.root.mkdir()
            (storage.root / "tmp").mkdir(mode=0o1777)
            storage.contained_path(HOME_DIR).mkdir(parents=True, exist_ok=True)
            storage.contained_path(cwd).mkdir(parents=True, exist_ok=True)

            for path, content in (files or {}).items():
                sandbox_path = posixpath.normpath(posixpath.join(cwd, path))
                if shadowed_by_host(storage, sandbox_path):
                    raise ConfigurationError(
                        f"Cannot seed {path!r}: {sandbox_path} is a read-only system path in the sandbox"
                    )
                target = storage.contained_path(sandbox_path)
                target.parent.mkdir(parents=True, exist_ok=True)
                # Re-check once the parents exist so none of them is a link out
                target = storage.contained_path(sandbox_path)
                target.write_text(content)
                logger.debug("seeded file context=%s path=%s bytes=%s", context.id, sandbox_path, len(content))
        except ConfigurationError:
            _force_rmtree(directory)
            raise
        except OSError as exc:
            _force_rmtree(directory)
            raise EngineFault(f"Failed to prepare sandbox storage: {exc}") from exc

        context.state = storage
        logger.info(
            "created context id=%s lifecycle=%s filesystem=%s cwd=%s",
            context.id,
            lifecycle.value,
            type(filesystem).__name__,
            cwd,
        )
        return context

    async def execute(
        self,
        context: ExecutionContext,
        command: str,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        stdin: str | None = None,
    ) -> RawResult:
        if context.released or not isinstance(context.state, ContextStorage):
            raise EngineFault(f"Context {context.id} has been released")

        workdir = posixpath.join(context.cwd, cwd) if cwd else context.cwd
        process_env = dict(BASE_ENV)
        process_env.update(env or {})

        with tempfile.TemporaryFile() as env_dump, tempfile.TemporaryFile() as script_file:
            env_fd = env_dump.fileno()
            script_fd = script_file.fileno()
            script_file.write(build_script(command, workdir, context.policy.limits, env_fd).encode("utf-8"))
            script_file.flush()
            script_file.seek(0)
            argv = build_bwrap_argv(self.binary, context.state, context.policy, script_fd)

            logger.debug("bwrap exec context=%s cwd=%s command=%s", context.id, workdir, preview_command(command))
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL if stdin is None else asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=process_env,
                pass_fds=(env_fd, script_fd),
            )
            payload = None if stdin is None else stdin.encode("utf-8")
            try:
                stdout_b, stderr_b = await asyncio.wait_for(
                    proc.communicate(payload), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                logger.debug("bwrap timeout context=%s seconds=%s", context.id, self.timeout)
                return RawResult(
                    exit_code=TIMEOUT_EXIT_CODE,
                    stderr=f"Command timed out after {self.timeout} seconds",
                )

            env_dump.seek(0)
            exported = parse_env_dump(env_dump.read())

        exit_code = proc.returncode if proc.returncode is not None else 0
        if exit_code < 0:
            exit_code = 128 - exit_code
        logger.debug("bwrap result context=%s exit_code=%s", context.id, exit_code)
        return RawResult(
            stdout=(stdout_b or b"").decode("utf-8", errors="replace"),
            stderr=(stderr_b or b"").decode("utf-8", errors="replace"),
            exit_code=exit_code,
            env=exported,
        )

    def release(self, context: ExecutionContext) -> None:
        if context.released:
            return
        storage = context.state
        if isinstance(storage, ContextStorage):
            _force_rmtree(storage.directory)
        context.released = True
        context.state = None
        logger.info("released context id=%s lifecycle=%s", context.id, context.lifecycle.value)
