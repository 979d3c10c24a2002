"""Load sandbox configuration from environment variables."""

from __future__ import annotations

import json
import logging
import os
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any, Mapping

from sandbash.errors import ConfigurationError
from sandbash.filesystem import DEFAULT_OVERLAY_MOUNT, MountEntry, MountMode
from sandbash.paths import contexts_dir_default

logger = logging.getLogger(__name__)

ENV_PREFIX = "SANDBASH_"

DEFAULT_CWD = "/home/user"
DEFAULT_METHODS = ("GET", "HEAD")
KNOWN_METHODS = ("GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS")
DEFAULT_MAX_REDIRECTS = 20
DEFAULT_NETWORK_TIMEOUT_MS = 30_000
DEFAULT_MAX_OUTPUT_LENGTH = 30_000
DEFAULT_MAX_CALL_DEPTH = 100
DEFAULT_MAX_COMMAND_COUNT = 10_000
DEFAULT_MAX_LOOP_ITERATIONS = 10_000
DEFAULT_COMMAND_TIMEOUT = 30.0

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SandboxConfig:
    """Everything the sandbox core reads from its environment."""

    initial_cwd: str = DEFAULT_CWD
    overlay_root: str | None = None
    overlay_mount_point: str = DEFAULT_OVERLAY_MOUNT
    read_write_root: str | None = None
    mounts: tuple[MountEntry, ...] = ()
    allow_network: bool = False
    allowed_url_prefixes: tuple[str, ...] = ()
    allowed_methods: tuple[str, ...] = DEFAULT_METHODS
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    network_timeout_ms: int = DEFAULT_NETWORK_TIMEOUT_MS
    max_output_length: int = DEFAULT_MAX_OUTPUT_LENGTH
    max_call_depth: int = DEFAULT_MAX_CALL_DEPTH
    max_command_count: int = DEFAULT_MAX_COMMAND_COUNT
    max_loop_iterations: int = DEFAULT_MAX_LOOP_ITERATIONS
    # None means "same as max_loop_iterations"
    max_awk_iterations: int | None = None
    max_sed_iterations: int | None = None
    max_jq_iterations: int | None = None
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    state_dir: Path = field(default_factory=contexts_dir_default)
    # Logging for the server process; CLI flags take precedence
    log_level: str | None = None
    log_file: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SandboxConfig":
        """Build a config from ``environ`` (defaults to ``os.environ``).

        Raises:
            ConfigurationError: If the mount specification is malformed.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            if value is None or not value.strip():
                return None
            return value.strip()

        loop_limit = _parse_int(get("MAX_LOOP_ITERATIONS"), "MAX_LOOP_ITERATIONS", DEFAULT_MAX_LOOP_ITERATIONS)

        return cls(
            initial_cwd=get("CWD") or DEFAULT_CWD,
            overlay_root=_expand_env(get("OVERLAY_ROOT"), env),
            overlay_mount_point=get("OVERLAY_MOUNT") or DEFAULT_OVERLAY_MOUNT,
            read_write_root=_expand_env(get("READ_WRITE_ROOT"), env),
            mounts=parse_mounts(get("MOUNTS"), env),
            allow_network=(get("ALLOW_NETWORK") or "").lower() in _TRUE_VALUES,
            allowed_url_prefixes=_split_list(get("ALLOWED_URLS")),
            allowed_methods=_parse_methods(get("ALLOWED_METHODS")),
            max_redirects=_parse_int(get("MAX_REDIRECTS"), "MAX_REDIRECTS", DEFAULT_MAX_REDIRECTS, minimum=0),
            network_timeout_ms=_parse_int(
                get("NETWORK_TIMEOUT_MS"), "NETWORK_TIMEOUT_MS", DEFAULT_NETWORK_TIMEOUT_MS
            ),
            max_output_length=_parse_int(
                get("MAX_OUTPUT_LENGTH"), "MAX_OUTPUT_LENGTH", DEFAULT_MAX_OUTPUT_LENGTH
            ),
            max_call_depth=_parse_int(get("MAX_CALL_DEPTH"), "MAX_CALL_DEPTH", DEFAULT_MAX_CALL_DEPTH),
            max_command_count=_parse_int(
                get("MAX_COMMAND_COUNT"), "MAX_COMMAND_COUNT", DEFAULT_MAX_COMMAND_COUNT
            ),
            max_loop_iterations=loop_limit,
            max_awk_iterations=_parse_optional_int(get("MAX_AWK_ITERATIONS"), "MAX_AWK_ITERATIONS"),
            max_sed_iterations=_parse_optional_int(get("MAX_SED_ITERATIONS"), "MAX_SED_ITERATIONS"),
            max_jq_iterations=_parse_optional_int(get("MAX_JQ_ITERATIONS"), "MAX_JQ_ITERATIONS"),
            command_timeout=_parse_float(get("TIMEOUT"), "TIMEOUT", DEFAULT_COMMAND_TIMEOUT),
            state_dir=contexts_dir_default(env),
            log_level=_parse_log_level(get("LOG_LEVEL")),
            log_file=_expand_env(get("LOG_FILE"), env),
        )


def _expand_env(value: str | None, env: Mapping[str, str]) -> str | None:
    if value is None:
        return None
    return Template(value).safe_substitute(env)


def _split_list(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _parse_methods(value: str | None) -> tuple[str, ...]:
    methods = [m.upper() for m in _split_list(value)]
    unknown = [m for m in methods if m not in KNOWN_METHODS]
    if unknown:
        logger.warning("ignoring unknown http methods methods=%s", unknown)
    known = tuple(dict.fromkeys(m for m in methods if m in KNOWN_METHODS))
    return known or DEFAULT_METHODS


def _parse_int(value: str | None, name: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    try:
        parsed = int(value, 10)
    except ValueError:
        logger.warning("invalid integer name=%s%s value=%r default=%s", ENV_PREFIX, name, value, default)
        return default
    if parsed < minimum:
        logger.warning("out of range name=%s%s value=%s default=%s", ENV_PREFIX, name, parsed, default)
        return default
    return parsed


def _parse_optional_int(value: str | None, name: str) -> int | None:
    if value is None:
        return None
    parsed = _parse_int(value, name, default=0)
    return parsed or None


def _parse_float(value: str | None, name: str, default: float) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        logger.warning("invalid number name=%s%s value=%r default=%s", ENV_PREFIX, name, value, default)
        return default
    if parsed <= 0:
        logger.warning("out of range name=%s%s value=%s default=%s", ENV_PREFIX, name, parsed, default)
        return default
    return parsed


def _parse_log_level(value: str | None) -> str | None:
    if value is None:
        return None
    name = value.upper()
    if not isinstance(logging.getLevelName(name), int):
        logger.warning("invalid log level name=%sLOG_LEVEL value=%r", ENV_PREFIX, value)
        return None
    return name


def _parse_mount_entry(index: int, raw: Any, env: Mapping[str, str]) -> MountEntry:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Mount #{index} must be an object, got {type(raw).__name__}")

    mount_point = raw.get("mountPoint", raw.get("mount_point"))
    root = raw.get("root")
    mode = raw.get("mode", MountMode.OVERLAY.value)

    if not isinstance(mount_point, str) or not mount_point:
        raise ConfigurationError(f"Mount #{index} is missing 'mountPoint'")
    if not mount_point.startswith("/"):
        raise ConfigurationError(f"Mount #{index} mountPoint must be absolute: {mount_point!r}")
    if not isinstance(root, str) or not root:
        raise ConfigurationError(f"Mount #{index} is missing 'root'")
    try:
        mount_mode = MountMode(str(mode).lower())
    except ValueError:
        allowed = ", ".join(m.value for m in MountMode)
        raise ConfigurationError(
            f"Mount #{index} has unknown mode {mode!r} (expected one of: {allowed})"
        ) from None

    return MountEntry(
        mount_point=posixpath.normpath(mount_point),
        root=Path(_expand_env(root, env) or root).expanduser(),
        mode=mount_mode,
    )


def parse_mounts(value: str | None, env: Mapping[str, str] | None = None) -> tuple[MountEntry, ...]:
    """Parse the JSON mount specification into ordered ``MountEntry`` values.

    Raises:
        ConfigurationError: If the value is not a JSON list of mount objects.
    """
    if not value:
        return ()
    env = os.environ if env is None else env
    try:
        payload = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}MOUNTS is not valid JSON: {exc}") from exc
    if not isinstance(payload, list):
        raise ConfigurationError(f"{ENV_PREFIX}MOUNTS must be a JSON list of mounts")
    return tuple(_parse_mount_entry(i, raw, env) for i, raw in enumerate(payload))


def parse_seed_files(files: Any) -> dict[str, str]:
    """Validate the per-call ``files`` mapping (path -> content).

    Raises:
        ConfigurationError: If the shape is not a mapping of strings.
    """
    if files is None:
        return {}
    if not isinstance(files, Mapping):
        raise ConfigurationError("files must be a mapping of path to content")
    seeds: dict[str, str] = {}
    for path, content in files.items():
        if not isinstance(path, str) or not path:
            raise ConfigurationError(f"Invalid file path in files: {path!r}")
        if not isinstance(content, str):
            raise ConfigurationError(f"Content for {path!r} must be a string")
        seeds[path] = content
    return seeds
