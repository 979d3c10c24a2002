"""Execution context lifecycles: the persistent slot and one-shot contexts."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Mapping

from sandbash.config import SandboxConfig, parse_seed_files
from sandbash.engine.base import ExecutionContext, Lifecycle, ShellEngine
from sandbash.filesystem import default_cwd, select_filesystem
from sandbash.policy import build_policy

logger = logging.getLogger(__name__)


def _new_context(
    engine: ShellEngine,
    config: SandboxConfig,
    lifecycle: Lifecycle,
    files: Mapping[str, str] | None = None,
) -> ExecutionContext:
    binding = select_filesystem(config)
    return engine.create_context(
        policy=build_policy(config),
        filesystem=binding,
        cwd=default_cwd(binding, config),
        lifecycle=lifecycle,
        files=files,
    )


class SessionManager:
    """Owns the single persistent execution context.

    States are Empty and Active. ``get_or_create`` moves Empty to Active and
    reuses an Active context; ``reset`` always ends in Empty. Only the
    filesystem of the context survives between calls; the engine starts
    every command with a fresh shell.

    Creation and storage happen without an ``await`` in between, so callers
    on one event loop can never build two persistent contexts.
    """

    def __init__(self, engine: ShellEngine, config: SandboxConfig):
        self.engine = engine
        self.config = config
        self._context: ExecutionContext | None = None

    @property
    def active(self) -> bool:
        return self._context is not None

    def get_or_create(self) -> ExecutionContext:
        """Return the persistent context, building it on first use.

        Raises:
            ConfigurationError: If the context cannot be built. The slot
                stays Empty so the next call retries.
        """
        if self._context is None:
            self._context = _new_context(self.engine, self.config, Lifecycle.PERSISTENT)
            logger.info("persistent context created id=%s", self._context.id)
        return self._context

    def reset(self) -> None:
        """Discard the persistent context, if any."""
        context, self._context = self._context, None
        if context is None:
            logger.debug("reset with no persistent context")
            return
        self.engine.release(context)
        logger.info("persistent context reset id=%s", context.id)

    close = reset


class EphemeralContextFactory:
    """Builds a fresh, private context for each call."""

    def __init__(self, engine: ShellEngine, config: SandboxConfig):
        self.engine = engine
        self.config = config

    def create(self, files: Mapping[str, str] | None = None) -> ExecutionContext:
        """Create an isolated context with ``files`` (path -> content) in place.

        Raises:
            ConfigurationError: If ``files`` is malformed or the filesystem
                root is inaccessible.
        """
        seeds = parse_seed_files(files)
        context = _new_context(self.engine, self.config, Lifecycle.EPHEMERAL, files=seeds)
        logger.debug("ephemeral context created id=%s seeded=%s", context.id, len(seeds))
        return context

    @contextmanager
    def scoped(self, files: Mapping[str, str] | None = None) -> Iterator[ExecutionContext]:
        """Create a context and release it when the block exits."""
        context = self.create(files)
        try:
            yield context
        finally:
            self.engine.release(context)
