"""Shared fixtures: an in-process stand-in for the execution engine."""

import asyncio
import posixpath
import shlex
from pathlib import Path

import pytest

from sandbash.config import SandboxConfig
from sandbash.engine.base import ExecutionContext, RawResult, ShellEngine
from sandbash.errors import ConfigurationError, EngineFault
from sandbash.filesystem import MountedFs, OverlayFs, ReadWriteFs
from sandbash.tools import SandboxTools


class FakeShellEngine(ShellEngine):
    """Understands just enough shell to drive the session core.

    Each context keeps a dict of absolute path -> content. Every command
    starts from a fresh environment, like a real engine.
    """

    name = "fake"

    def __init__(self):
        self.created: list[ExecutionContext] = []
        self.released: list[ExecutionContext] = []
        self.commands: list[str] = []
        self.stdin: list[str | None] = []
        self.checks = 0

    def create_context(self, policy, filesystem, cwd, lifecycle, files=None):
        roots = []
        if isinstance(filesystem, (ReadWriteFs, OverlayFs)):
            roots.append(filesystem.root)
        elif isinstance(filesystem, MountedFs):
            roots.extend(entry.root for entry in filesystem.entries)
        for root in roots:
            if not Path(root).is_dir():
                raise ConfigurationError(f"Filesystem root does not exist: {root}")

        state = {}
        for path, content in (files or {}).items():
            state[posixpath.normpath(posixpath.join(cwd, path))] = content
        context = ExecutionContext(
            policy=policy,
            filesystem=filesystem,
            cwd=cwd,
            lifecycle=lifecycle,
            state=state,
        )
        self.created.append(context)
        return context

    def is_available(self):
        self.checks += 1
        return True

    def release(self, context):
        if context.released:
            return
        context.released = True
        context.state = None
        self.released.append(context)

    async def execute(self, context, command, cwd=None, env=None, stdin=None):
        if context.released:
            raise EngineFault(f"Context {context.id} has been released")
        self.commands.append(command)
        self.stdin.append(stdin)
        # The only suspension point, as with a real engine
        await asyncio.sleep(0)

        files = context.state
        workdir = posixpath.join(context.cwd, cwd) if cwd else context.cwd
        variables = {"HOME": "/home/user", "PWD": workdir}
        variables.update(env or {})

        def resolve(path):
            return posixpath.normpath(posixpath.join(workdir, path))

        def expand(token):
            if token.startswith("$"):
                return variables.get(token[1:], "")
            return token

        tokens = [expand(t) for t in shlex.split(command)]
        if not tokens:
            return RawResult(env=variables)
        name, args = tokens[0], tokens[1:]

        if name == "boom":
            raise RuntimeError("engine exploded")
        if name == "echo":
            return RawResult(stdout=" ".join(args) + "\n", env=variables)
        if name == "export":
            for assignment in args:
                key, _, value = assignment.partition("=")
                variables[key] = value
            return RawResult(env=variables)
        if name == "exit":
            return RawResult(exit_code=int(args[0]), env=variables)
        if name == "printf":
            content = args[1] if len(args) > 1 else ""
            if ">" in args:
                target = resolve(args[args.index(">") + 1])
                if posixpath.dirname(target).startswith("/readonly"):
                    return RawResult(stderr="Read-only file system\n", exit_code=1, env=variables)
                files[target] = content
                return RawResult(env=variables)
            return RawResult(stdout=content, env=variables)
        if name == "cat" and ">" in args:
            target = resolve(args[args.index(">") + 1])
            if posixpath.dirname(target).startswith("/readonly"):
                return RawResult(stderr="Read-only file system\n", exit_code=1, env=variables)
            files[target] = stdin or ""
            return RawResult(env=variables)
        if name == "cat":
            path = resolve([a for a in args if a != "--"][0])
            if path not in files:
                return RawResult(
                    stderr=f"cat: {path}: No such file or directory\n",
                    exit_code=1,
                    env=variables,
                )
            return RawResult(stdout=files[path], env=variables)
        if name == "ls":
            show_hidden = bool(args) and args[0].startswith("-") and "a" in args[0]
            directory = resolve(args[-1])
            names = sorted(
                {
                    p[len(directory.rstrip("/")) + 1:].split("/")[0]
                    for p in files
                    if p.startswith(directory.rstrip("/") + "/")
                }
            )
            if not show_hidden:
                names = [n for n in names if not n.startswith(".")]
            return RawResult(stdout="".join(f"-rw-r--r-- {n}\n" for n in names), env=variables)
        if name == "find":
            directory = resolve(args[0])
            prune_hidden = "-not" in args
            matches = [
                args[0].rstrip("/") + p[len(directory.rstrip("/")):]
                for p in sorted(files)
                if p.startswith(directory.rstrip("/") + "/")
            ]
            if prune_hidden:
                matches = [m for m in matches if "/." not in m[len(args[0]):]]
            return RawResult(stdout="".join(f"{m}\n" for m in matches), env=variables)

        return RawResult(
            stderr=f"bash: {name}: command not found\n",
            exit_code=127,
            env=variables,
        )


@pytest.fixture
def engine():
    return FakeShellEngine()


@pytest.fixture
def config(tmp_path):
    return SandboxConfig(state_dir=tmp_path / "contexts")


@pytest.fixture
def tools(config, engine):
    return SandboxTools(config, engine)
