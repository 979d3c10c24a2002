"""Execution policy derived from configuration.

Two immutable values are built per context: the network policy and the
execution limits. The builders are pure functions of ``SandboxConfig``.

Network selection is a three-way decision:
- network flag off: ``NetworkDisabled``
- flag on with at least one URL prefix: ``AllowListedNetwork``
- flag on without prefixes: ``FullNetworkAccess``

Explicit prefixes always win over unrestricted access.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from sandbash.config import SandboxConfig


class HttpMethod(str, Enum):
    GET = "GET"
    HEAD = "HEAD"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"
    OPTIONS = "OPTIONS"


DEFAULT_HTTP_METHODS = frozenset({HttpMethod.GET, HttpMethod.HEAD})


@dataclass(frozen=True)
class NetworkDisabled:
    """No network access at all."""

    enabled = False


@dataclass(frozen=True)
class AllowListedNetwork:
    """Requests limited to URL prefixes and HTTP methods."""

    url_prefixes: tuple[str, ...]
    methods: frozenset[HttpMethod]
    max_redirects: int
    timeout_ms: int

    enabled = True

    def __post_init__(self) -> None:
        if not self.url_prefixes:
            raise ValueError("AllowListedNetwork requires at least one URL prefix")


@dataclass(frozen=True)
class FullNetworkAccess:
    """Unrestricted network access."""

    max_redirects: int
    timeout_ms: int

    enabled = True


NetworkPolicy = Union[NetworkDisabled, AllowListedNetwork, FullNetworkAccess]


@dataclass(frozen=True)
class ExecutionLimits:
    """Resource caps enforced by the engine. Every field must be positive."""

    max_call_depth: int
    max_command_count: int
    max_loop_iterations: int
    max_awk_iterations: int
    max_sed_iterations: int
    max_jq_iterations: int

    def __post_init__(self) -> None:
        for name, value in asdict(self).items():
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")


@dataclass(frozen=True)
class ExecutionPolicy:
    network: NetworkPolicy
    limits: ExecutionLimits

    def to_dict(self) -> dict[str, Any]:
        return {
            "network": describe_network(self.network),
            "limits": asdict(self.limits),
        }


def _http_methods(names: tuple[str, ...]) -> frozenset[HttpMethod]:
    methods = set()
    for name in names:
        try:
            methods.add(HttpMethod(name.upper()))
        except ValueError:
            continue
    return frozenset(methods) or DEFAULT_HTTP_METHODS


def build_network_policy(config: "SandboxConfig") -> NetworkPolicy:
    """Derive the network policy for a new context."""
    if not config.allow_network:
        return NetworkDisabled()

    prefixes = tuple(dict.fromkeys(p for p in config.allowed_url_prefixes if p))
    if prefixes:
        return AllowListedNetwork(
            url_prefixes=prefixes,
            methods=_http_methods(config.allowed_methods),
            max_redirects=config.max_redirects,
            timeout_ms=config.network_timeout_ms,
        )

    # Enabled without prefixes means the whole internet.
    return FullNetworkAccess(
        max_redirects=config.max_redirects,
        timeout_ms=config.network_timeout_ms,
    )


def build_execution_limits(config: "SandboxConfig") -> ExecutionLimits:
    """Derive execution limits; iteration sub-limits follow the loop limit."""
    loop = config.max_loop_iterations
    return ExecutionLimits(
        max_call_depth=config.max_call_depth,
        max_command_count=config.max_command_count,
        max_loop_iterations=loop,
        max_awk_iterations=config.max_awk_iterations or loop,
        max_sed_iterations=config.max_sed_iterations or loop,
        max_jq_iterations=config.max_jq_iterations or loop,
    )


def build_policy(config: "SandboxConfig") -> ExecutionPolicy:
    return ExecutionPolicy(
        network=build_network_policy(config),
        limits=build_execution_limits(config),
    )


def describe_network(policy: NetworkPolicy) -> dict[str, Any]:
    """JSON-friendly description of a network policy."""
    if isinstance(policy, AllowListedNetwork):
        return {
            "mode": "allow_list",
            "url_prefixes": list(policy.url_prefixes),
            "methods": sorted(m.value for m in policy.methods),
            "max_redirects": policy.max_redirects,
            "timeout_ms": policy.timeout_ms,
        }
    if isinstance(policy, FullNetworkAccess):
        return {
            "mode": "full",
            "max_redirects": policy.max_redirects,
            "timeout_ms": policy.timeout_ms,
        }
    return {"mode": "disabled"}
