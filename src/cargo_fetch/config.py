"""Fetcher configuration and per-call options.

Configuration is injected by the app; nothing here reads global state except
``default_cache_root``, which consults the environment once when no cache root
is supplied.
"""

import os
from enum import Enum
from pathlib import Path

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from .version import Version

CACHE_DIR_NAME = "cargo-fetch"
CACHE_ROOT_ENV = "CARGO_FETCH_HOME"


class GitConstraintPolicy(str, Enum):
    """How version constraints apply to git sources.

    ENFORCE: the version in the manifest at the resolved commit must satisfy the
        constraint, exactly as for registries.
    AUTHORITATIVE: the git reference decides; the constraint is not checked.
    """

    ENFORCE = "enforce"
    AUTHORITATIVE = "authoritative"


class ResolveOptions(BaseModel):
    """Options for version resolution."""

    model_config = ConfigDict(frozen=True)

    git_constraint_policy: GitConstraintPolicy = GitConstraintPolicy.ENFORCE
    allow_yanked: frozenset[Version] = frozenset()


class FetchOptions(BaseModel):
    """Options for a batch fetch.

    Attributes:
        fail_fast: Stop starting new work after the first failure
        max_parallel_fetches: Upper bound on packages processed concurrently
        timeout_per_fetch: Per-package deadline in seconds (None = no deadline)
    """

    model_config = ConfigDict(frozen=True)

    fail_fast: bool = False
    max_parallel_fetches: int = Field(default_factory=lambda: os.cpu_count() or 4, gt=0)
    timeout_per_fetch: float | None = Field(default=None, gt=0)


class FetcherConfig(BaseModel):
    """App-provided fetcher configuration.

    Example:
        >>> config = FetcherConfig(
        ...     registries={"my-registry": "https://my-intranet:8080/git/index"},
        ...     git_constraint_policy=GitConstraintPolicy.AUTHORITATIVE,
        ... )
    """

    model_config = ConfigDict(frozen=True)

    registries: dict[str, str] = Field(default_factory=dict)
    git_constraint_policy: GitConstraintPolicy = GitConstraintPolicy.ENFORCE
    fetch: FetchOptions = Field(default_factory=FetchOptions)


def default_cache_root() -> Path:
    """Well-known user-level cache directory.

    ``$CARGO_FETCH_HOME`` wins, then ``$XDG_CACHE_HOME/cargo-fetch``, then
    ``~/.cache/cargo-fetch``.
    """
    override = os.environ.get(CACHE_ROOT_ENV)
    if override:
        return Path(override).expanduser()

    xdg = os.environ.get("XDG_CACHE_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".cache"
    return base / CACHE_DIR_NAME
