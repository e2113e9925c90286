"""Protocols for source backends.

The library only requires these interfaces; registry transport, git transport and
authentication live in backend implementations supplied by the app. One protocol
per source kind, dispatched once by ``Backends.for_source``.

Backends signal failures with the exceptions in ``cargo_fetch.exceptions``
(``SourceUnavailableError``, ``PackageNotFoundError``, ``RevisionNotFoundError``,
``PathNotFoundError``, ``InvalidPackageLayoutError``). Anything else escaping a
backend is wrapped in ``BackendError``.
"""

from collections.abc import Sequence
from pathlib import Path
from typing import Protocol
from typing import runtime_checkable

from .package import ResolvedIdentity
from .source import GitReference
from .source import PackageSource
from .version import Version


@runtime_checkable
class RegistryBackend(Protocol):
    """Backend for crates.io, alternate registries and local registries.

    Optionally a registry backend may also provide::

        async def yanked_versions(self, source: PackageSource, name: str) -> set[Version]

    Yanked versions are skipped during resolution unless explicitly allowed.
    """

    async def list_versions(self, source: PackageSource, name: str) -> Sequence[Version]:
        """List every published version of ``name``.

        Raises:
            PackageNotFoundError: Name unknown to the registry
            SourceUnavailableError: Network, index or auth failure
        """
        ...

    async def materialize(
        self, source: PackageSource, name: str, version: Version, destination: Path
    ) -> ResolvedIdentity:
        """Download and extract ``name`` ``version`` into ``destination``.

        ``destination`` already exists and is empty. The backend must leave the
        package root directly in it.
        """
        ...


@runtime_checkable
class GitBackend(Protocol):
    """Backend for git repositories."""

    async def resolve_revision(self, source: PackageSource, reference: GitReference) -> str:
        """Resolve a branch, tag, revision or the default branch to a full commit SHA.

        Raises:
            RevisionNotFoundError: Reference does not exist
            SourceUnavailableError: Repository unreachable
        """
        ...

    async def read_version(self, source: PackageSource, name: str, revision: str) -> Version:
        """Read ``name``'s version from its manifest at ``revision``.

        Raises:
            PackageNotFoundError: No package called ``name`` in the repository
        """
        ...

    async def materialize(
        self, source: PackageSource, name: str, revision: str, destination: Path
    ) -> ResolvedIdentity:
        """Check out ``name`` at ``revision`` into ``destination``."""
        ...


@runtime_checkable
class PathBackend(Protocol):
    """Backend for local path packages (validated and referenced in place, never copied)."""

    async def read_version(self, source: PackageSource, name: str) -> Version:
        """Read the local package's version from its manifest."""
        ...

    async def materialize(self, source: PackageSource, name: str) -> ResolvedIdentity:
        """Confirm the package exists and is well formed; return its root.

        Raises:
            PathNotFoundError: Source directory does not exist
            InvalidPackageLayoutError: Manifest missing or malformed
        """
        ...
