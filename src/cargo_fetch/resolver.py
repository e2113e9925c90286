"""Package resolver - turn (name, constraint, source) into a pinned Package.

Selection rule for registries: the HIGHEST version (semver precedence) that
satisfies the constraint and is not yanked. Local path and git sources carry a
single version read from the package's own manifest.
"""

import logging

from .backends import Backends
from .backends import call_backend
from .config import GitConstraintPolicy
from .config import ResolveOptions
from .exceptions import ConstraintNotSatisfiedError
from .exceptions import PackageNotFoundError
from .package import Package
from .package import PackageQuery
from .source import PackageSource
from .source import SourceKind
from .version import Version
from .version import VersionConstraint

logger = logging.getLogger(__name__)


class PackageResolver:
    """
    Resolve package queries against source backends (with injected backends).

    This class implements the selection mechanism. Apps inject the backends
    (transport policy) and the resolve options (yanked allow-list, git policy).
    """

    def __init__(self, backends: Backends, options: ResolveOptions | None = None):
        """Initialize resolver with app-provided backends.

        Args:
            backends: Source backends by kind
            options: Default resolve options (overridable per call)
        """
        self.backends = backends
        self.options = options or ResolveOptions()

    async def resolve(self, query: PackageQuery, options: ResolveOptions | None = None) -> Package:
        """
        Resolve a query to the best matching pinned package.

        Args:
            query: Name, constraint and source
            options: Per-call options (defaults to the resolver's)

        Returns:
            Package pinned to the selected version

        Raises:
            PackageNotFoundError: Name unknown to the source
            ConstraintNotSatisfiedError: Name known, no version matches
            RevisionNotFoundError: Git reference does not exist
            SourceUnavailableError: Backend could not reach the source
        """
        package, _ = await self.resolve_with_revision(query, options)
        return package

    async def resolve_with_revision(
        self, query: PackageQuery, options: ResolveOptions | None = None
    ) -> tuple[Package, str | None]:
        """Like ``resolve``, also returning the commit a git reference resolved to.

        Passing the commit on to the cache spares a second reference lookup,
        which could also land on a different commit if a branch moved.
        """
        options = options or self.options
        source = query.source
        revision = None

        if source.kind is SourceKind.PATH:
            version = await self._path_version(query)
            self._check_single(query, version, enforce=True)
        elif source.kind is SourceKind.GIT:
            revision, version = await self._git_version(query)
            enforce = options.git_constraint_policy is GitConstraintPolicy.ENFORCE
            self._check_single(query, version, enforce=enforce)
        else:
            candidates = await self._registry_candidates(query, options)
            version = max(candidates)

        package = Package(name=query.name, version=version, source=source)
        logger.debug(f"Resolved {query} to {package}")
        return package, revision

    async def resolve_all(self, query: PackageQuery, options: ResolveOptions | None = None) -> list[Package]:
        """
        Resolve a query to every matching version, highest first.

        Path and git sources yield a single package.
        """
        options = options or self.options
        source = query.source

        if not source.kind.is_registry:
            return [await self.resolve(query, options)]

        candidates = await self._registry_candidates(query, options)
        return [Package(name=query.name, version=v, source=source) for v in sorted(candidates, reverse=True)]

    async def resolve_package(
        self,
        name: str,
        constraint: str | VersionConstraint | None = None,
        source: PackageSource | None = None,
        options: ResolveOptions | None = None,
    ) -> Package:
        """Convenience form of ``resolve`` taking the query fields directly."""
        return await self.resolve(PackageQuery.create(name, constraint, source), options)

    async def _registry_candidates(self, query: PackageQuery, options: ResolveOptions) -> list[Version]:
        """Versions that satisfy the constraint and are not (disallowed) yanked."""
        source = query.source
        backend = self.backends.for_source(source)

        versions = list(
            await call_backend(backend.list_versions(source, query.name), "list_versions", source, query.name)
        )
        if not versions:
            raise PackageNotFoundError(
                f"Package '{query.name}' has no published versions in {source}",
                context={"package": query.name, "source": str(source)},
            )

        # Optional capability: registries that track yanked releases
        yanked: set[Version] = set()
        yanked_versions = getattr(backend, "yanked_versions", None)
        if callable(yanked_versions):
            yanked = set(await call_backend(yanked_versions(source, query.name), "yanked_versions", source, query.name))

        matching = [
            v for v in versions if query.constraint.matches(v) and (v not in yanked or v in options.allow_yanked)
        ]
        logger.debug(f"{query.name}: {len(matching)} of {len(versions)} versions match '{query.constraint}'")

        if not matching:
            skipped = sorted(v for v in versions if v in yanked and query.constraint.matches(v))
            hint = f" ({len(skipped)} matching versions are yanked)" if skipped else ""
            raise ConstraintNotSatisfiedError(
                f"No version of '{query.name}' matches '{query.constraint}' in {source}{hint}",
                context={
                    "package": query.name,
                    "constraint": str(query.constraint),
                    "source": str(source),
                    "available": [str(v) for v in sorted(versions)],
                },
            )
        return matching

    async def _git_version(self, query: PackageQuery) -> tuple[str, Version]:
        source = query.source
        backend = self.backends.for_source(source)
        revision = await call_backend(
            backend.resolve_revision(source, source.reference), "resolve_revision", source, query.name
        )
        version = await call_backend(
            backend.read_version(source, query.name, revision), "read_version", source, query.name
        )
        logger.debug(f"{query.name}: {source.reference} -> {revision} provides v{version}")
        return revision, version

    async def _path_version(self, query: PackageQuery) -> Version:
        source = query.source
        backend = self.backends.for_source(source)
        return await call_backend(backend.read_version(source, query.name), "read_version", source, query.name)

    @staticmethod
    def _check_single(query: PackageQuery, version: Version, enforce: bool) -> None:
        if not enforce or query.constraint.matches(version):
            return
        raise ConstraintNotSatisfiedError(
            f"'{query.name}' at {query.source} is v{version}, which does not match '{query.constraint}'",
            context={
                "package": query.name,
                "constraint": str(query.constraint),
                "source": str(query.source),
                "available": [str(version)],
            },
        )
