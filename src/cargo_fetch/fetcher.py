"""Package fetcher - the public facade over resolver and cache.

Apps construct one PackageFetcher per cache root and inject backends (transport
policy) plus configuration. Batches run as asyncio tasks bounded by
``max_parallel_fetches``; duplicate requests in a batch collapse into one, and
requests sharing a fingerprint are deduplicated by the cache.
"""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

from .backends import Backends
from .cache import FetchCache
from .config import FetcherConfig
from .config import FetchOptions
from .config import ResolveOptions
from .config import default_cache_root
from .exceptions import BatchFetchError
from .exceptions import FetchError
from .exceptions import FetchTimeoutError
from .exceptions import InitializationError
from .exceptions import InvalidSourceError
from .package import Package
from .package import PackageQuery
from .resolver import PackageResolver
from .source import PackageSource
from .version import VersionConstraint

logger = logging.getLogger(__name__)

PackageRequest = Package | PackageQuery


@dataclass
class PackageOutcome:
    """Result for one requested package.

    Exactly one of ``root`` (success), ``error`` (failure) or ``skipped``
    (fail-fast stopped the batch before this package started) is set.
    """

    request: PackageRequest
    package: Package | None = None
    root: Path | None = None
    error: FetchError | None = None
    cached: bool = False
    recovered: bool = False
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.root is not None and self.error is None


@dataclass
class FetchReport:
    """Per-package outcomes of a batch, keyed by request."""

    outcomes: dict[PackageRequest, PackageOutcome] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(outcome.ok for outcome in self.outcomes.values())

    @property
    def roots(self) -> dict[PackageRequest, Path]:
        """Root paths of the packages that were fetched successfully."""
        return {request: outcome.root for request, outcome in self.outcomes.items() if outcome.ok}

    @property
    def failures(self) -> dict[PackageRequest, PackageOutcome]:
        """Outcomes that failed or were skipped."""
        return {request: outcome for request, outcome in self.outcomes.items() if not outcome.ok}


class PackageFetcher:
    """
    Resolve and fetch packages into a shared on-disk cache.

    Example:
        >>> fetcher = PackageFetcher(cache_root=Path("/tmp/cargo-cache"), backends=backends)
        >>> serde = Package.pin("serde", "1.0.0")
        >>> git = Package.pin("serde", "1.0.0", PackageSource.git(
        ...     "https://github.com/serde-rs/serde", GitReference.tag("v1.0.0")))
        >>> roots = await fetcher.fetch_many([serde, git])
    """

    def __init__(
        self,
        cache_root: Path | None = None,
        backends: Backends | None = None,
        config: FetcherConfig | None = None,
    ):
        """Initialize fetcher with app-provided cache root, backends and config.

        Args:
            cache_root: Cache directory (default: ``default_cache_root()``)
            backends: Source backends (default: local paths only)
            config: Named registries, git constraint policy, default fetch options

        Raises:
            InitializationError: If the cache root cannot be created or written,
                or a configured registry URL is malformed
        """
        self.config = config or FetcherConfig()
        self.cache_root = Path(cache_root).expanduser() if cache_root is not None else default_cache_root()
        self.backends = backends or Backends()

        self._registries: dict[str, PackageSource] = {}
        for name, url in self.config.registries.items():
            try:
                self._registries[name] = PackageSource.registry(url)
            except InvalidSourceError as e:
                raise InitializationError(
                    f"Registry '{name}' has an invalid index URL: {e.message}",
                    context={"registry": name, "url": url},
                ) from e

        self.resolver = PackageResolver(
            self.backends,
            ResolveOptions(git_constraint_policy=self.config.git_constraint_policy),
        )
        self.cache = FetchCache(self.cache_root, self.backends, self.config.git_constraint_policy)
        self.cache.prepare()

    def registry_source(self, name: str) -> PackageSource:
        """Source for a registry configured by name.

        Raises:
            InvalidSourceError: If no registry with that name is configured
        """
        try:
            return self._registries[name]
        except KeyError:
            raise InvalidSourceError(
                f"Unknown registry '{name}'",
                context={"registry": name, "known": sorted(self._registries)},
            ) from None

    async def resolve_package(
        self,
        name: str,
        constraint: str | VersionConstraint | None = None,
        source: PackageSource | None = None,
        options: ResolveOptions | None = None,
    ) -> Package:
        """Pin a package to its best matching version without fetching it.

        ``None`` constraint means any version; ``None`` source means crates.io.
        """
        return await self.resolver.resolve_package(name, constraint, source, options)

    async def resolve_all(
        self,
        name: str,
        constraint: str | VersionConstraint | None = None,
        source: PackageSource | None = None,
        options: ResolveOptions | None = None,
    ) -> list[Package]:
        """All matching versions, highest first."""
        return await self.resolver.resolve_all(PackageQuery.create(name, constraint, source), options)

    async def fetch(self, package: PackageRequest) -> Path:
        """Fetch a single package (resolving it first if it is a query) and return its root."""
        revision = None
        if isinstance(package, PackageQuery):
            package, revision = await self.resolver.resolve_with_revision(package)
        return await self.cache.get_or_fetch(package, revision)

    async def fetch_many(
        self, packages: Iterable[PackageRequest], options: FetchOptions | None = None
    ) -> dict[PackageRequest, Path]:
        """
        Fetch a batch and return each request's root path.

        Raises:
            BatchFetchError: If any package failed or was skipped; the full
                report is attached as ``error.report``
        """
        report = await self.fetch_report(packages, options)
        if not report.ok:
            failures = report.failures
            names = ", ".join(sorted(str(request) for request in failures))
            raise BatchFetchError(
                f"{len(failures)} of {len(report.outcomes)} packages could not be fetched: {names}",
                report=report,
                context={"failed": len(failures), "total": len(report.outcomes)},
            )
        return report.roots

    async def fetch_report(
        self, packages: Iterable[PackageRequest], options: FetchOptions | None = None
    ) -> FetchReport:
        """
        Fetch a batch, collecting a per-package outcome instead of raising.

        Args:
            packages: Pinned packages and/or queries (duplicates collapse)
            options: Batch options (default: ``config.fetch``)

        Returns:
            FetchReport keyed by request
        """
        options = options or self.config.fetch
        requests = list(dict.fromkeys(packages))
        semaphore = asyncio.Semaphore(options.max_parallel_fetches)
        stop = asyncio.Event()

        async def run(request: PackageRequest) -> PackageOutcome:
            async with semaphore:
                if stop.is_set():
                    logger.debug(f"Skipping {request}: batch stopped after a failure")
                    return PackageOutcome(request=request, skipped=True)
                outcome = await self._fetch_one(request, options.timeout_per_fetch)
                if outcome.error is not None and options.fail_fast:
                    stop.set()
                return outcome

        logger.info(f"Fetching {len(requests)} packages (max {options.max_parallel_fetches} in parallel)")
        outcomes = await asyncio.gather(*(run(request) for request in requests))
        report = FetchReport(outcomes={outcome.request: outcome for outcome in outcomes})

        cached = sum(1 for outcome in outcomes if outcome.cached)
        logger.info(
            f"Fetched {len(report.roots)}/{len(requests)} packages "
            f"({cached} from cache, {len(report.failures)} failed or skipped)"
        )
        return report

    async def _fetch_one(self, request: PackageRequest, timeout: float | None) -> PackageOutcome:
        package = request if isinstance(request, Package) else None
        revision = None
        try:
            async with asyncio.timeout(timeout):
                if package is None:
                    package, revision = await self.resolver.resolve_with_revision(request)
                fetched = await self.cache.fetch(package, revision)
        except TimeoutError:
            error = FetchTimeoutError(
                f"Fetching {request} exceeded {timeout}s",
                context={"package": str(request), "timeout": timeout},
            )
            logger.warning(error.message)
            return PackageOutcome(request=request, package=package, error=error)
        except FetchError as e:
            logger.warning(f"Failed to fetch {request}: {e.message}")
            return PackageOutcome(request=request, package=package, error=e)

        return PackageOutcome(
            request=request,
            package=fetched.package,
            root=fetched.root,
            cached=fetched.cached,
            recovered=fetched.recovered,
        )
