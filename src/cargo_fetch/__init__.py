"""cargo-fetch - Resolve package references and fetch them into a shared cache.

Public API: sources and versions (value types), backend protocols (apps provide
transport), and PackageFetcher (resolution + cache-aware batch fetching).
"""

from .backends import Backends
from .backends import LocalPathBackend
from .cache import CacheEntry
from .cache import EntryState
from .cache import FetchCache
from .cache import FetchedPackage
from .config import FetcherConfig
from .config import FetchOptions
from .config import GitConstraintPolicy
from .config import ResolveOptions
from .config import default_cache_root
from .exceptions import BackendError
from .exceptions import BatchFetchError
from .exceptions import CacheCorruptionError
from .exceptions import ConstraintNotSatisfiedError
from .exceptions import FetchError
from .exceptions import FetchTimeoutError
from .exceptions import InitializationError
from .exceptions import InvalidConstraintError
from .exceptions import InvalidPackageLayoutError
from .exceptions import InvalidSourceError
from .exceptions import InvalidVersionError
from .exceptions import PackageNotFoundError
from .exceptions import PathNotFoundError
from .exceptions import RevisionNotFoundError
from .exceptions import SourceUnavailableError
from .exceptions import UnsupportedSourceError
from .fetcher import FetchReport
from .fetcher import PackageFetcher
from .fetcher import PackageOutcome
from .package import Package
from .package import PackageQuery
from .package import ResolvedIdentity
from .protocols import GitBackend
from .protocols import PathBackend
from .protocols import RegistryBackend
from .resolver import PackageResolver
from .schema import PackageManifest
from .source import GitReference
from .source import PackageSource
from .source import ReferenceKind
from .source import SourceKind
from .version import ConstraintKind
from .version import Version
from .version import VersionConstraint
from .version import matches

__all__ = [
    # Sources
    "PackageSource",
    "SourceKind",
    "GitReference",
    "ReferenceKind",
    # Versions
    "Version",
    "VersionConstraint",
    "ConstraintKind",
    "matches",
    # Packages
    "Package",
    "PackageQuery",
    "PackageManifest",
    "ResolvedIdentity",
    # Backends
    "RegistryBackend",
    "GitBackend",
    "PathBackend",
    "Backends",
    "LocalPathBackend",
    # Resolution
    "PackageResolver",
    "ResolveOptions",
    "GitConstraintPolicy",
    # Cache
    "FetchCache",
    "CacheEntry",
    "EntryState",
    "FetchedPackage",
    # Fetching
    "PackageFetcher",
    "FetcherConfig",
    "FetchOptions",
    "FetchReport",
    "PackageOutcome",
    "default_cache_root",
    # Exceptions
    "FetchError",
    "InvalidSourceError",
    "InvalidVersionError",
    "InvalidConstraintError",
    "PackageNotFoundError",
    "ConstraintNotSatisfiedError",
    "RevisionNotFoundError",
    "SourceUnavailableError",
    "FetchTimeoutError",
    "PathNotFoundError",
    "InvalidPackageLayoutError",
    "UnsupportedSourceError",
    "BackendError",
    "CacheCorruptionError",
    "InitializationError",
    "BatchFetchError",
]

__version__ = "0.1.0"
