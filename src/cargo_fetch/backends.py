"""Backend registry and the built-in local path backend.

Apps inject registry and git backends (transport is app policy). The local path
backend needs only the filesystem, so it ships with the library.
"""

import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import TypeVar

from .exceptions import BackendError
from .exceptions import FetchError
from .exceptions import InvalidPackageLayoutError
from .exceptions import PackageNotFoundError
from .exceptions import PathNotFoundError
from .exceptions import UnsupportedSourceError
from .package import ResolvedIdentity
from .protocols import GitBackend
from .protocols import PathBackend
from .protocols import RegistryBackend
from .schema import MANIFEST_NAME
from .schema import PackageManifest
from .source import PackageSource
from .source import SourceKind
from .version import Version

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_backend(awaitable: Awaitable[T], operation: str, source: PackageSource, name: str) -> T:
    """Await a backend call, wrapping foreign exceptions in BackendError.

    FetchError subclasses and cancellation (a BaseException) pass through unchanged.
    """
    try:
        return await awaitable
    except FetchError:
        raise
    except Exception as e:
        raise BackendError(
            f"{source.kind.value} backend failed during {operation} of '{name}': {e}",
            context={"package": name, "source": str(source), "operation": operation},
        ) from e


@dataclass
class Backends:
    """
    Source backends by kind.

    Example:
        >>> backends = Backends(registry=MyRegistryClient(), git=MyGitClient())
        >>> fetcher = PackageFetcher(cache_root=Path("/tmp/cache"), backends=backends)
    """

    registry: RegistryBackend | None = None
    git: GitBackend | None = None
    path: PathBackend = field(default_factory=lambda: LocalPathBackend())

    def for_source(self, source: PackageSource) -> RegistryBackend | GitBackend | PathBackend:
        """Pick the backend for a source kind.

        Raises:
            UnsupportedSourceError: If no backend is configured for the kind
        """
        if source.kind.is_registry:
            backend = self.registry
        elif source.kind is SourceKind.GIT:
            backend = self.git
        else:
            backend = self.path

        if backend is None:
            raise UnsupportedSourceError(
                f"No backend configured for {source.kind.value} sources",
                context={"source": str(source)},
            )
        return backend


def find_package_root(package_dir: Path, name: str) -> Path:
    """Find the directory holding ``name``'s Cargo.toml.

    Supports both structures:
    - Flat: package_dir/Cargo.toml is the package itself
    - Workspace: package_dir/<member>/Cargo.toml (immediate subdirectories)

    Raises:
        PathNotFoundError: If ``package_dir`` does not exist or is not a directory
        InvalidPackageLayoutError: If no Cargo.toml exists at all
        PackageNotFoundError: If manifests exist but none is named ``name``
    """
    if not package_dir.exists():
        raise PathNotFoundError(f"Package path does not exist: {package_dir}", context={"path": str(package_dir)})
    if not package_dir.is_dir():
        raise PathNotFoundError(f"Package path is not a directory: {package_dir}", context={"path": str(package_dir)})

    candidates = []

    # Strategy 1: Flat structure
    if (package_dir / MANIFEST_NAME).is_file():
        candidates.append(package_dir)

    # Strategy 2: Workspace member one level down
    for item in sorted(package_dir.iterdir()):
        if item.is_dir() and not item.name.startswith(".") and (item / MANIFEST_NAME).is_file():
            candidates.append(item)

    broken: InvalidPackageLayoutError | None = None
    for candidate in candidates:
        try:
            if PackageManifest.from_cargo_toml(candidate / MANIFEST_NAME).name == name:
                return candidate
        except InvalidPackageLayoutError as e:
            # A broken sibling manifest must not hide the package we are looking for
            logger.debug(f"Skipping unreadable manifest in {candidate}: {e.message}")
            broken = broken or e

    if not candidates:
        raise InvalidPackageLayoutError(
            f"No {MANIFEST_NAME} found in {package_dir}.\n"
            f"Expected at:\n"
            f"  - {package_dir / MANIFEST_NAME} (single package), or\n"
            f"  - {package_dir / '*' / MANIFEST_NAME} (workspace member)",
            context={"path": str(package_dir)},
        )
    if broken is not None:
        raise broken
    raise PackageNotFoundError(
        f"No package named '{name}' found at {package_dir}",
        context={"path": str(package_dir), "package": name},
    )


class LocalPathBackend:
    """PathBackend that reads packages straight from the local filesystem."""

    async def read_version(self, source: PackageSource, name: str) -> Version:
        _, manifest = self._locate(source, name)
        return manifest.version

    async def materialize(self, source: PackageSource, name: str) -> ResolvedIdentity:
        root, manifest = self._locate(source, name)
        logger.debug(f"Validated local package {name} v{manifest.version} at {root}")
        return ResolvedIdentity(version=manifest.version, root=root)

    def _locate(self, source: PackageSource, name: str) -> tuple[Path, PackageManifest]:
        root = find_package_root(source.local_dir, name)
        return root, PackageManifest.from_cargo_toml(root / MANIFEST_NAME)
