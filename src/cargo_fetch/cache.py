"""On-disk fetch cache with atomic publish and per-fingerprint exclusion.

Layout (not a stable format, internal to this library's own reuse):

    cache_root/
      <name>-<version-or-commit>-<digest>/   one slot per fingerprint
        .cargo-fetch-entry.json              entry marker (written last)
        ...                                  package contents
      .tmp/                                  staging for in-progress fetches
      .locks/                                inter-process lock files
      .entries/                              one receipt per published slot

State per fingerprint: ABSENT -> IN_PROGRESS -> COMPLETE, or back to ABSENT
when materialization fails or is cancelled. A slot only ever appears through a
single rename of a fully populated staging directory, so a COMPLETE slot is
never partial. A slot without a valid marker is treated as corruption: it is
discarded and refetched. So is a receipt whose slot has disappeared.
"""

import json
import logging
import os
import shutil
import tempfile
from collections.abc import AsyncIterator
from collections.abc import Iterator
from contextlib import asynccontextmanager
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import ValidationError

from .backends import Backends
from .backends import call_backend
from .config import GitConstraintPolicy
from .exceptions import CacheCorruptionError
from .exceptions import ConstraintNotSatisfiedError
from .exceptions import FetchError
from .exceptions import InitializationError
from .exceptions import InvalidPackageLayoutError
from .exceptions import PathNotFoundError
from .lock import DEFAULT_POLL_INTERVAL
from .lock import FileLock
from .lock import KeyedLocks
from .package import Package
from .source import SourceKind
from .utils import safe_component
from .utils import stable_digest
from .version import Version

logger = logging.getLogger(__name__)

ENTRY_MARKER = ".cargo-fetch-entry.json"
STAGING_DIR = ".tmp"
LOCKS_DIR = ".locks"
RECEIPTS_DIR = ".entries"


class EntryState(str, Enum):
    """Lifecycle state of a cache slot."""

    ABSENT = "absent"
    IN_PROGRESS = "in-progress"
    COMPLETE = "complete"


class CacheEntry(BaseModel):
    """Record of a published cache slot (persisted as the entry marker)."""

    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    version: Version
    revision: str | None = None
    source: str
    fetched_at: str
    root: Path

    def marker_json(self) -> str:
        data = self.model_dump(mode="json", exclude={"root"})
        # Versions are stored in their string form
        data["version"] = str(self.version)
        return json.dumps(data, indent=2)

    @classmethod
    def from_marker(cls, marker_path: Path, root: Path) -> "CacheEntry":
        data = json.loads(marker_path.read_text(encoding="utf-8"))
        data["version"] = Version.parse(data["version"])
        data["root"] = root
        return cls.model_validate(data)


@dataclass(frozen=True)
class FetchedPackage:
    """Outcome of a successful cache lookup or fetch."""

    package: Package
    root: Path
    version: Version
    revision: str | None = None
    cached: bool = False
    recovered: bool = False


@contextmanager
def _cache_io(key: str, action: str) -> Iterator[None]:
    """Report filesystem failures on the cache root as ``CacheCorruptionError``."""
    try:
        yield
    except OSError as e:
        raise CacheCorruptionError(
            f"Could not {action} for cache entry {key}: {e}",
            context={"key": key, "action": action},
        ) from e


class FetchCache:
    """
    Fetch cache rooted at an app-provided directory.

    All mutation of the cache root goes through ``fetch``: materialize into a
    private staging directory, then publish with one atomic rename while holding
    both the in-process and the inter-process lock for the fingerprint.

    Example:
        >>> cache = FetchCache(Path("~/.cache/cargo-fetch").expanduser(), backends)
        >>> cache.prepare()
        >>> root = await cache.get_or_fetch(Package.pin("serde", "1.0.0"))
    """

    def __init__(
        self,
        cache_root: Path,
        backends: Backends,
        git_constraint_policy: GitConstraintPolicy = GitConstraintPolicy.ENFORCE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.cache_root = cache_root
        self.backends = backends
        self.git_constraint_policy = git_constraint_policy
        self.poll_interval = poll_interval
        self.staging_dir = cache_root / STAGING_DIR
        self.lock_dir = cache_root / LOCKS_DIR
        self.receipt_dir = cache_root / RECEIPTS_DIR
        self._locks = KeyedLocks()

    def prepare(self) -> None:
        """Create the cache layout and confirm it is writable.

        Raises:
            InitializationError: If any directory cannot be created or written
        """
        try:
            for directory in (self.cache_root, self.staging_dir, self.lock_dir, self.receipt_dir):
                directory.mkdir(parents=True, exist_ok=True)
            fd, scratch = tempfile.mkstemp(prefix="write-check.", dir=self.staging_dir)
            os.close(fd)
            os.unlink(scratch)
        except OSError as e:
            raise InitializationError(
                f"Cache root {self.cache_root} is not usable: {e}",
                context={"cache_root": str(self.cache_root)},
            ) from e
        logger.debug(f"Cache root ready at {self.cache_root}")

    @staticmethod
    def entry_key(package: Package, pin: str) -> str:
        """Slot name for a package pinned to a version (registries) or commit (git).

        Readable prefix plus a digest over source kind, locator, name and pin.
        The git reference is left out: every reference that resolves to the
        same commit shares one slot.
        """
        source = package.source
        digest = stable_digest(source.kind.value, source.locator(), package.name, pin, length=24)
        label = pin[:12] if source.kind is SourceKind.GIT else pin
        return f"{safe_component(package.name)}-{safe_component(label)}-{digest}"

    async def get_or_fetch(self, package: Package, revision: str | None = None) -> Path:
        """Return the root of ``package``, fetching it if it is not cached."""
        return (await self.fetch(package, revision)).root

    async def fetch(self, package: Package, revision: str | None = None) -> FetchedPackage:
        """
        Look up ``package`` in the cache, materializing it on a miss.

        Args:
            package: Pinned package
            revision: Commit a git reference already resolved to; skips the
                backend lookup (ignored for other sources)

        Returns:
            FetchedPackage with the root path; ``cached`` is True on a hit and
            ``recovered`` is True when a corrupt or vanished slot was refetched

        Raises:
            FetchError: Backend failure for this package (staging rolled back)
            CacheCorruptionError: Corrupt slot found and the refetch failed, or
                the cache root could not be written
        """
        if package.source.kind is SourceKind.PATH:
            return await self._reference_local(package)

        pin, revision = await self._pin(package, revision)
        key = self.entry_key(package, pin)

        # Fast path: published slots never change, no lock needed to read them
        entry, _ = self._inspect(key)
        if entry is not None:
            return self._hit(package, entry)

        async with self._exclusive(key):
            entry, corrupt = self._inspect(key)
            if entry is not None:
                return self._hit(package, entry)

            if corrupt:
                logger.warning(f"Discarding corrupt cache entry {key}; refetching {package}")
                self._discard(key)

            try:
                entry = await self._materialize(package, key, revision)
            except FetchError as e:
                if not corrupt or isinstance(e, CacheCorruptionError):
                    raise
                raise CacheCorruptionError(
                    f"Cache entry {key} was corrupt and refetching {package} failed: {e.message}",
                    context={"key": key, "package": str(package), "cause": type(e).__name__},
                ) from e

        return FetchedPackage(
            package=package,
            root=entry.root,
            version=entry.version,
            revision=entry.revision,
            recovered=corrupt,
        )

    def entry_state(self, key: str) -> EntryState:
        """Current state of a slot as seen from this process."""
        if self._locks.is_held(key):
            return EntryState.IN_PROGRESS
        entry, _ = self._inspect(key)
        return EntryState.COMPLETE if entry is not None else EntryState.ABSENT

    def list_entries(self) -> list[CacheEntry]:
        """
        List all complete entries in the cache root.

        Returns:
            Entries sorted by slot name
        """
        if not self.cache_root.is_dir():
            return []
        entries = []
        for slot in sorted(self.cache_root.iterdir()):
            if slot.name.startswith("."):
                continue
            entry, _ = self._inspect(slot.name)
            if entry is not None:
                entries.append(entry)
        return entries

    async def _pin(self, package: Package, revision: str | None = None) -> tuple[str, str | None]:
        """Cache pin for a package: its version, or for git the resolved commit."""
        source = package.source
        if source.kind is not SourceKind.GIT:
            return str(package.version), None

        reference = source.reference
        if revision is not None:
            revision = revision.lower()
        elif reference.is_pinned:
            revision = reference.value.lower()
        else:
            backend = self.backends.for_source(source)
            revision = await call_backend(
                backend.resolve_revision(source, reference), "resolve_revision", source, package.name
            )
        return revision, revision

    def _receipt(self, key: str) -> Path:
        return self.receipt_dir / f"{key}.json"

    def _inspect(self, key: str) -> tuple[CacheEntry | None, bool]:
        """Classify a slot: (entry, False) complete, (None, False) absent, (None, True) corrupt."""
        slot = self.cache_root / key
        if not slot.exists() and not slot.is_symlink():
            # Published before but removed from under us
            return None, self._receipt(key).is_file()
        if not slot.is_dir() or not os.access(slot, os.R_OK | os.X_OK):
            return None, True

        marker = slot / ENTRY_MARKER
        try:
            entry = CacheEntry.from_marker(marker, root=slot)
        except (OSError, ValueError, KeyError, TypeError, ValidationError, FetchError) as e:
            logger.debug(f"Invalid entry marker in {slot}: {e}")
            return None, True

        if entry.key != key:
            logger.debug(f"Entry marker in {slot} belongs to {entry.key}")
            return None, True
        return entry, False

    def _hit(self, package: Package, entry: CacheEntry) -> FetchedPackage:
        self._verify_version(package, entry.version)
        logger.debug(f"Cache hit for {package} at {entry.root}")
        return FetchedPackage(
            package=package,
            root=entry.root,
            version=entry.version,
            revision=entry.revision,
            cached=True,
        )

    async def _materialize(self, package: Package, key: str, revision: str | None) -> CacheEntry:
        """Materialize into staging and publish atomically; roll back on any failure."""
        source = package.source
        backend = self.backends.for_source(source)
        slot = self.cache_root / key

        with _cache_io(key, "create a staging directory"):
            self.staging_dir.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f"{key}.", dir=self.staging_dir))
        published = False
        try:
            logger.info(f"Fetching {package}")
            pin = revision if source.kind is SourceKind.GIT else package.version
            identity = await call_backend(
                backend.materialize(source, package.name, pin, staging), "materialize", source, package.name
            )

            with _cache_io(key, "read the staging directory"):
                empty = not any(staging.iterdir())
            if empty:
                raise InvalidPackageLayoutError(
                    f"Backend produced no files for {package}",
                    context={"package": str(package), "source": str(source)},
                )

            version = identity.version or package.version
            self._verify_version(package, version)

            entry = CacheEntry(
                key=key,
                name=package.name,
                version=version,
                revision=identity.revision or revision,
                source=str(source),
                fetched_at=datetime.now(UTC).isoformat(),
                root=slot,
            )
            with _cache_io(key, "write the entry marker"):
                (staging / ENTRY_MARKER).write_text(entry.marker_json(), encoding="utf-8")

            with _cache_io(key, f"publish to {slot}"):
                os.rename(staging, slot)
            published = True
        finally:
            if not published:
                shutil.rmtree(staging, ignore_errors=True)
                logger.debug(f"Rolled back staging for {key}")

        self._record(entry)
        logger.info(f"Cached {package} at {slot}")
        return entry

    def _record(self, entry: CacheEntry) -> None:
        """Leave a receipt outside the slot so a vanished slot is detected later."""
        try:
            self.receipt_dir.mkdir(parents=True, exist_ok=True)
            self._receipt(entry.key).write_text(entry.marker_json(), encoding="utf-8")
        except OSError as e:
            # The slot is published and usable; only recovery reporting is lost
            logger.warning(f"Could not record receipt for {entry.key}: {e}")

    async def _reference_local(self, package: Package) -> FetchedPackage:
        """Local path packages are validated in place; nothing is copied."""
        source = package.source
        backend = self.backends.for_source(source)
        identity = await call_backend(backend.materialize(source, package.name), "materialize", source, package.name)

        root = identity.root or source.local_dir
        if not root.is_dir():
            raise PathNotFoundError(f"Package root {root} does not exist", context={"path": str(root)})

        version = identity.version or package.version
        self._verify_version(package, version)
        return FetchedPackage(package=package, root=root, version=version)

    def _verify_version(self, package: Package, actual: Version) -> None:
        """Materialized version must be the pinned one (build metadata ignored)."""
        if actual.semver == package.version.semver:
            return

        kind = package.source.kind
        if kind is SourceKind.GIT and self.git_constraint_policy is GitConstraintPolicy.AUTHORITATIVE:
            logger.debug(f"{package} checked out as v{actual}; git reference is authoritative")
            return

        context = {"package": str(package), "expected": str(package.version), "actual": str(actual)}
        if kind.is_registry:
            raise InvalidPackageLayoutError(
                f"Registry delivered v{actual} when {package} was requested",
                context=context,
            )
        raise ConstraintNotSatisfiedError(
            f"{package.source} provides '{package.name}' v{actual}, not v{package.version}",
            context=context,
        )

    def _discard(self, key: str) -> None:
        """Move a slot out of the namespace, then delete it along with its receipt."""
        slot = self.cache_root / key
        with _cache_io(key, "discard the corrupt slot"):
            if slot.exists() or slot.is_symlink():
                self.staging_dir.mkdir(parents=True, exist_ok=True)
                graveyard = Path(tempfile.mkdtemp(prefix=f"{key}.discard.", dir=self.staging_dir))
                os.rename(slot, graveyard / "slot")
                shutil.rmtree(graveyard, ignore_errors=True)
            self._receipt(key).unlink(missing_ok=True)

    @asynccontextmanager
    async def _exclusive(self, key: str) -> AsyncIterator[None]:
        async with self._locks.hold(key):
            lock = FileLock(self.lock_dir / f"{key}.lock", self.poll_interval)
            with _cache_io(key, "acquire the lock file"):
                await lock.acquire()
            try:
                yield
            finally:
                lock.release()
