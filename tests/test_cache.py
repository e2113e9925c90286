"""Tests for FetchCache (dedup, atomic publish, recovery)."""

import asyncio
import json
import shutil

import pytest
from cargo_fetch import BackendError
from cargo_fetch import Backends
from cargo_fetch import CacheCorruptionError
from cargo_fetch import ConstraintNotSatisfiedError
from cargo_fetch import EntryState
from cargo_fetch import FetchCache
from cargo_fetch import GitConstraintPolicy
from cargo_fetch import GitReference
from cargo_fetch import InitializationError
from cargo_fetch import InvalidPackageLayoutError
from cargo_fetch import Package
from cargo_fetch import PackageSource
from cargo_fetch import SourceUnavailableError
from cargo_fetch import Version
from cargo_fetch.cache import ENTRY_MARKER

from .conftest import SERDE_MAIN_SHA
from .conftest import SERDE_V1_SHA
from .conftest import UnpublishableRegistry
from .conftest import write_crate

SERDE_REPO = "https://github.com/serde-rs/serde"


def make_cache(tmp_path, backends, **kwargs) -> FetchCache:
    cache = FetchCache(tmp_path / "cache", backends, poll_interval=0.01, **kwargs)
    cache.prepare()
    return cache


def staging_contents(cache: FetchCache) -> list:
    return list(cache.staging_dir.iterdir())


@pytest.fixture
def cache(tmp_path, backends):
    return make_cache(tmp_path, backends)


@pytest.fixture
def serde():
    return Package.pin("serde", "1.0.0")


class TestFetch:
    """Fetch-once behaviour."""

    @pytest.mark.asyncio
    async def test_fetch_populates_slot(self, cache, serde, registry):
        """Test a miss materializes the package into its own slot."""
        fetched = await cache.fetch(serde)

        assert not fetched.cached
        assert not fetched.recovered
        assert fetched.version == Version.parse("1.0.0")
        assert (fetched.root / "Cargo.toml").is_file()
        assert (fetched.root / ENTRY_MARKER).is_file()
        assert fetched.root.parent == cache.cache_root
        assert registry.materialize_calls == [("serde", "1.0.0")]

    @pytest.mark.asyncio
    async def test_repeat_fetch_is_a_hit(self, cache, serde, registry):
        """Test a second fetch of the same package materializes nothing."""
        first = await cache.fetch(serde)
        second = await cache.fetch(serde)

        assert second.cached
        assert second.root == first.root
        assert len(registry.materialize_calls) == 1

    @pytest.mark.asyncio
    async def test_hit_across_instances(self, tmp_path, backends, serde, registry):
        """Test a fresh cache over the same root reuses earlier work."""
        first = await make_cache(tmp_path, backends).get_or_fetch(serde)
        second = await make_cache(tmp_path, backends).fetch(serde)

        assert second.cached
        assert second.root == first
        assert len(registry.materialize_calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self, cache, serde, registry):
        """Test concurrent fetches of one package wait for a single materialization."""
        registry.delay = 0.05

        results = await asyncio.gather(*(cache.fetch(serde) for _ in range(10)))

        assert len(registry.materialize_calls) == 1
        assert len({result.root for result in results}) == 1
        assert sum(1 for result in results if not result.cached) == 1

    @pytest.mark.asyncio
    async def test_separate_instances_share_one_fetch(self, tmp_path, backends, serde, registry):
        """Test the file lock deduplicates across independent caches on one root."""
        registry.delay = 0.05
        cache_a = make_cache(tmp_path, backends)
        cache_b = make_cache(tmp_path, backends)

        a, b = await asyncio.gather(cache_a.fetch(serde), cache_b.fetch(serde))

        assert len(registry.materialize_calls) == 1
        assert a.root == b.root

    @pytest.mark.asyncio
    async def test_distinct_packages_fetch_in_parallel(self, cache, registry):
        """Test different packages do not wait on each other's locks."""
        registry.delay = 0.05

        await asyncio.gather(
            cache.fetch(Package.pin("serde", "1.0.0")),
            cache.fetch(Package.pin("rand", "0.8.5")),
        )

        assert registry.max_active == 2

    @pytest.mark.asyncio
    async def test_marker_contents(self, cache, serde):
        """Test the entry marker records identity and source, not the root path."""
        fetched = await cache.fetch(serde)

        marker = json.loads((fetched.root / ENTRY_MARKER).read_text())
        assert marker["name"] == "serde"
        assert marker["version"] == "1.0.0"
        assert marker["key"] == fetched.root.name
        assert marker["source"] == str(PackageSource.crates_io())
        assert "root" not in marker


class TestRollback:
    """Failed or interrupted fetches leave no trace."""

    @pytest.mark.asyncio
    async def test_backend_failure_rolls_back(self, cache, serde, registry):
        """Test a backend error leaves the slot absent and a retry starts over."""
        registry.fail_with = SourceUnavailableError("index unreachable")
        key = FetchCache.entry_key(serde, "1.0.0")

        with pytest.raises(SourceUnavailableError):
            await cache.fetch(serde)

        assert cache.entry_state(key) is EntryState.ABSENT
        assert not (cache.cache_root / key).exists()
        assert staging_contents(cache) == []

        # A retry starts from scratch
        registry.fail_with = None
        fetched = await cache.fetch(serde)
        assert not fetched.cached
        assert len(registry.materialize_calls) == 2

    @pytest.mark.asyncio
    async def test_foreign_exception_wrapped(self, cache, serde, registry):
        """Test backend exceptions outside the taxonomy surface as BackendError."""
        registry.fail_with = ConnectionResetError("peer reset")

        with pytest.raises(BackendError) as exc_info:
            await cache.fetch(serde)

        assert isinstance(exc_info.value.__cause__, ConnectionResetError)
        assert staging_contents(cache) == []

    @pytest.mark.asyncio
    async def test_cancellation_rolls_back(self, cache, serde, registry):
        """Test cancelling an in-flight fetch removes its staging directory."""
        registry.delay = 5
        key = FetchCache.entry_key(serde, "1.0.0")

        task = asyncio.create_task(cache.fetch(serde))
        await asyncio.sleep(0.05)
        assert cache.entry_state(key) is EntryState.IN_PROGRESS

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert cache.entry_state(key) is EntryState.ABSENT
        assert staging_contents(cache) == []

        registry.delay = 0
        fetched = await asyncio.wait_for(cache.fetch(serde), timeout=2)
        assert (fetched.root / "Cargo.toml").is_file()

    @pytest.mark.asyncio
    async def test_empty_materialization_rejected(self, cache, serde, registry):
        """Test a backend that writes nothing never yields a complete entry."""
        registry.write_files = False

        with pytest.raises(InvalidPackageLayoutError, match="no files"):
            await cache.fetch(serde)

        assert cache.entry_state(FetchCache.entry_key(serde, "1.0.0")) is EntryState.ABSENT
        assert cache.list_entries() == []

    @pytest.mark.asyncio
    async def test_registry_version_mismatch(self, cache, serde, registry):
        """Test a registry delivering another version is rejected."""
        registry.delivered_version = "1.0.1"

        with pytest.raises(InvalidPackageLayoutError, match="delivered v1.0.1"):
            await cache.fetch(serde)

        assert cache.list_entries() == []

    @pytest.mark.asyncio
    async def test_marker_write_failure(self, tmp_path, serde):
        """Test an OS error while writing the marker is a taxonomy error and rolls back."""
        registry = UnpublishableRegistry({"serde": ["1.0.0"]}, blocked={"serde"})
        cache = make_cache(tmp_path, Backends(registry=registry))

        with pytest.raises(CacheCorruptionError, match="write the entry marker") as exc_info:
            await cache.fetch(serde)

        assert isinstance(exc_info.value.__cause__, OSError)
        assert cache.entry_state(FetchCache.entry_key(serde, "1.0.0")) is EntryState.ABSENT
        assert staging_contents(cache) == []

    @pytest.mark.asyncio
    async def test_unusable_lock_dir(self, cache, serde, registry):
        """Test a lock directory replaced by a file fails the fetch with a taxonomy error."""
        cache.lock_dir.rmdir()
        cache.lock_dir.write_text("not a directory")

        with pytest.raises(CacheCorruptionError, match="acquire the lock file") as exc_info:
            await cache.fetch(serde)

        assert isinstance(exc_info.value.__cause__, OSError)
        assert registry.materialize_calls == []

    @pytest.mark.asyncio
    async def test_unusable_staging_dir(self, cache, serde, registry):
        """Test a staging directory replaced by a file fails the fetch with a taxonomy error."""
        cache.staging_dir.rmdir()
        cache.staging_dir.write_text("not a directory")

        with pytest.raises(CacheCorruptionError, match="create a staging directory"):
            await cache.fetch(serde)

        assert registry.materialize_calls == []


class TestRecovery:
    """Corrupt slots are discarded and refetched."""

    @pytest.mark.asyncio
    async def test_missing_marker(self, cache, serde, registry):
        """Test a slot without its marker is refetched and reported as recovered."""
        fetched = await cache.fetch(serde)
        (fetched.root / ENTRY_MARKER).unlink()

        again = await cache.fetch(serde)

        assert again.recovered
        assert not again.cached
        assert again.root == fetched.root
        assert (again.root / ENTRY_MARKER).is_file()
        assert len(registry.materialize_calls) == 2

    @pytest.mark.asyncio
    async def test_garbled_marker(self, cache, serde):
        """Test an unreadable marker counts as corruption."""
        fetched = await cache.fetch(serde)
        (fetched.root / ENTRY_MARKER).write_text("{not json")

        again = await cache.fetch(serde)

        assert again.recovered

    @pytest.mark.asyncio
    async def test_slot_replaced_by_file(self, cache, serde):
        """Test a regular file in place of the slot is discarded."""
        key = FetchCache.entry_key(serde, "1.0.0")
        (cache.cache_root / key).write_text("stray")

        fetched = await cache.fetch(serde)

        assert fetched.recovered
        assert fetched.root.is_dir()

    @pytest.mark.asyncio
    async def test_slot_removed_entirely(self, cache, serde, registry):
        """Test a published slot deleted from outside is refetched and reported as recovered."""
        fetched = await cache.fetch(serde)
        shutil.rmtree(fetched.root)
        assert cache.entry_state(fetched.root.name) is EntryState.ABSENT

        again = await cache.fetch(serde)

        assert again.recovered
        assert not again.cached
        assert (again.root / ENTRY_MARKER).is_file()
        assert len(registry.materialize_calls) == 2

        # Once refetched, the slot is an ordinary hit again
        third = await cache.fetch(serde)
        assert third.cached
        assert not third.recovered

    @pytest.mark.asyncio
    async def test_refetch_failure_reports_corruption(self, cache, serde, registry):
        """Test a failed refetch of a corrupt slot raises CacheCorruptionError."""
        fetched = await cache.fetch(serde)
        (fetched.root / ENTRY_MARKER).unlink()
        registry.fail_with = SourceUnavailableError("index unreachable")

        with pytest.raises(CacheCorruptionError) as exc_info:
            await cache.fetch(serde)

        assert isinstance(exc_info.value.__cause__, SourceUnavailableError)
        assert cache.entry_state(fetched.root.name) is EntryState.ABSENT

        # The corrupt slot is gone, so the next failure is an ordinary one
        with pytest.raises(SourceUnavailableError):
            await cache.fetch(serde)


class TestGit:
    """Git slots are keyed by the resolved commit."""

    @pytest.mark.asyncio
    async def test_keyed_by_commit(self, cache, git):
        """Test a tag is resolved to its commit and the slot is named after it."""
        source = PackageSource.git(SERDE_REPO, GitReference.tag("v1.0.0"))
        package = Package.pin("serde", "1.0.0", source)

        first = await cache.fetch(package)
        second = await cache.fetch(package)

        assert first.revision == SERDE_V1_SHA
        assert second.cached
        assert git.materialize_calls == [("serde", SERDE_V1_SHA)]
        assert first.root.name == FetchCache.entry_key(package, SERDE_V1_SHA)

    @pytest.mark.asyncio
    async def test_references_to_one_commit_share_a_slot(self, cache, git):
        """Test the default branch and a named branch at the same commit reuse one checkout."""
        default = Package.pin("serde", "1.1.0", PackageSource.git(SERDE_REPO))
        main = Package.pin("serde", "1.1.0", PackageSource.git(SERDE_REPO, GitReference.branch("main")))

        first = await cache.fetch(default)
        second = await cache.fetch(main)

        assert second.cached
        assert second.root == first.root
        assert git.materialize_calls == [("serde", SERDE_MAIN_SHA)]

    @pytest.mark.asyncio
    async def test_pinned_revision_skips_lookup(self, cache, git):
        """Test a full commit SHA reference needs no backend lookup."""
        source = PackageSource.git(SERDE_REPO, GitReference.revision(SERDE_V1_SHA))

        fetched = await cache.fetch(Package.pin("serde", "1.0.0", source))

        assert git.resolve_calls == []
        assert fetched.revision == SERDE_V1_SHA

    @pytest.mark.asyncio
    async def test_known_revision_skips_lookup(self, cache, git):
        """Test a commit resolved earlier is used as is for a branch reference."""
        source = PackageSource.git(SERDE_REPO, GitReference.branch("main"))

        fetched = await cache.fetch(Package.pin("serde", "1.1.0", source), revision=SERDE_MAIN_SHA)

        assert git.resolve_calls == []
        assert git.materialize_calls == [("serde", SERDE_MAIN_SHA)]
        assert fetched.revision == SERDE_MAIN_SHA

    @pytest.mark.asyncio
    async def test_manifest_version_enforced(self, cache):
        """Test the checked-out manifest must carry the pinned version."""
        source = PackageSource.git(SERDE_REPO, GitReference.tag("v1.0.0"))

        with pytest.raises(ConstraintNotSatisfiedError, match="provides 'serde' v1.0.0, not v2.0.0"):
            await cache.fetch(Package.pin("serde", "2.0.0", source))

        assert cache.list_entries() == []

    @pytest.mark.asyncio
    async def test_reference_authoritative(self, tmp_path, backends):
        """Test the authoritative policy accepts whatever version the reference holds."""
        cache = make_cache(tmp_path, backends, git_constraint_policy=GitConstraintPolicy.AUTHORITATIVE)
        source = PackageSource.git(SERDE_REPO, GitReference.tag("v1.0.0"))

        fetched = await cache.fetch(Package.pin("serde", "2.0.0", source))

        assert fetched.version == Version.parse("1.0.0")


class TestLocalPath:
    """Path sources are referenced in place, never copied."""

    @pytest.mark.asyncio
    async def test_path_bypasses_cache(self, tmp_path, cache):
        """Test a path package resolves to its own directory and adds no slot."""
        crate = write_crate(tmp_path / "vendor" / "serde", "serde", "1.0.0")
        package = Package.pin("serde", "1.0.0", PackageSource.path(crate))

        fetched = await cache.fetch(package)

        assert fetched.root == crate
        assert not fetched.cached
        assert cache.list_entries() == []
        assert sorted(p.name for p in cache.cache_root.iterdir()) == [".entries", ".locks", ".tmp"]

    @pytest.mark.asyncio
    async def test_path_version_mismatch(self, tmp_path, cache):
        """Test a path package whose manifest disagrees with the pin is rejected."""
        crate = write_crate(tmp_path / "serde", "serde", "1.0.0")

        with pytest.raises(ConstraintNotSatisfiedError):
            await cache.fetch(Package.pin("serde", "1.2.0", PackageSource.path(crate)))


class TestInspection:
    """Layout, keys and listing."""

    def test_prepare_creates_layout(self, tmp_path):
        """Test prepare creates the staging, lock and receipt directories."""
        cache = make_cache(tmp_path, Backends())

        assert cache.staging_dir.is_dir()
        assert cache.lock_dir.is_dir()
        assert cache.receipt_dir.is_dir()
        assert staging_contents(cache) == []

    def test_prepare_fails_on_file(self, tmp_path):
        """Test a cache root that is a file cannot be prepared."""
        blocker = tmp_path / "cache"
        blocker.write_text("not a directory")

        with pytest.raises(InitializationError, match="not usable"):
            FetchCache(blocker, Backends()).prepare()

    def test_entry_key(self, serde):
        """Test keys are stable per source and readable."""
        git = Package.pin("serde", "1.0.0", PackageSource.git(SERDE_REPO))
        tagged = Package.pin("serde", "1.0.0", PackageSource.git(SERDE_REPO, GitReference.tag("v1.0.0")))
        fork = Package.pin("serde", "1.0.0", PackageSource.git("https://github.com/example/serde"))

        assert FetchCache.entry_key(serde, "1.0.0") == FetchCache.entry_key(Package.pin("serde", "1.0.0"), "1.0.0")
        assert FetchCache.entry_key(serde, "1.0.0").startswith("serde-1.0.0-")
        assert FetchCache.entry_key(serde, "1.0.0") != FetchCache.entry_key(git, "1.0.0")
        assert FetchCache.entry_key(git, SERDE_V1_SHA).startswith(f"serde-{SERDE_V1_SHA[:12]}-")
        assert FetchCache.entry_key(git, SERDE_V1_SHA) == FetchCache.entry_key(tagged, SERDE_V1_SHA)
        assert FetchCache.entry_key(git, SERDE_V1_SHA) != FetchCache.entry_key(fork, SERDE_V1_SHA)

    @pytest.mark.asyncio
    async def test_list_entries(self, cache):
        """Test complete entries are listed with their versions."""
        await cache.fetch(Package.pin("serde", "1.0.0"))
        await cache.fetch(Package.pin("rand", "0.8.5"))

        entries = cache.list_entries()

        assert sorted(entry.name for entry in entries) == ["rand", "serde"]
        assert all(cache.entry_state(entry.key) is EntryState.COMPLETE for entry in entries)
        assert {str(entry.version) for entry in entries} == {"1.0.0", "0.8.5"}

    def test_list_entries_skips_incomplete(self, cache):
        """Test a directory without a marker is not listed."""
        (cache.cache_root / "half-written").mkdir()
        assert cache.list_entries() == []
