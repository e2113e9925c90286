"""Shared fakes for backend-driven tests."""

import asyncio
from pathlib import Path

import pytest
from cargo_fetch import Backends
from cargo_fetch import PackageFetcher
from cargo_fetch import PackageNotFoundError
from cargo_fetch import ResolvedIdentity
from cargo_fetch import RevisionNotFoundError
from cargo_fetch import Version
from cargo_fetch.cache import ENTRY_MARKER


def write_crate(directory: Path, name: str, version: str) -> Path:
    """Create a minimal crate (Cargo.toml + src/lib.rs) in ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "Cargo.toml").write_text(f'[package]\nname = "{name}"\nversion = "{version}"\nedition = "2021"\n')
    (directory / "src").mkdir(exist_ok=True)
    (directory / "src" / "lib.rs").write_text(f"// {name} {version}\n")
    return directory


class FakeRegistry:
    """In-memory registry backend that records every call."""

    def __init__(self, packages: dict[str, list[str]] | None = None, delay: float = 0.0):
        self.packages = {name: [Version.parse(v) for v in versions] for name, versions in (packages or {}).items()}
        self.delay = delay
        self.fail_with: Exception | None = None
        self.delivered_version: str | None = None
        self.write_files = True
        self.slow_names: set[str] = set()
        self.list_calls: list[str] = []
        self.materialize_calls: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0

    async def list_versions(self, source, name):
        self.list_calls.append(name)
        if name not in self.packages:
            raise PackageNotFoundError(f"no crate named {name}")
        return list(self.packages[name])

    async def materialize(self, source, name, version, destination):
        self.materialize_calls.append((name, str(version)))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.write_files:
                write_crate(destination, name, str(version))
            if self.delay and (not self.slow_names or name in self.slow_names):
                await asyncio.sleep(self.delay)
            if self.fail_with is not None:
                raise self.fail_with
        finally:
            self.active -= 1
        delivered = Version.parse(self.delivered_version) if self.delivered_version else version
        return ResolvedIdentity(version=delivered)


class YankingRegistry(FakeRegistry):
    """Registry that also reports yanked releases."""

    def __init__(self, packages, yanked: dict[str, list[str]]):
        super().__init__(packages)
        self.yanked = {name: {Version.parse(v) for v in versions} for name, versions in yanked.items()}

    async def yanked_versions(self, source, name):
        return self.yanked.get(name, set())


class UnpublishableRegistry(FakeRegistry):
    """Registry whose staged output for some names blocks the entry marker."""

    def __init__(self, packages, blocked: set[str]):
        super().__init__(packages)
        self.blocked = blocked

    async def materialize(self, source, name, version, destination):
        identity = await super().materialize(source, name, version, destination)
        if name in self.blocked:
            # A directory where the marker file goes makes the marker write fail
            (destination / ENTRY_MARKER).mkdir()
        return identity


class FakeGit:
    """Git backend with a fixed reference table and manifest versions per commit."""

    def __init__(self, refs: dict[str, str] | None = None, versions: dict[str, str] | None = None):
        self.refs = refs or {}
        self.versions = versions or {}
        self.resolve_calls: list[str] = []
        self.materialize_calls: list[tuple[str, str]] = []

    async def resolve_revision(self, source, reference):
        self.resolve_calls.append(str(reference))
        try:
            return self.refs[str(reference)]
        except KeyError:
            raise RevisionNotFoundError(f"{reference} not found in {source.url}") from None

    async def read_version(self, source, name, revision):
        return Version.parse(self.versions[revision])

    async def materialize(self, source, name, revision, destination):
        self.materialize_calls.append((name, revision))
        version = self.versions[revision]
        write_crate(destination, name, version)
        return ResolvedIdentity(version=Version.parse(version), revision=revision)


SERDE_V1_SHA = "1" * 40
SERDE_MAIN_SHA = "a" * 40


@pytest.fixture
def registry():
    return FakeRegistry({"serde": ["1.0.0", "1.0.1", "1.2.0", "2.0.0-alpha.1"], "rand": ["0.7.3", "0.8.5"]})


@pytest.fixture
def git():
    return FakeGit(
        refs={"tag=v1.0.0": SERDE_V1_SHA, "HEAD": SERDE_MAIN_SHA, "branch=main": SERDE_MAIN_SHA},
        versions={SERDE_V1_SHA: "1.0.0", SERDE_MAIN_SHA: "1.1.0"},
    )


@pytest.fixture
def backends(registry, git):
    return Backends(registry=registry, git=git)


@pytest.fixture
def fetcher(tmp_path, backends):
    return PackageFetcher(cache_root=tmp_path / "cache", backends=backends)
