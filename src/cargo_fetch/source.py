"""Package sources - where a package comes from.

A source is a closed tagged variant: one frozen model with a ``kind``
discriminator and only the fields that kind uses. Construct sources through the
kind-specific classmethods, which validate and normalize their input. No network
or filesystem I/O happens during construction.
"""

import re
from enum import Enum
from pathlib import Path

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import model_validator

from .exceptions import InvalidSourceError
from .utils import normalize_path
from .utils import normalize_url
from .utils import stable_digest

CRATES_IO_INDEX = "https://github.com/rust-lang/crates.io-index"

_FULL_SHA = re.compile(r"^[0-9a-fA-F]{40}$")


class SourceKind(str, Enum):
    """Discriminator for PackageSource variants."""

    CRATES_IO = "crates-io"
    REGISTRY = "registry"
    LOCAL_REGISTRY = "local-registry"
    GIT = "git"
    PATH = "path"

    @property
    def is_registry(self) -> bool:
        return self in (SourceKind.CRATES_IO, SourceKind.REGISTRY, SourceKind.LOCAL_REGISTRY)


class ReferenceKind(str, Enum):
    """Discriminator for GitReference variants."""

    DEFAULT_BRANCH = "default-branch"
    BRANCH = "branch"
    TAG = "tag"
    REVISION = "rev"


class GitReference(BaseModel):
    """Git reference selecting a commit (branch, tag, revision or default branch)."""

    model_config = ConfigDict(frozen=True)

    kind: ReferenceKind
    value: str | None = None

    @model_validator(mode="after")
    def _check_value(self) -> "GitReference":
        if self.kind is ReferenceKind.DEFAULT_BRANCH:
            if self.value is not None:
                raise InvalidSourceError("Default branch reference takes no value")
        elif not self.value or not self.value.strip() or any(ch.isspace() for ch in self.value):
            raise InvalidSourceError(
                f"Git {self.kind.value} reference needs a non-empty name without whitespace",
                context={"reference": self.value},
            )
        return self

    @classmethod
    def default_branch(cls) -> "GitReference":
        return cls(kind=ReferenceKind.DEFAULT_BRANCH)

    @classmethod
    def branch(cls, name: str) -> "GitReference":
        return cls(kind=ReferenceKind.BRANCH, value=name)

    @classmethod
    def tag(cls, name: str) -> "GitReference":
        return cls(kind=ReferenceKind.TAG, value=name)

    @classmethod
    def revision(cls, sha: str) -> "GitReference":
        return cls(kind=ReferenceKind.REVISION, value=sha)

    @property
    def is_pinned(self) -> bool:
        """True when the reference is a full commit SHA (no lookup needed)."""
        return self.kind is ReferenceKind.REVISION and bool(_FULL_SHA.match(self.value or ""))

    def __str__(self) -> str:
        if self.kind is ReferenceKind.DEFAULT_BRANCH:
            return "HEAD"
        return f"{self.kind.value}={self.value}"


class PackageSource(BaseModel):
    """
    Where a package is fetched from.

    Variants:
    - CRATES_IO: the default public registry
    - REGISTRY: an alternate registry identified by its index URL
    - LOCAL_REGISTRY: a registry index stored on the local filesystem
    - GIT: a repository URL plus a GitReference
    - PATH: a local package directory (never copied into the cache)

    Example:
        >>> source = PackageSource.git("https://github.com/serde-rs/serde", GitReference.tag("v1.0.0"))
        >>> source.fingerprint()
        'git-...'
    """

    model_config = ConfigDict(frozen=True)

    kind: SourceKind
    url: str | None = None
    local_dir: Path | None = None
    reference: GitReference | None = None

    @model_validator(mode="after")
    def _check_fields(self) -> "PackageSource":
        kind = self.kind
        needs_url = kind in (SourceKind.CRATES_IO, SourceKind.REGISTRY, SourceKind.GIT)
        needs_path = kind in (SourceKind.PATH, SourceKind.LOCAL_REGISTRY)

        if needs_url and not self.url:
            raise InvalidSourceError(f"{kind.value} source requires a URL")
        if needs_path and self.local_dir is None:
            raise InvalidSourceError(f"{kind.value} source requires a path")
        if not needs_url and self.url is not None:
            raise InvalidSourceError(f"{kind.value} source does not take a URL")
        if not needs_path and self.local_dir is not None:
            raise InvalidSourceError(f"{kind.value} source does not take a path")
        if (kind is SourceKind.GIT) != (self.reference is not None):
            raise InvalidSourceError("Only git sources carry a reference, and they always do")
        return self

    @classmethod
    def crates_io(cls) -> "PackageSource":
        """The default public registry."""
        return cls(kind=SourceKind.CRATES_IO, url=normalize_url(CRATES_IO_INDEX))

    @classmethod
    def registry(cls, index_url: str) -> "PackageSource":
        """Alternate registry identified by its index URL."""
        return cls(kind=SourceKind.REGISTRY, url=normalize_url(index_url))

    @classmethod
    def local_registry(cls, index_dir) -> "PackageSource":
        """Registry index stored in a local directory."""
        return cls(kind=SourceKind.LOCAL_REGISTRY, local_dir=normalize_path(index_dir))

    @classmethod
    def git(cls, repo_url: str, reference: GitReference | None = None) -> "PackageSource":
        """Git repository; ``reference`` defaults to the repository's default branch."""
        return cls(
            kind=SourceKind.GIT,
            url=normalize_url(repo_url),
            reference=reference or GitReference.default_branch(),
        )

    @classmethod
    def path(cls, package_dir) -> "PackageSource":
        """Local package directory."""
        return cls(kind=SourceKind.PATH, local_dir=normalize_path(package_dir))

    def locator(self) -> str:
        """Normalized locator string (URL or absolute path)."""
        if self.url is not None:
            return self.url
        return str(self.local_dir)

    def fingerprint(self) -> str:
        """Deterministic identifier for this source, stable across runs.

        Combines the kind discriminator with the normalized locator and, for git
        sources, the reference. Used as the cache partition prefix.
        """
        reference = str(self.reference) if self.reference is not None else ""
        digest = stable_digest(self.kind.value, self.locator(), reference)
        return f"{self.kind.value}-{digest}"

    def __str__(self) -> str:
        if self.kind is SourceKind.GIT:
            if self.reference is not None and self.reference.kind is not ReferenceKind.DEFAULT_BRANCH:
                return f"git+{self.url}?{self.reference}"
            return f"git+{self.url}"
        if self.kind is SourceKind.PATH:
            return f"path+{self.local_dir.as_uri()}"
        if self.kind is SourceKind.LOCAL_REGISTRY:
            return f"local-registry+{self.local_dir.as_uri()}"
        return f"registry+{self.url}"

