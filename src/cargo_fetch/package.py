"""Package identities - pinned packages and the queries that resolve to them."""

import re
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import field_validator

from .source import PackageSource
from .version import Version
from .version import VersionConstraint

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


def _check_name(value: str) -> str:
    if not _NAME_RE.match(value):
        raise ValueError(f"Invalid package name {value!r}: use letters, digits, '-' and '_'")
    return value


class Package(BaseModel):
    """
    A package pinned to one concrete version from one source.

    Two packages are identical iff name, version and source are all equal.

    Example:
        >>> serde = Package.pin("serde", "1.0.0", PackageSource.crates_io())
        >>> str(serde)
        'serde v1.0.0 (registry+https://github.com/rust-lang/crates.io-index)'
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: Version
    source: PackageSource

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _check_name(value)

    @classmethod
    def pin(cls, name: str, version: str | Version, source: PackageSource | None = None) -> "Package":
        """Build a package from a version string (or Version) and a source.

        ``source`` defaults to crates.io.

        Raises:
            InvalidVersionError: If ``version`` is not valid semver
        """
        return cls(
            name=name,
            version=Version.parse(version),
            source=source or PackageSource.crates_io(),
        )

    def __str__(self) -> str:
        return f"{self.name} v{self.version} ({self.source})"


class PackageQuery(BaseModel):
    """An unpinned package reference: name + constraint + source (resolver input)."""

    model_config = ConfigDict(frozen=True)

    name: str
    constraint: VersionConstraint
    source: PackageSource

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _check_name(value)

    @classmethod
    def create(
        cls,
        name: str,
        constraint: str | VersionConstraint | None = None,
        source: PackageSource | None = None,
    ) -> "PackageQuery":
        """Build a query; ``None`` constraint means any version, ``None`` source means crates.io.

        Raises:
            InvalidConstraintError: If ``constraint`` cannot be parsed
        """
        return cls(
            name=name,
            constraint=VersionConstraint.parse(constraint),
            source=source or PackageSource.crates_io(),
        )

    def __str__(self) -> str:
        return f"{self.name} {self.constraint} ({self.source})"


@dataclass(frozen=True)
class ResolvedIdentity:
    """What a backend actually materialized.

    Attributes:
        version: Version read from the materialized manifest, if the backend knows it
        revision: Concrete git commit (git sources only)
        root: Package root for sources that are referenced in place (local paths)
    """

    version: Version | None = None
    revision: str | None = None
    root: Path | None = None
