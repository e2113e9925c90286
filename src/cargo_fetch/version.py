"""Semantic versions and version constraints.

Versions follow semver 2.0 precedence, delegated to ``semantic_version``:
numeric comparison per segment, pre-release sorts before the release of the
same triple, build metadata is ignored for ordering (but kept for identity and
formatting).

Constraints use cargo's syntax and are matched with
``semantic_version.SimpleSpec``. Two rules sit on top of the library: a bare
version (``1.0.0``) is an exact requirement, same as ``=1.0.0``, and a
pre-release version only matches when some comparator names the same triple
with a pre-release of its own.
"""

import functools
import re
from enum import Enum

import semantic_version
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from .exceptions import InvalidConstraintError
from .exceptions import InvalidVersionError


class Version(BaseModel):
    """A semantic version.

    Example:
        >>> Version.parse("1.2.3-alpha.1+build.5") < Version.parse("1.2.3")
        True
    """

    model_config = ConfigDict(frozen=True)

    major: int = Field(ge=0)
    minor: int = Field(ge=0)
    patch: int = Field(ge=0)
    prerelease: tuple[str, ...] = ()
    build: tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "Version":
        """Parse a full semver string.

        Raises:
            InvalidVersionError: On non-numeric or leading-zero core parts and
                malformed pre-release/build identifiers
        """
        if isinstance(text, Version):
            return text
        if not isinstance(text, str):
            raise InvalidVersionError(f"Version must be a string, got {type(text).__name__}")
        try:
            parsed = semantic_version.Version(text.strip())
        except ValueError as e:
            raise InvalidVersionError(f"Invalid version {text!r}: {e}", context={"version": text}) from e
        return cls(
            major=parsed.major,
            minor=parsed.minor,
            patch=parsed.patch,
            prerelease=tuple(parsed.prerelease),
            build=tuple(parsed.build),
        )

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    @property
    def semver(self) -> semantic_version.Version:
        """This version without build metadata, as ordered and matched by ``semantic_version``."""
        return _semver(self._core())

    def _core(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += "-" + ".".join(self.prerelease)
        return text

    def __lt__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.semver < other.semver

    def __le__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.semver <= other.semver

    def __gt__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.semver > other.semver

    def __ge__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.semver >= other.semver

    def __str__(self) -> str:
        if self.build:
            return self._core() + "+" + ".".join(self.build)
        return self._core()


@functools.lru_cache(maxsize=1024)
def _semver(text: str) -> semantic_version.Version:
    return semantic_version.Version(text)


@functools.lru_cache(maxsize=256)
def _simple_spec(expression: str) -> semantic_version.SimpleSpec:
    return semantic_version.SimpleSpec(expression)


class Op(str, Enum):
    """Comparator operator."""

    EXACT = "="
    GREATER = ">"
    GREATER_EQ = ">="
    LESS = "<"
    LESS_EQ = "<="
    TILDE = "~"
    CARET = "^"
    WILDCARD = "*"


class ConstraintKind(str, Enum):
    """Shape of a whole constraint."""

    EXACT = "exact"
    CARET = "caret"
    TILDE = "tilde"
    WILDCARD = "wildcard"
    RANGE = "range"


_COMPARATOR_RE = re.compile(
    r"""
    ^\s*
    (?P<op>>=|<=|>|<|=|~|\^)?
    \s*
    (?P<major>\d+|[xX*])
    (?:\.(?P<minor>\d+|[xX*]))?
    (?:\.(?P<patch>\d+|[xX*]))?
    (?:-(?P<pre>[0-9A-Za-z.-]+))?
    (?:\+(?P<build>[0-9A-Za-z.-]+))?
    \s*$
    """,
    re.VERBOSE,
)

_WILDCARDS = {"x", "X", "*"}


class Comparator(BaseModel):
    """One ``<op><partial version>`` term of a constraint.

    ``str()`` gives the term in ``SimpleSpec`` syntax: ``x`` wildcards become
    ``*`` and build metadata is dropped.
    """

    model_config = ConfigDict(frozen=True)

    op: Op
    major: int | None = None
    minor: int | None = None
    patch: int | None = None
    prerelease: tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "Comparator":
        match = _COMPARATOR_RE.match(text)
        if not match:
            raise InvalidConstraintError(f"Unrecognized comparator {text.strip()!r}", context={"constraint": text})

        op_text = match.group("op")
        parts = [match.group("major"), match.group("minor"), match.group("patch")]
        pre_text = match.group("pre")

        numbers: list[int | None] = []
        saw_wildcard = False
        for part in parts:
            if part is None or part in _WILDCARDS:
                saw_wildcard = saw_wildcard or part is not None
                numbers.append(None)
                continue
            if numbers and numbers[-1] is None:
                # 1.*.3 style: a number after a wildcard or a gap
                raise InvalidConstraintError(f"Unexpected version part after wildcard in {text.strip()!r}")
            if len(part) > 1 and part.startswith("0"):
                raise InvalidConstraintError(f"Leading zero in {text.strip()!r}", context={"constraint": text})
            numbers.append(int(part))

        major, minor, patch = numbers
        prerelease: tuple[str, ...] = ()
        if pre_text is not None:
            if patch is None:
                raise InvalidConstraintError(f"Pre-release requires a full version in {text.strip()!r}")
            try:
                prerelease = Version.parse(f"{major}.{minor}.{patch}-{pre_text}").prerelease
            except InvalidVersionError as e:
                raise InvalidConstraintError(f"Invalid pre-release in {text.strip()!r}: {e.message}") from e

        if saw_wildcard:
            if op_text not in (None, "="):
                raise InvalidConstraintError(
                    f"Wildcard cannot be combined with {op_text!r} in {text.strip()!r}",
                    context={"constraint": text},
                )
            if major is None:
                return cls(op=Op.WILDCARD)
            return cls(op=Op.WILDCARD, major=major, minor=minor)

        op = Op(op_text) if op_text else Op.EXACT
        return cls(op=op, major=major, minor=minor, patch=patch, prerelease=prerelease)

    def allows_prerelease_of(self, version: Version) -> bool:
        """Pre-release versions only match comparators naming the same triple with a pre-release."""
        return (
            bool(self.prerelease)
            and self.major == version.major
            and self.minor == version.minor
            and self.patch == version.patch
        )

    def __str__(self) -> str:
        if self.op is Op.WILDCARD:
            if self.major is None:
                return "*"
            if self.minor is None:
                return f"{self.major}.*"
            return f"{self.major}.{self.minor}.*"
        text = str(self.major)
        if self.minor is not None:
            text += f".{self.minor}"
        if self.patch is not None:
            text += f".{self.patch}"
        if self.prerelease:
            text += "-" + ".".join(self.prerelease)
        return f"{self.op.value}{text}"


class VersionConstraint(BaseModel):
    """A version requirement: exact, caret, tilde, wildcard, or an explicit range.

    Example:
        >>> constraint = VersionConstraint.parse("^1.2.0")
        >>> constraint.matches(Version.parse("1.3.0"))
        True
        >>> constraint.matches(Version.parse("2.0.0"))
        False
    """

    model_config = ConfigDict(frozen=True)

    kind: ConstraintKind
    comparators: tuple[Comparator, ...] = ()
    raw: str = "*"

    @classmethod
    def parse(cls, text: "str | VersionConstraint | None") -> "VersionConstraint":
        """Parse a constraint string. ``None`` means any version.

        Raises:
            InvalidConstraintError: On unrecognized syntax
        """
        if isinstance(text, VersionConstraint):
            return text
        if text is None:
            return cls.any()
        if not isinstance(text, str):
            raise InvalidConstraintError(f"Constraint must be a string, got {type(text).__name__}")

        raw = text.strip()
        if not raw:
            raise InvalidConstraintError("Empty version constraint", context={"constraint": text})
        if raw in _WILDCARDS:
            return cls.any()

        pieces = raw.split(",")
        if any(not piece.strip() for piece in pieces):
            raise InvalidConstraintError(f"Empty comparator in {raw!r}", context={"constraint": text})
        comparators = tuple(Comparator.parse(piece) for piece in pieces)

        try:
            _simple_spec(_expression(comparators))
        except ValueError as e:
            raise InvalidConstraintError(f"Invalid constraint {raw!r}: {e}", context={"constraint": text}) from e

        return cls(kind=_classify(comparators), comparators=comparators, raw=raw)

    @classmethod
    def any(cls) -> "VersionConstraint":
        return cls(kind=ConstraintKind.WILDCARD, comparators=(), raw="*")

    @classmethod
    def exact(cls, version: Version) -> "VersionConstraint":
        """Constraint matching exactly one version."""
        return cls.parse(f"={version}")

    @property
    def spec(self) -> semantic_version.SimpleSpec | None:
        """The comparators as one ``SimpleSpec``; None for the unrestricted ``*``."""
        if not self.comparators:
            return None
        return _simple_spec(_expression(self.comparators))

    def matches(self, version: Version) -> bool:
        """Pure predicate: does ``version`` satisfy this constraint?"""
        spec = self.spec
        if spec is None:
            return True
        if not spec.match(version.semver):
            return False
        if not version.prerelease:
            return True
        return any(comparator.allows_prerelease_of(version) for comparator in self.comparators)

    def __str__(self) -> str:
        return self.raw


def _expression(comparators: tuple[Comparator, ...]) -> str:
    return ",".join(str(comparator) for comparator in comparators)


def _classify(comparators: tuple[Comparator, ...]) -> ConstraintKind:
    if len(comparators) != 1:
        return ConstraintKind.RANGE
    op = comparators[0].op
    if op is Op.EXACT:
        return ConstraintKind.EXACT
    if op is Op.CARET:
        return ConstraintKind.CARET
    if op is Op.TILDE:
        return ConstraintKind.TILDE
    if op is Op.WILDCARD:
        return ConstraintKind.WILDCARD
    return ConstraintKind.RANGE


def matches(constraint: VersionConstraint | str, version: Version | str) -> bool:
    """Module-level form of ``VersionConstraint.matches`` accepting strings."""
    return VersionConstraint.parse(constraint).matches(Version.parse(version))
