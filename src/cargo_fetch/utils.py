"""Normalization and hashing helpers shared by the source model and the cache.

All helpers here are pure: no network or filesystem access beyond reading the
current working directory and home directory for path normalization.
"""

import hashlib
import os
import re
from pathlib import Path
from urllib.parse import urlsplit

from .exceptions import InvalidSourceError

_DEFAULT_PORTS = {"http": 80, "https": 443, "ssh": 22, "git": 9418}
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def normalize_url(url: str) -> str:
    """Normalize a source URL to scheme + host(+port) + path.

    Scheme and host are lowercased, default ports, query strings, fragments,
    credentials and trailing slashes are dropped.

    Args:
        url: Registry index or repository URL

    Returns:
        Normalized URL string

    Raises:
        InvalidSourceError: If the URL has no scheme, no host (non-file URLs),
            or cannot be parsed

    Example:
        >>> normalize_url("HTTPS://GitHub.com/serde-rs/serde/")
        'https://github.com/serde-rs/serde'
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidSourceError("Source URL must be a non-empty string", context={"url": url})

    text = url.strip()
    if any(ch.isspace() for ch in text):
        raise InvalidSourceError(f"Source URL contains whitespace: {text!r}", context={"url": url})

    try:
        parts = urlsplit(text)
        port = parts.port
    except ValueError as e:
        raise InvalidSourceError(f"Malformed source URL {text!r}: {e}", context={"url": url}) from e

    scheme = parts.scheme.lower()
    if not scheme:
        raise InvalidSourceError(f"Source URL has no scheme: {text!r}", context={"url": url})

    path = parts.path.rstrip("/")
    if scheme == "file":
        if not path:
            raise InvalidSourceError(f"File URL has no path: {text!r}", context={"url": url})
        return f"file://{path}"

    host = (parts.hostname or "").lower()
    if not host:
        raise InvalidSourceError(f"Source URL has no host: {text!r}", context={"url": url})

    netloc = host
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"

    return f"{scheme}://{netloc}{path}"


def normalize_path(path: str | os.PathLike) -> Path:
    """Normalize a local path to absolute form without touching the filesystem.

    ``~`` is expanded and ``..`` segments are collapsed lexically. Symlinks are
    NOT resolved since the target may not exist yet.

    Raises:
        InvalidSourceError: If the path is empty or contains NUL bytes
    """
    try:
        text = os.fspath(path)
    except TypeError as e:
        raise InvalidSourceError(f"Not a filesystem path: {path!r}", context={"path": repr(path)}) from e

    if isinstance(text, bytes):
        text = os.fsdecode(text)

    if not text or not text.strip():
        raise InvalidSourceError("Source path must be non-empty", context={"path": text})
    if "\x00" in text:
        raise InvalidSourceError("Source path contains a NUL byte", context={"path": repr(text)})

    return Path(os.path.normpath(os.path.abspath(os.path.expanduser(text))))


def stable_digest(*parts: str, length: int = 32) -> str:
    """Hex SHA-256 digest over NUL-separated parts, truncated to ``length``."""
    hasher = hashlib.sha256()
    for part in parts:
        hasher.update(part.encode("utf-8"))
        hasher.update(b"\x00")
    return hasher.hexdigest()[:length]


def safe_component(value: str) -> str:
    """Make a string safe to use as a single path component."""
    cleaned = _UNSAFE_CHARS.sub("_", value).strip("._")
    return cleaned or "_"
