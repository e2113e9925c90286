"""Package manifest schema - read the identity fields of a Cargo.toml.

Only the [package] fields needed to identify a local package are parsed. Full
manifest interpretation (dependencies, features, targets) is left to callers.
"""

import tomllib
from pathlib import Path

from pydantic import BaseModel
from pydantic import ConfigDict

from .exceptions import InvalidPackageLayoutError
from .exceptions import InvalidVersionError
from .version import Version

MANIFEST_NAME = "Cargo.toml"

# Cargo treats a missing [package] version as 0.0.0
DEFAULT_VERSION = "0.0.0"


class PackageManifest(BaseModel):
    """
    Package metadata from Cargo.toml.

    Reads the name and version from the [package] section. A version
    inherited from the workspace (``version.workspace = true``) is looked up in
    the nearest parent Cargo.toml that declares [workspace.package].
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: Version

    @classmethod
    def from_cargo_toml(cls, manifest_path: Path) -> "PackageManifest":
        """
        Load package metadata from Cargo.toml.

        Args:
            manifest_path: Path to Cargo.toml file

        Returns:
            PackageManifest instance

        Raises:
            InvalidPackageLayoutError: If the file is missing, not valid TOML,
                has no [package] section, or declares an invalid version
        """
        data = _load_toml(manifest_path)

        package = data.get("package")
        if not isinstance(package, dict) or not package:
            raise InvalidPackageLayoutError(
                f"[package] section missing in {manifest_path}",
                context={"manifest": str(manifest_path)},
            )

        name = package.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidPackageLayoutError(
                f"package.name missing in {manifest_path}",
                context={"manifest": str(manifest_path)},
            )

        raw_version = package.get("version", DEFAULT_VERSION)
        if isinstance(raw_version, dict) and raw_version.get("workspace") is True:
            raw_version = _workspace_version(manifest_path)

        try:
            version = Version.parse(raw_version)
        except InvalidVersionError as e:
            raise InvalidPackageLayoutError(
                f"Invalid version in {manifest_path}: {e.message}",
                context={"manifest": str(manifest_path), "version": str(raw_version)},
            ) from e

        return cls(name=name, version=version)


def _load_toml(manifest_path: Path) -> dict:
    if not manifest_path.is_file():
        raise InvalidPackageLayoutError(
            f"{MANIFEST_NAME} not found: {manifest_path}",
            context={"manifest": str(manifest_path)},
        )
    try:
        with open(manifest_path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise InvalidPackageLayoutError(
            f"Could not read {manifest_path}: {e}",
            context={"manifest": str(manifest_path)},
        ) from e


def _workspace_version(manifest_path: Path) -> str:
    """Find [workspace.package].version in the nearest enclosing workspace."""
    for parent in manifest_path.resolve().parent.parents:
        candidate = parent / MANIFEST_NAME
        if not candidate.is_file():
            continue
        workspace = _load_toml(candidate).get("workspace")
        if not isinstance(workspace, dict):
            continue
        version = workspace.get("package", {}).get("version")
        if isinstance(version, str):
            return version
        break

    raise InvalidPackageLayoutError(
        f"{manifest_path} inherits its version but no workspace declares one",
        context={"manifest": str(manifest_path)},
    )
