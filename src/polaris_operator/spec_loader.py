"""Manifest loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import DEFAULT_MAX_MEMBERS_PER_GROUPING, MAX_SPEC_FILE_SIZE_BYTES
from .models import BaseManifest, Grouping, MemberSet, get_manifest_class

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


@dataclass(frozen=True)
class DesiredGrouping:
    """A grouping and its declared membership, with the file it came from."""

    grouping: Grouping
    desired: MemberSet
    source: Path


def _read_documents(path: Path) -> list[Any]:
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise SpecLoadError(f"Manifest file is not valid UTF-8: {path}: {e}") from e
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        return [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e


def parse_manifest(raw_data: Any, source: Path) -> BaseManifest:
    """Validate one YAML document as a manifest.

    Supports both a flat format (kind plus fields) and the Kubernetes-style
    wrapper (apiVersion, kind, metadata, spec).

    Raises:
        SpecLoadError: If the document is malformed or fails validation.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Manifest must be a YAML mapping: {source}")

    kind = raw_data.get("kind")
    if not kind:
        raise SpecLoadError(f"Manifest has no kind: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
        metadata = raw_data.get("metadata") or {}
        if isinstance(metadata, dict) and "name" in metadata and "name" not in spec_data:
            spec_data = {**spec_data, "name": metadata["name"]}
    else:
        spec_data = {k: v for k, v in raw_data.items() if k != "kind"}

    try:
        manifest_class = get_manifest_class(str(kind))
    except ValueError as e:
        raise SpecLoadError(f"{source}: {e}") from e

    try:
        return manifest_class.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source} ({kind}):\n{error_list}") from e


def load_manifests(
    specs_dir: Path,
    max_members: int = DEFAULT_MAX_MEMBERS_PER_GROUPING,
) -> list[DesiredGrouping]:
    """Load every manifest under a directory.

    Args:
        specs_dir: Directory containing *.yaml / *.yml manifests.
        max_members: Upper bound on declared members per grouping.

    Returns:
        Desired groupings in file order, one per manifest document.

    Raises:
        SpecLoadError: If any manifest is invalid, oversized or declares a
            grouping that another manifest already declares.
    """
    if not specs_dir.is_dir():
        raise SpecLoadError(f"Specs directory not found: {specs_dir}")

    try:
        paths = sorted(p for p in specs_dir.iterdir() if p.suffix in MANIFEST_SUFFIXES)
    except OSError as e:
        raise SpecLoadError(f"Failed to list specs directory {specs_dir}: {e}") from e

    result: list[DesiredGrouping] = []
    seen: dict[str, Path] = {}

    for path in paths:
        for raw_data in _read_documents(path):
            manifest = parse_manifest(raw_data, path)
            grouping = manifest.to_grouping()
            desired = manifest.desired_members()

            if len(desired) > max_members:
                raise SpecLoadError(
                    f"{path}: {grouping.key} declares {len(desired)} members "
                    f"(max {max_members})"
                )

            if grouping.key in seen:
                raise SpecLoadError(
                    f"{path}: {grouping.key} is already declared in {seen[grouping.key]}"
                )
            seen[grouping.key] = path

            result.append(DesiredGrouping(grouping=grouping, desired=desired, source=path))

    logger.info(
        "Loaded %d manifests from %s",
        len(result),
        specs_dir,
    )
    return result
