"""Manifest loading with validation.

All file operations enforce size limits. Input validation is performed at
the boundary, so the reconciler only ever sees validated specs.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_RESOURCES_PER_MANIFEST, MAX_SPEC_FILE_SIZE_BYTES
from .models import BaseSpec, get_spec_class

logger = logging.getLogger(__name__)

SUPPORTED_API_VERSIONS = ("provisioner/v1",)
MANIFEST_SUFFIXES = (".yaml", ".yml")
VALID_NAME_PATTERN = r"^[a-z0-9]([a-z0-9_-]{0,62}[a-z0-9])?$"


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


@dataclass(frozen=True)
class ResourceManifest:
    """One declared resource."""

    kind: str
    name: str
    spec: BaseSpec
    source: Path | None = None

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"


def _format_validation_error(error: ValidationError, context: str) -> SpecLoadError:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"]) or "<root>"
        errors.append(f"  - {loc}: {item['msg']}")
    return SpecLoadError(f"Validation failed for {context}:\n" + "\n".join(errors))


def parse_manifest(document: Any, context: str) -> ResourceManifest:
    """Validate a single manifest document.

    Args:
        document: Parsed YAML document.
        context: Human readable location used in error messages.

    Raises:
        SpecLoadError: If the document is malformed or fails validation.
    """
    if not isinstance(document, dict):
        raise SpecLoadError(f"Manifest must be a YAML mapping: {context}")

    api_version = document.get("apiVersion")
    if api_version not in SUPPORTED_API_VERSIONS:
        raise SpecLoadError(
            f"Unsupported apiVersion '{api_version}' in {context}. "
            f"Supported: {list(SUPPORTED_API_VERSIONS)}"
        )

    kind = document.get("kind")
    try:
        spec_class = get_spec_class(kind)
    except ValueError as e:
        raise SpecLoadError(f"{e} ({context})") from e

    metadata = document.get("metadata")
    name = metadata.get("name") if isinstance(metadata, dict) else None
    if not isinstance(name, str) or not re.match(VALID_NAME_PATTERN, name):
        raise SpecLoadError(
            f"metadata.name must be 1-64 lowercase alphanumerics, '-' or '_': {context}"
        )

    spec_data = document.get("spec")
    if not isinstance(spec_data, dict):
        raise SpecLoadError(f"Spec section must be a mapping: {context}")

    try:
        spec = spec_class.model_validate(spec_data)
    except ValidationError as e:
        raise _format_validation_error(e, f"{kind}.{name} in {context}") from e

    return ResourceManifest(kind=kind, name=name, spec=spec)


def load_manifest_file(path: Path) -> list[ResourceManifest]:
    """Load every manifest document from one YAML file.

    Raises:
        SpecLoadError: If the file cannot be read or any document is invalid.
    """
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
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    manifests = []
    for index, document in enumerate(documents):
        manifest = parse_manifest(document, f"{path} (document {index + 1})")
        manifests.append(
            ResourceManifest(
                kind=manifest.kind, name=manifest.name, spec=manifest.spec, source=path
            )
        )
    return manifests


def load_manifests(specs_dir: Path) -> list[ResourceManifest]:
    """Load all manifests from a directory, in file name order.

    Returns:
        Declared resources in declaration order.

    Raises:
        SpecLoadError: On any invalid file, duplicate address or too many resources.
    """
    if not specs_dir.is_dir():
        raise SpecLoadError(f"Specs directory not found: {specs_dir}")

    paths = sorted(
        p for p in specs_dir.iterdir() if p.is_file() and p.suffix in MANIFEST_SUFFIXES
    )

    manifests: list[ResourceManifest] = []
    seen: dict[str, Path | None] = {}
    for path in paths:
        for manifest in load_manifest_file(path):
            if manifest.address in seen:
                raise SpecLoadError(
                    f"Duplicate resource {manifest.address} in {path} "
                    f"(first declared in {seen[manifest.address]})"
                )
            seen[manifest.address] = manifest.source
            manifests.append(manifest)

    if len(manifests) > MAX_RESOURCES_PER_MANIFEST:
        raise SpecLoadError(
            f"{len(manifests)} resources declared, exceeding limit of "
            f"{MAX_RESOURCES_PER_MANIFEST}"
        )

    logger.info(
        "Loaded %d resource manifests from %s",
        len(manifests),
        specs_dir,
        extra={"files": [p.name for p in paths]},
    )
    return manifests
