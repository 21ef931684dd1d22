"""Cluster manifest loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.

Two manifest formats are accepted:

Flat:
    name: acct-search
    plan: sandbox
    space: us-east-1/common
    release: opensearch-2.6.0-mt

Kubernetes-style:
    apiVersion: search.bonsai.io/v1
    kind: Cluster
    metadata:
      name: acct-search
    spec:
      plan: sandbox
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import ClusterDescriptor

logger = logging.getLogger(__name__)

SUPPORTED_KINDS = ("Cluster",)


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def _extract_cluster_data(raw_data: dict[str, Any], source: str) -> dict[str, Any]:
    """Unwrap a Kubernetes-style manifest, or return flat content as-is."""
    if "apiVersion" not in raw_data or "spec" not in raw_data:
        return raw_data

    kind = raw_data.get("kind")
    if kind is not None and kind not in SUPPORTED_KINDS:
        raise SpecLoadError(f"Unsupported kind '{kind}' in {source}. Expected one of {SUPPORTED_KINDS}")

    spec_data = raw_data.get("spec") or {}
    if not isinstance(spec_data, dict):
        raise SpecLoadError(f"Spec section must be a mapping: {source}")

    # metadata.name fills in for a missing spec.name
    metadata = raw_data.get("metadata") or {}
    if isinstance(metadata, dict) and "name" not in spec_data and metadata.get("name"):
        spec_data = {**spec_data, "name": metadata["name"]}
    return spec_data


def parse_manifest(content: str, source: str = "<string>") -> ClusterDescriptor:
    """Parse and validate a cluster manifest from YAML text.

    Raises:
        SpecLoadError: If the YAML is invalid or fails validation.
    """
    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {source}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Manifest must contain a YAML mapping: {source}")

    cluster_data = _extract_cluster_data(raw_data, source)

    try:
        return ClusterDescriptor.model_validate(cluster_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_manifest(path: Path) -> ClusterDescriptor:
    """Load and validate a cluster manifest from a YAML file.

    Args:
        path: Manifest file path.

    Returns:
        Validated cluster descriptor.

    Raises:
        SpecLoadError: If the manifest cannot be loaded or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    descriptor = parse_manifest(content, source=str(path))
    logger.info("Loaded cluster manifest '%s' from %s", descriptor.name, path)
    return descriptor
