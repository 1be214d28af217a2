"""Sync spec loading with validation.

A sync spec is an optional YAML file that pins the group prefix (and
optionally suffix, threshold and change limit) for a deployment, so the
same image can serve several group families.

SECURITY: File reads enforce a size limit. Input validation is performed
at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import SyncSpec

logger = logging.getLogger(__name__)

SPEC_KIND = "DelayedGroupSync"


class SpecLoadError(Exception):
    """Raised when a sync spec cannot be read or fails validation."""

    pass


def _read_bounded(spec_path: Path) -> str:
    if not spec_path.is_file():
        raise SpecLoadError(f"Sync spec not found: {spec_path}")

    # SECURITY: Check file size before reading
    try:
        size = spec_path.stat().st_size
        if size > MAX_SPEC_FILE_SIZE_BYTES:
            raise SpecLoadError(
                f"Sync spec {spec_path} is {size} bytes, limit is {MAX_SPEC_FILE_SIZE_BYTES}"
            )
        return spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Cannot read sync spec {spec_path}: {e}") from e


def _unwrap(document: Any, spec_path: Path) -> dict[str, Any]:
    """Return the settings mapping from a flat or apiVersion/kind/spec document."""
    if not isinstance(document, dict):
        raise SpecLoadError(f"Sync spec {spec_path} must be a YAML mapping")

    if "apiVersion" not in document or "spec" not in document:
        return document

    kind = document.get("kind")
    if kind is not None and kind != SPEC_KIND:
        raise SpecLoadError(f"Unsupported kind '{kind}' in {spec_path}, expected {SPEC_KIND}")

    body = document["spec"]
    if not isinstance(body, dict):
        raise SpecLoadError(f"'spec' in {spec_path} must be a mapping")
    return body


def load_sync_spec(spec_path: Path) -> SyncSpec:
    """Load and validate a sync spec from YAML.

    Args:
        spec_path: Path to the YAML file.

    Returns:
        Validated SyncSpec.

    Raises:
        SpecLoadError: If the sync spec cannot be loaded or fails validation.
    """
    content = _read_bounded(spec_path)

    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    try:
        spec = SyncSpec.model_validate(_unwrap(document, spec_path))
    except ValidationError as e:
        problems = "\n".join(
            f"  - {'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise SpecLoadError(f"Validation failed for {spec_path}:\n{problems}") from e

    logger.info(
        "Loaded sync spec",
        extra={"spec_path": str(spec_path), "group_prefix": spec.group_prefix},
    )
    return spec
