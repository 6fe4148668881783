"""Loading deployment files from YAML.

SECURITY: Files are size-checked before they are read and parsed with
safe_load, so no Python objects are ever constructed from a deployment file.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import DeploymentSpec

logger = logging.getLogger(__name__)

DEFAULT_SPEC_FILENAMES = ("stackops.yaml", "stackops.yml")


class SpecLoadError(Exception):
    """Raised when a deployment file cannot be read or is invalid."""

    pass


def find_spec(directory: Path) -> Path:
    """The first default deployment file present in a directory.

    Raises:
        SpecLoadError: If none of the default names exist.
    """
    for filename in DEFAULT_SPEC_FILENAMES:
        candidate = directory / filename
        if candidate.is_file():
            return candidate
    raise SpecLoadError(
        f"No deployment file in {directory} (looked for {', '.join(DEFAULT_SPEC_FILENAMES)})"
    )


def _unwrap(document: dict[str, Any], source: str) -> dict[str, Any]:
    """Accept either a flat document or an apiVersion/kind/metadata/spec wrapper."""
    if "apiVersion" not in document or "spec" not in document:
        return document

    body = document["spec"]
    if not isinstance(body, dict):
        raise SpecLoadError(f"The spec section of {source} must be a mapping")
    metadata = document.get("metadata")
    if "name" not in body and isinstance(metadata, dict) and "name" in metadata:
        body = {**body, "name": metadata["name"]}
    return body


def _describe_errors(error: ValidationError) -> str:
    lines = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"]) or "<root>"
        lines.append(f"  - {location}: {detail['msg']}")
    return "\n".join(lines)


def parse_spec(document: Any, source: str = "<deployment>") -> DeploymentSpec:
    """Validate parsed YAML as a deployment."""
    if not isinstance(document, dict):
        raise SpecLoadError(f"{source} must hold a YAML mapping, not {type(document).__name__}")

    try:
        return DeploymentSpec.model_validate(_unwrap(document, source))
    except ValidationError as e:
        raise SpecLoadError(f"Validation failed for {source}:\n{_describe_errors(e)}") from e


def _read_bounded(path: Path) -> str:
    # SECURITY: Size is checked before the file is read
    try:
        size = path.stat().st_size
        if size > MAX_SPEC_FILE_SIZE_BYTES:
            raise SpecLoadError(
                f"{path} is {size} bytes, over the maximum size of "
                f"{MAX_SPEC_FILE_SIZE_BYTES} bytes"
            )
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Cannot read deployment file {path}: {e}") from e


def load_spec(spec_path: Path) -> DeploymentSpec:
    """Read and validate a deployment file.

    Args:
        spec_path: The file, or a directory holding stackops.yaml.

    Raises:
        SpecLoadError: If the file is missing, too large, not YAML or invalid.
    """
    path = find_spec(spec_path) if spec_path.is_dir() else spec_path
    if not path.is_file():
        raise SpecLoadError(f"Deployment file not found: {path}")

    try:
        document = yaml.safe_load(_read_bounded(path))
    except yaml.YAMLError as e:
        raise SpecLoadError(f"{path} is not valid YAML: {e}") from e

    spec = parse_spec(document, str(path))
    logger.info(
        "Loaded deployment %s", spec.name, extra={"path": str(path), "stacks": len(spec.stacks)}
    )
    return spec
