"""Stack spec and document template loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DOCUMENT_FILE_SIZE_BYTES, MAX_SPEC_FILE_SIZE_BYTES
from .models import StackSpec

logger = logging.getLogger(__name__)

TRUST_TEMPLATE_NAME = "trust-policy.json"
PERMISSION_TEMPLATE_NAME = "permission-policy.json"


class SpecLoadError(Exception):
    """Raised when spec or template loading or validation fails."""

    pass


def _read_bounded(path: Path, limit: int, what: str) -> str:
    if not path.exists():
        raise SpecLoadError(f"{what} not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {what} {path}: {e}") from e

    if file_size > limit:
        raise SpecLoadError(f"{what} exceeds maximum size of {limit} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {what} {path}: {e}") from e


def load_stack_spec(spec_path: Path | None) -> StackSpec:
    """Load and validate the stack spec from YAML.

    A missing path yields the default StackSpec.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    if spec_path is None:
        logger.info("No stack spec file configured, using defaults")
        return StackSpec()

    content = _read_bounded(spec_path, MAX_SPEC_FILE_SIZE_BYTES, "Stack spec file")

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Stack spec must contain a YAML mapping: {spec_path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = raw_data

    try:
        spec = StackSpec.model_validate(spec_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {spec_path}:\n{error_list}") from e

    logger.info("Loaded stack spec from %s", spec_path)
    return spec


def load_json_template(templates_dir: Path, name: str) -> dict[str, Any]:
    """Load a structured (JSON) document template.

    Raises:
        SpecLoadError: If the template cannot be loaded.
    """
    template_path = templates_dir / name
    content = _read_bounded(template_path, MAX_DOCUMENT_FILE_SIZE_BYTES, "Template file")

    try:
        template = json.loads(content)
    except json.JSONDecodeError as e:
        raise SpecLoadError(f"Invalid JSON in {template_path}: {e}") from e

    if not isinstance(template, dict):
        raise SpecLoadError(f"Template must be a JSON object: {template_path}")

    logger.info("Loaded template '%s' from %s", name, template_path)
    return template


def load_text_template(templates_dir: Path, name: str) -> str:
    """Load a document template as raw text (for literal substitution)."""
    return _read_bounded(templates_dir / name, MAX_DOCUMENT_FILE_SIZE_BYTES, "Template file")


def load_text_document(path: Path) -> str:
    """Load a downstream document (pipeline definition) as raw text."""
    return _read_bounded(path, MAX_DOCUMENT_FILE_SIZE_BYTES, "Document")
