"""Kube-config wiring for the provisioned cluster.

Writes one cluster, one user and one context entry, all named after the
cluster ARN, into the kube-config file and makes the context current. The
user authenticates with ``aws eks get-token``, so no token is persisted.

Upserting is idempotent: existing entries with the same name are replaced
in place and every other entry is left untouched.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import MAX_DOCUMENT_FILE_SIZE_BYTES
from .errors import ProvisionerError

logger = logging.getLogger(__name__)

_SECTIONS = ("clusters", "users", "contexts")


class KubeconfigError(ProvisionerError):
    """Raised when the kube-config file cannot be read or written."""

    pass


def build_entries(
    cluster_arn: str,
    cluster_name: str,
    endpoint: str,
    certificate_authority: str,
    region: str,
) -> dict[str, dict[str, Any]]:
    """Cluster, user and context entries for one cluster."""
    return {
        "clusters": {
            "name": cluster_arn,
            "cluster": {
                "server": endpoint,
                "certificate-authority-data": certificate_authority,
            },
        },
        "users": {
            "name": cluster_arn,
            "user": {
                "exec": {
                    "apiVersion": "client.authentication.k8s.io/v1beta1",
                    "command": "aws",
                    "args": [
                        "--region",
                        region,
                        "eks",
                        "get-token",
                        "--cluster-name",
                        cluster_name,
                        "--output",
                        "json",
                    ],
                },
            },
        },
        "contexts": {
            "name": cluster_arn,
            "context": {"cluster": cluster_arn, "user": cluster_arn},
        },
    }


def _empty_config() -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "preferences": {},
        "clusters": [],
        "users": [],
        "contexts": [],
        "current-context": "",
    }


def load_kubeconfig(path: Path) -> dict[str, Any]:
    """Load the kube-config file, or an empty config if it does not exist."""
    if not path.exists():
        return _empty_config()

    try:
        if path.stat().st_size > MAX_DOCUMENT_FILE_SIZE_BYTES:
            raise KubeconfigError(
                f"Kube-config exceeds maximum size of {MAX_DOCUMENT_FILE_SIZE_BYTES} bytes: {path}"
            )
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise KubeconfigError(f"Failed to read kube-config {path}: {e}") from e

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise KubeconfigError(f"Invalid YAML in kube-config {path}: {e}") from e

    if data is None:
        return _empty_config()
    if not isinstance(data, dict):
        raise KubeconfigError(f"Kube-config must contain a YAML mapping: {path}")

    for section in _SECTIONS:
        if data.get(section) is None:
            data[section] = []
        elif not isinstance(data[section], list):
            raise KubeconfigError(f"Kube-config section '{section}' must be a list: {path}")
    return data


def save_kubeconfig(path: Path, data: dict[str, Any]) -> None:
    """Write the kube-config atomically, readable only by the owner."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    try:
        tmp_path.write_text(yaml.safe_dump(data, default_flow_style=False), encoding="utf-8")
        os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
    except OSError as e:
        raise KubeconfigError(f"Failed to write kube-config {path}: {e}") from e


def upsert_cluster_entry(
    path: Path,
    cluster_arn: str,
    cluster_name: str,
    endpoint: str,
    certificate_authority: str,
    region: str,
) -> bool:
    """Add or replace the cluster's entries and select its context.

    Returns:
        True if the file changed.
    """
    data = load_kubeconfig(path)
    entries = build_entries(cluster_arn, cluster_name, endpoint, certificate_authority, region)

    changed = data.get("current-context") != cluster_arn
    for section, entry in entries.items():
        items = data[section]
        index = _find(items, cluster_arn)
        if index is None:
            items.append(entry)
            changed = True
        elif items[index] != entry:
            items[index] = entry
            changed = True

    if not changed:
        logger.info("Kube-config already wired", extra={"path": str(path), "context": cluster_arn})
        return False

    data["current-context"] = cluster_arn
    save_kubeconfig(path, data)
    logger.info("Kube-config wired", extra={"path": str(path), "context": cluster_arn})
    return True


def remove_cluster_entry(path: Path, cluster_arn: str) -> bool:
    """Remove the cluster's entries.

    Returns:
        True if anything was removed; False if the entries were already absent.
    """
    if not path.exists():
        logger.info("Kube-config absent, nothing to unwire", extra={"path": str(path)})
        return False

    data = load_kubeconfig(path)
    removed = False
    for section in _SECTIONS:
        kept = [item for item in data[section] if _name(item) != cluster_arn]
        if len(kept) != len(data[section]):
            data[section] = kept
            removed = True

    if data.get("current-context") == cluster_arn:
        data["current-context"] = ""
        removed = True

    if not removed:
        logger.info(
            "Kube-config entries already absent",
            extra={"path": str(path), "context": cluster_arn},
        )
        return False

    save_kubeconfig(path, data)
    logger.info("Kube-config entries removed", extra={"path": str(path), "context": cluster_arn})
    return True


def _name(item: Any) -> str | None:
    return item.get("name") if isinstance(item, dict) else None


def _find(items: list[Any], name: str) -> int | None:
    for index, item in enumerate(items):
        if _name(item) == name:
            return index
    return None
