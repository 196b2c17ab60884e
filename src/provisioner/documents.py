"""Document substitution.

Three substitution styles, all pure (no I/O, inputs never mutated):

- ``patch``: structural. A placeholder is a whole leaf string of the form
  ``<name>``; its value may be a scalar or a list (a list replaces the
  leaf, which is how the trust document receives its repo refs).
- ``render_text``: literal marker replacement inside raw text, used for the
  permission document.
- ``patch_pipeline_document``: line-pattern replacement of the
  ``role-to-assume:`` and ``aws-region:`` lines in downstream pipeline
  definitions, preserving indentation.

A document is never produced partially substituted: every placeholder
without a value raises IncompleteSubstitutionError naming all of them.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from typing import Any

from .errors import IncompleteSubstitutionError

GITHUB_OIDC_HOST = "token.actions.githubusercontent.com"
GITHUB_OIDC_URL = f"https://{GITHUB_OIDC_HOST}"
GITHUB_OIDC_AUDIENCE = "sts.amazonaws.com"

_LEAF_PLACEHOLDER = re.compile(r"^<([a-z][a-z0-9-]*)>$")
_TEXT_MARKER = re.compile(r"<([a-z][a-z0-9-]*)>")

_ROLE_LINE = re.compile(r"^(?P<prefix>[ \t]*(?:-[ \t]+)?role-to-assume:)[^\n]*$", re.MULTILINE)
_REGION_LINE = re.compile(r"^(?P<prefix>[ \t]*(?:-[ \t]+)?aws-region:)[^\n]*$", re.MULTILINE)


def find_placeholders(template: Any, path: str = "$") -> dict[str, list[str]]:
    """Map each placeholder name in ``template`` to the paths it occurs at."""
    found: dict[str, list[str]] = {}
    _walk(template, path, found)
    return found


def _walk(node: Any, path: str, found: dict[str, list[str]]) -> None:
    if isinstance(node, dict):
        for key, value in node.items():
            _walk(value, f"{path}.{key}", found)
    elif isinstance(node, list):
        for index, item in enumerate(node):
            _walk(item, f"{path}[{index}]", found)
    elif isinstance(node, str):
        match = _LEAF_PLACEHOLDER.match(node)
        if match:
            found.setdefault(match.group(1), []).append(path)


def patch(
    template: Any,
    substitutions: Mapping[str, Any],
    document: str = "document",
) -> Any:
    """Return a copy of ``template`` with every placeholder leaf replaced.

    Raises:
        IncompleteSubstitutionError: If any placeholder has no value.
    """
    missing = [name for name in find_placeholders(template) if name not in substitutions]
    if missing:
        raise IncompleteSubstitutionError(document, missing)
    return _substitute(template, substitutions)


def _substitute(node: Any, substitutions: Mapping[str, Any]) -> Any:
    if isinstance(node, dict):
        return {key: _substitute(value, substitutions) for key, value in node.items()}
    if isinstance(node, list):
        return [_substitute(item, substitutions) for item in node]
    if isinstance(node, str):
        match = _LEAF_PLACEHOLDER.match(node)
        if match:
            value = substitutions[match.group(1)]
            return list(value) if isinstance(value, (list, tuple)) else value
    return node


def render_text(text: str, substitutions: Mapping[str, str], document: str = "document") -> str:
    """Replace every ``<name>`` marker in ``text`` with its literal value.

    Raises:
        IncompleteSubstitutionError: If any marker has no value.
    """
    markers = set(_TEXT_MARKER.findall(text))
    missing = [name for name in markers if name not in substitutions]
    if missing:
        raise IncompleteSubstitutionError(document, missing)

    for name in markers:
        text = text.replace(f"<{name}>", str(substitutions[name]))
    return text


def patch_pipeline_document(text: str, role_arn: str, region: str, document: str) -> str:
    """Point a pipeline definition at the deployer role and region.

    Raises:
        IncompleteSubstitutionError: If either target line is missing.
    """
    missing = []
    if not _ROLE_LINE.search(text):
        missing.append("role-to-assume")
    if not _REGION_LINE.search(text):
        missing.append("aws-region")
    if missing:
        raise IncompleteSubstitutionError(document, missing)

    text = _ROLE_LINE.sub(lambda m: f"{m.group('prefix')} {role_arn}", text)
    return _REGION_LINE.sub(lambda m: f"{m.group('prefix')} {region}", text)


def build_repo_refs(org: str, repo: str, branches: Iterable[str]) -> list[str]:
    """Subject claims trusted by the deployer role, one per branch."""
    return [f"repo:{org}/{repo}:ref:refs/heads/{branch}" for branch in branches]


def oidc_provider_arn(account_id: str) -> str:
    return f"arn:aws:iam::{account_id}:oidc-provider/{GITHUB_OIDC_HOST}"


def render_trust_document(
    template: Mapping[str, Any],
    account_id: str,
    org: str,
    repo: str,
    branches: Iterable[str],
) -> dict[str, Any]:
    return patch(
        template,
        {
            "oidc-provider-arn": oidc_provider_arn(account_id),
            "repo-refs": build_repo_refs(org, repo, branches),
        },
        document="trust-policy",
    )


def render_permission_document(
    template_text: str,
    account_id: str,
    region: str,
    cluster_name: str,
) -> dict[str, Any]:
    rendered = render_text(
        template_text,
        {"account-id": account_id, "region": region, "cluster-name": cluster_name},
        document="permission-policy",
    )
    return json.loads(rendered)
