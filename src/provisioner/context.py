"""Run context: the read-only facts every stage consumes.

Built once per run from the validated Config, the caller's account id and
the source repository coordinates. Passed explicitly into the sequencer;
nothing in the package reads process-wide mutable state after this point.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .config import Config, ConfigurationError

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 10

# git@github.com:org/repo.git, https://github.com/org/repo, ssh://git@host/org/repo.git
_REMOTE_PATTERN = re.compile(
    r"^(?:[a-z+]+://)?(?:[^@/]+@)?[^:/]+[:/](?P<org>[^/]+)/(?P<repo>[^/]+?)(?:\.git)?/?$"
)


@dataclass(frozen=True)
class RunContext:
    """Process-wide facts, read-only after initialization."""

    account_id: str
    org: str
    repo: str
    region: str
    stack_name: str
    network_name: str
    public_subnet_name: str
    private_subnet_name: str
    security_group_name: str
    registry_name: str
    cluster_name: str
    role_name: str
    trusted_branches: tuple[str, ...] = ("main",)

    @property
    def role_arn(self) -> str:
        return f"arn:aws:iam::{self.account_id}:role/{self.role_name}"

    @property
    def cluster_arn(self) -> str:
        return f"arn:aws:eks:{self.region}:{self.account_id}:cluster/{self.cluster_name}"

    @classmethod
    def from_config(cls, config: Config, account_id: str, org: str, repo: str) -> RunContext:
        return cls(
            account_id=account_id,
            org=org,
            repo=repo,
            region=config.region,
            stack_name=config.stack_name,
            network_name=config.network_name,
            public_subnet_name=config.public_subnet_name,
            private_subnet_name=config.private_subnet_name,
            security_group_name=config.security_group_name,
            registry_name=config.registry_name,
            cluster_name=config.cluster_name,
            role_name=config.role_name,
            trusted_branches=config.trusted_branches,
        )


def parse_remote_url(url: str) -> tuple[str, str]:
    """Extract (org, repo) from a git remote URL.

    Raises:
        ConfigurationError: If the URL does not look like org/repo.
    """
    match = _REMOTE_PATTERN.match(url.strip())
    if match is None:
        raise ConfigurationError(f"Cannot derive org/repo from git remote: {url!r}")
    return match.group("org"), match.group("repo")


def discover_repo_coordinates(cwd: Path | None = None, remote: str = "origin") -> tuple[str, str]:
    """Read the source repository coordinates from the git remote.

    Raises:
        ConfigurationError: If git is unavailable or the remote is missing.
    """
    cmd = ["git", "remote", "get-url", remote]
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
            check=False,
        )
    except FileNotFoundError as e:
        raise ConfigurationError("git not found; set GITHUB_ORG and GITHUB_REPO") from e
    except subprocess.TimeoutExpired as e:
        raise ConfigurationError(f"git timed out after {GIT_TIMEOUT_SECONDS}s") from e

    if result.returncode != 0:
        raise ConfigurationError(
            f"git remote '{remote}' not available ({result.stderr.strip()}); "
            "set GITHUB_ORG and GITHUB_REPO"
        )

    org, repo = parse_remote_url(result.stdout)
    logger.info("Discovered repository coordinates", extra={"org": org, "repo": repo})
    return org, repo
