"""Configuration management with validation.

Everything a run needs from its environment is read once, validated at
construction time, and frozen. Invalid configurations raise
ConfigurationError before any provider call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_ADDON_WORKERS = 4
MAX_ADDON_WORKERS = 16

DEFAULT_CLUSTER_TIMEOUT_SECONDS = 1800
DEFAULT_ADDON_TIMEOUT_SECONDS = 900
MIN_WAITER_TIMEOUT_SECONDS = 60
WAITER_DELAY_SECONDS = 15

DEFAULT_API_MAX_ATTEMPTS = 5
MAX_API_MAX_ATTEMPTS = 10

# Security constraints - enforced limits
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max stack spec
MAX_DOCUMENT_FILE_SIZE_BYTES = 256 * 1024  # trust/permission/pipeline documents

DEFAULT_TRUSTED_BRANCHES = ("main",)
DEFAULT_PIPELINE_FILES = (
    ".github/workflows/deploy.yml",
    ".github/workflows/build.yml",
)
BUNDLED_TEMPLATES_DIR = Path(__file__).parent / "templates"

# Input validation patterns
VALID_STACK_NAME_PATTERN = r"^[a-z][a-z0-9-]{1,38}[a-z0-9]$"
VALID_REGION_PATTERN = r"^[a-z]{2}(-gov)?-[a-z]+-\d$"
VALID_ACCOUNT_ID_PATTERN = r"^\d{12}$"
VALID_BRANCH_PATTERN = r"^[A-Za-z0-9._/*-]+$"


@dataclass(frozen=True)
class Config:
    """Run configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    stack_name: str
    region: str

    # Source repository coordinates (discovered from git when unset)
    github_org: str | None = None
    github_repo: str | None = None
    trusted_branches: tuple[str, ...] = DEFAULT_TRUSTED_BRANCHES

    # Paths
    stack_spec_file: Path | None = None
    templates_dir: Path = BUNDLED_TEMPLATES_DIR
    pipeline_files: tuple[Path, ...] = field(
        default_factory=lambda: tuple(Path(p) for p in DEFAULT_PIPELINE_FILES)
    )
    kubeconfig_path: Path = field(default_factory=lambda: Path.home() / ".kube" / "config")

    # Account guard
    expected_account_id: str | None = None

    # Concurrency and timing
    addon_workers: int = DEFAULT_ADDON_WORKERS
    cluster_timeout_seconds: int = DEFAULT_CLUSTER_TIMEOUT_SECONDS
    addon_timeout_seconds: int = DEFAULT_ADDON_TIMEOUT_SECONDS
    api_max_attempts: int = DEFAULT_API_MAX_ATTEMPTS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.stack_name:
            errors.append("STACK_NAME is required")
        elif not re.match(VALID_STACK_NAME_PATTERN, self.stack_name):
            errors.append(
                f"STACK_NAME must match pattern {VALID_STACK_NAME_PATTERN}: {self.stack_name}"
            )

        if not self.region:
            errors.append("AWS_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.region}")

        if bool(self.github_org) != bool(self.github_repo):
            errors.append("GITHUB_ORG and GITHUB_REPO must be set together")

        if not self.trusted_branches:
            errors.append("TRUSTED_BRANCHES must name at least one branch")
        for branch in self.trusted_branches:
            if not re.match(VALID_BRANCH_PATTERN, branch):
                errors.append(f"TRUSTED_BRANCHES contains an invalid branch name: {branch}")

        if self.expected_account_id and not re.match(
            VALID_ACCOUNT_ID_PATTERN, self.expected_account_id
        ):
            errors.append(
                f"EXPECTED_ACCOUNT_ID must be a 12-digit account id: {self.expected_account_id}"
            )

        if self.stack_spec_file is not None and not self.stack_spec_file.is_file():
            errors.append(f"Stack spec file does not exist: {self.stack_spec_file}")

        if not self.templates_dir.is_dir():
            errors.append(f"Templates directory does not exist: {self.templates_dir}")

        if not 1 <= self.addon_workers <= MAX_ADDON_WORKERS:
            errors.append(f"ADDON_WORKERS must be between 1 and {MAX_ADDON_WORKERS}")

        for name, value in (
            ("CLUSTER_TIMEOUT", self.cluster_timeout_seconds),
            ("ADDON_TIMEOUT", self.addon_timeout_seconds),
        ):
            if value < MIN_WAITER_TIMEOUT_SECONDS:
                errors.append(f"{name} must be at least {MIN_WAITER_TIMEOUT_SECONDS} seconds")

        if not 1 <= self.api_max_attempts <= MAX_API_MAX_ATTEMPTS:
            errors.append(f"API_MAX_ATTEMPTS must be between 1 and {MAX_API_MAX_ATTEMPTS}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    # Desired names of every top-level resource

    @property
    def network_name(self) -> str:
        return f"{self.stack_name}-vpc"

    @property
    def public_subnet_name(self) -> str:
        return f"{self.stack_name}-public"

    @property
    def private_subnet_name(self) -> str:
        return f"{self.stack_name}-private"

    @property
    def security_group_name(self) -> str:
        return f"{self.stack_name}-sg"

    @property
    def registry_name(self) -> str:
        return self.stack_name

    @property
    def cluster_name(self) -> str:
        return f"{self.stack_name}-cluster"

    @property
    def role_name(self) -> str:
        return f"{self.stack_name}-deployer"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            STACK_NAME: Prefix for every desired resource name (required)
            AWS_REGION / AWS_DEFAULT_REGION: Target region (required)
            GITHUB_ORG, GITHUB_REPO: Repository coordinates (default: git remote)
            TRUSTED_BRANCHES: Comma-separated branches trusted by the role (default: main)
            STACK_SPEC_FILE: Optional YAML stack spec
            TEMPLATES_DIR: Trust/permission templates (default: bundled)
            PIPELINE_FILES: Comma-separated downstream pipeline documents
                (set but empty: patch none)
            KUBECONFIG: Kube-config file to wire (default: ~/.kube/config)
            EXPECTED_ACCOUNT_ID: Refuse to run against any other account
            ADDON_WORKERS: Add-on worker pool size (default: 4)
            CLUSTER_TIMEOUT: Cluster waiter budget in seconds (default: 1800)
            ADDON_TIMEOUT: Add-on waiter budget in seconds (default: 900)
            API_MAX_ATTEMPTS: Retry attempts for transient API failures (default: 5)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_list(
            key: str, default: tuple[str, ...], allow_empty: bool = False
        ) -> tuple[str, ...]:
            value = os.environ.get(key)
            if value is None:
                return default
            items = tuple(item.strip() for item in value.split(",") if item.strip())
            # Set but empty means "none" only where an empty list is meaningful
            return items if items or allow_empty else default

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value).expanduser() if value else None

        pipeline_files = get_list("PIPELINE_FILES", DEFAULT_PIPELINE_FILES, allow_empty=True)
        kubeconfig = get_path("KUBECONFIG")
        # KUBECONFIG may hold a path list; the first entry is the one written
        if kubeconfig is not None:
            kubeconfig = Path(str(kubeconfig).split(os.pathsep)[0])

        return cls(
            stack_name=os.environ.get("STACK_NAME", ""),
            region=os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION", ""),
            github_org=os.environ.get("GITHUB_ORG") or None,
            github_repo=os.environ.get("GITHUB_REPO") or None,
            trusted_branches=get_list("TRUSTED_BRANCHES", DEFAULT_TRUSTED_BRANCHES),
            stack_spec_file=get_path("STACK_SPEC_FILE"),
            templates_dir=get_path("TEMPLATES_DIR") or BUNDLED_TEMPLATES_DIR,
            pipeline_files=tuple(Path(p) for p in pipeline_files),
            kubeconfig_path=kubeconfig or Path.home() / ".kube" / "config",
            expected_account_id=os.environ.get("EXPECTED_ACCOUNT_ID") or None,
            addon_workers=get_int("ADDON_WORKERS", DEFAULT_ADDON_WORKERS),
            cluster_timeout_seconds=get_int("CLUSTER_TIMEOUT", DEFAULT_CLUSTER_TIMEOUT_SECONDS),
            addon_timeout_seconds=get_int("ADDON_TIMEOUT", DEFAULT_ADDON_TIMEOUT_SECONDS),
            api_max_attempts=get_int("API_MAX_ATTEMPTS", DEFAULT_API_MAX_ATTEMPTS),
        )
