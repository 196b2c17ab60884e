"""Ambient credential handling.

The provisioner never takes credentials as input. It uses whatever the
default boto3 credential chain resolves (environment, shared config, SSO,
instance or web-identity role) and discovers the account from STS.

SECURITY INVARIANTS:
1. The account the run acts on is the account STS reports for the caller
2. When EXPECTED_ACCOUNT_ID is set, any other account aborts the run
   before a single resource is probed
"""

from __future__ import annotations

import logging

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """Raised when ambient credentials are missing or unusable."""

    pass


class AccountMismatchError(CredentialError):
    """Raised when the caller's account differs from EXPECTED_ACCOUNT_ID."""

    pass


def build_client_config(max_attempts: int) -> BotoConfig:
    """Client config with botocore's standard retry mode for transient failures."""
    return BotoConfig(retries={"max_attempts": max_attempts, "mode": "standard"})


def create_session(region: str) -> boto3.session.Session:
    """Create a fresh session bound to the target region.

    Sessions are not thread-safe, so every provider owns its own.
    """
    return boto3.session.Session(region_name=region)


def resolve_account_id(
    session: boto3.session.Session,
    expected_account_id: str | None = None,
) -> str:
    """Return the caller's account id, enforcing the expected account if set.

    Raises:
        CredentialError: If no usable credentials are available.
        AccountMismatchError: If the account differs from the expected one.
    """
    try:
        identity = session.client("sts").get_caller_identity()
    except (ClientError, BotoCoreError) as e:
        raise CredentialError(f"Unable to resolve caller identity: {e}") from e

    account_id = identity.get("Account")
    if not account_id:
        raise CredentialError("STS returned no account for the caller")

    if expected_account_id and account_id != expected_account_id:
        logger.critical(
            "Caller account does not match expected account",
            extra={
                "security_event": "account_mismatch",
                "account_id": account_id,
                "expected_account_id": expected_account_id,
                "action": "run_blocked",
            },
        )
        raise AccountMismatchError(
            f"Credentials resolve to account {account_id}, expected {expected_account_id}"
        )

    logger.info(
        "Resolved caller identity",
        extra={"account_id": account_id, "caller_arn": identity.get("Arn", "")},
    )
    return account_id
