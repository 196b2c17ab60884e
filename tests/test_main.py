"""Integration tests for the run entry point."""

import json
import logging
from pathlib import Path
from unittest.mock import patch

import pytest

from aws_mock import MockAwsContext
from provisioner.config import Config
from provisioner.credentials import AccountMismatchError
from provisioner.main import (
    EXIT_CONFIG_ERROR,
    EXIT_OK,
    EXIT_RUN_FAILED,
    JsonFormatter,
    main,
    setup_logging,
)
from provisioner.models import ResourceKind
from provisioner.summary import RunSummary


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        stack_name="web",
        region="il-central-1",
        github_org="acme",
        github_repo="web",
        pipeline_files=(),
        kubeconfig_path=tmp_path / "kubeconfig",
    )


class TestMain:
    """Tests for main()."""

    @pytest.mark.asyncio
    async def test_provision_then_teardown(self, config: Config) -> None:
        """Test a full provision followed by a full teardown."""
        summaries: list[RunSummary] = []
        with MockAwsContext() as ctx:
            provisioned = await main(
                "provision", config, provider_factory=ctx.provider_factory,
                report=summaries.append,
            )
            torn_down = await main(
                "teardown", config, provider_factory=ctx.provider_factory,
                report=summaries.append,
            )

            assert ctx.state.exists(ResourceKind.IDENTITY_PROVIDER,
                                    "https://token.actions.githubusercontent.com")
            assert not ctx.state.exists(ResourceKind.CLUSTER, "web-cluster")

        assert provisioned == EXIT_OK
        assert torn_down == EXIT_OK
        assert [s.operation for s in summaries] == ["provision", "teardown"]
        assert summaries[0].account_id == "111122223333"

    @pytest.mark.asyncio
    async def test_degraded_addon_exits_ok(self, config: Config) -> None:
        """Test that degraded add-ons do not change the exit code."""
        with MockAwsContext() as ctx:
            ctx.state.fail_create.add("coredns")
            code = await main("provision", config, provider_factory=ctx.provider_factory)

        assert code == EXIT_OK

    @pytest.mark.asyncio
    async def test_fatal_error_exits_one(self, config: Config) -> None:
        """Test that a fatal run error gives exit code 1."""
        with MockAwsContext() as ctx:
            ctx.state.fail_create.add("web-cluster")
            code = await main("provision", config, provider_factory=ctx.provider_factory)

        assert code == EXIT_RUN_FAILED

    @pytest.mark.asyncio
    async def test_missing_credentials(self, config: Config) -> None:
        """Test that missing credentials stop the run before any probe."""
        with MockAwsContext(fail_auth=True) as ctx:
            code = await main("provision", config, provider_factory=ctx.provider_factory)

            assert ctx.state.calls == []
            assert ctx.providers == []

        assert code == EXIT_CONFIG_ERROR

    @pytest.mark.asyncio
    async def test_account_mismatch(self, config: Config) -> None:
        """Test that the account guard blocks the run."""
        with MockAwsContext() as ctx:
            with patch(
                "provisioner.main.resolve_account_id",
                side_effect=AccountMismatchError("wrong account"),
            ):
                code = await main("provision", config, provider_factory=ctx.provider_factory)

            assert ctx.state.calls == []

        assert code == EXIT_CONFIG_ERROR

    @pytest.mark.asyncio
    async def test_unknown_operation(self, config: Config) -> None:
        """Test that only provision and teardown are accepted."""
        assert await main("destroy-everything", config) == EXIT_CONFIG_ERROR

    @pytest.mark.asyncio
    async def test_invalid_stack_spec(self, tmp_path: Path) -> None:
        """Test that an invalid stack spec is a configuration error."""
        spec = tmp_path / "stack.yaml"
        spec.write_text("vpcCidr: not-a-cidr\n")
        config = Config(
            stack_name="web", region="il-central-1", github_org="acme", github_repo="web",
            stack_spec_file=spec, pipeline_files=(),
        )

        with MockAwsContext() as ctx:
            code = await main("provision", config, provider_factory=ctx.provider_factory)

        assert code == EXIT_CONFIG_ERROR

    @pytest.mark.asyncio
    async def test_repo_discovered_from_git(self, tmp_path: Path) -> None:
        """Test that repository coordinates fall back to the git remote."""
        config = Config(
            stack_name="web", region="il-central-1", pipeline_files=(),
            kubeconfig_path=tmp_path / "kubeconfig",
        )
        summaries: list[RunSummary] = []

        with MockAwsContext() as ctx:
            with patch(
                "provisioner.main.discover_repo_coordinates", return_value=("acme", "api")
            ):
                await main("provision", config, provider_factory=ctx.provider_factory,
                           report=summaries.append)
            role = ctx.state.find(ResourceKind.ROLE, "web-deployer")

        assert role is not None
        assert role.spec_attributes["trust_document"]["Statement"][0]["Condition"][
            "StringLike"
        ]["token.actions.githubusercontent.com:sub"] == ["repo:acme/api:ref:refs/heads/main"]


class TestLogging:
    """Tests for structured logging."""

    def test_json_formatter_includes_extras(self) -> None:
        """Test that extra fields appear in the JSON line."""
        record = logging.LogRecord(
            "provisioner.reconciler", logging.INFO, __file__, 1, "Resource created", None, None
        )
        record.kind = "network"
        record.key = "web-vpc"

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Resource created"
        assert data["level"] == "INFO"
        assert data["kind"] == "network"
        assert data["key"] == "web-vpc"
        assert "msg" not in data

    def test_setup_logging_is_idempotent(self) -> None:
        """Test that repeated setup does not stack handlers."""
        root = logging.getLogger()
        original = list(root.handlers)
        try:
            setup_logging()
            setup_logging(verbose=True)

            json_handlers = [h for h in root.handlers if isinstance(h.formatter, JsonFormatter)]
            assert len(json_handlers) == 1
            assert root.level == logging.DEBUG
            assert logging.getLogger("botocore").level == logging.WARNING
        finally:
            for handler in list(root.handlers):
                if handler not in original:
                    root.removeHandler(handler)
