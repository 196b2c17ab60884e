"""Tests for document substitution."""

import copy

import pytest

from provisioner.config import BUNDLED_TEMPLATES_DIR
from provisioner.documents import (
    build_repo_refs,
    find_placeholders,
    oidc_provider_arn,
    patch,
    patch_pipeline_document,
    render_permission_document,
    render_text,
    render_trust_document,
)
from provisioner.errors import IncompleteSubstitutionError
from provisioner.spec_loader import (
    PERMISSION_TEMPLATE_NAME,
    TRUST_TEMPLATE_NAME,
    load_json_template,
    load_text_template,
)

PIPELINE = """\
name: deploy
on:
  push:
    branches: [main]
jobs:
  deploy:
    runs-on: ubuntu-latest
    steps:
      - uses: aws-actions/configure-aws-credentials@v4
        with:
          role-to-assume: arn:aws:iam::000000000000:role/old
          aws-region: us-east-1
"""


class TestPatch:
    """Tests for structural placeholder patching."""

    def test_find_placeholders(self) -> None:
        """Test that placeholder paths are reported per name."""
        template = {"a": "<x>", "b": [{"c": "<x>"}, "<y>"], "d": "literal"}

        assert find_placeholders(template) == {"x": ["$.a", "$.b[0].c"], "y": ["$.b[1]"]}

    def test_scalar_and_list_values(self) -> None:
        """Test that a list value replaces the leaf as a list."""
        template = {"principal": "<arn>", "subjects": "<refs>"}

        result = patch(template, {"arn": "arn:x", "refs": ("r1", "r2")})

        assert result == {"principal": "arn:x", "subjects": ["r1", "r2"]}

    def test_template_not_mutated(self) -> None:
        """Test that patching returns a new document."""
        template = {"Statement": [{"Principal": "<arn>"}]}
        original = copy.deepcopy(template)

        patch(template, {"arn": "arn:x"})

        assert template == original

    def test_embedded_markers_are_not_leaves(self) -> None:
        """Test that only whole-leaf placeholders are structural."""
        template = {"resource": "arn:aws:ecr:<region>:repo"}

        assert find_placeholders(template) == {}

    def test_missing_values_named(self) -> None:
        """Test that every missing placeholder is reported at once."""
        with pytest.raises(IncompleteSubstitutionError) as exc_info:
            patch({"a": "<x>", "b": "<y>", "c": "<z>"}, {"y": "1"}, document="trust-policy")

        assert exc_info.value.document == "trust-policy"
        assert exc_info.value.missing == ["x", "z"]


class TestRenderText:
    """Tests for literal marker replacement."""

    def test_all_occurrences_replaced(self) -> None:
        """Test that repeated markers are all replaced."""
        text = "arn:<region>:<account-id>/x and <region>"

        assert render_text(text, {"region": "il-central-1", "account-id": "1"}) == (
            "arn:il-central-1:1/x and il-central-1"
        )

    def test_missing_marker(self) -> None:
        """Test that an unsupplied marker raises before any output."""
        with pytest.raises(IncompleteSubstitutionError) as exc_info:
            render_text("<region>/<cluster-name>", {"region": "r"}, document="permission-policy")

        assert exc_info.value.missing == ["cluster-name"]


class TestBundledDocuments:
    """Tests rendering the bundled trust and permission templates."""

    def test_trust_document(self) -> None:
        """Test the trust document for a known account and repository."""
        template = load_json_template(BUNDLED_TEMPLATES_DIR, TRUST_TEMPLATE_NAME)

        document = render_trust_document(template, "111122223333", "acme", "web", ["main"])

        statement = document["Statement"][0]
        assert statement["Principal"]["Federated"] == (
            "arn:aws:iam::111122223333:oidc-provider/token.actions.githubusercontent.com"
        )
        assert statement["Condition"]["StringLike"][
            "token.actions.githubusercontent.com:sub"
        ] == ["repo:acme/web:ref:refs/heads/main"]
        assert find_placeholders(document) == {}

    def test_permission_document(self) -> None:
        """Test the permission document scoped to one cluster."""
        text = load_text_template(BUNDLED_TEMPLATES_DIR, PERMISSION_TEMPLATE_NAME)

        document = render_permission_document(text, "111122223333", "il-central-1", "web-cluster")

        resources = [statement["Resource"] for statement in document["Statement"]]
        assert "arn:aws:eks:il-central-1:111122223333:cluster/web-cluster" in resources
        assert "arn:aws:ecr:il-central-1:111122223333:repository/*" in resources

    def test_repo_refs_per_branch(self) -> None:
        """Test that every trusted branch yields one subject claim."""
        assert build_repo_refs("acme", "web", ["main", "release"]) == [
            "repo:acme/web:ref:refs/heads/main",
            "repo:acme/web:ref:refs/heads/release",
        ]

    def test_oidc_provider_arn(self) -> None:
        """Test the identity provider ARN is derived from the account alone."""
        assert oidc_provider_arn("111122223333").startswith("arn:aws:iam::111122223333:")


class TestPatchPipelineDocument:
    """Tests for pipeline line patching."""

    def test_lines_replaced(self) -> None:
        """Test that both target lines point at the new role and region."""
        role = "arn:aws:iam::111122223333:role/web-deployer"

        patched = patch_pipeline_document(PIPELINE, role, "il-central-1", "deploy.yml")

        assert f"          role-to-assume: {role}\n" in patched
        assert "          aws-region: il-central-1\n" in patched
        assert "000000000000" not in patched
        assert "us-east-1" not in patched

    def test_list_item_prefix_preserved(self) -> None:
        """Test that a sequence item dash survives patching."""
        text = "env:\n  - role-to-assume: old\n  - aws-region: old\n"

        patched = patch_pipeline_document(text, "arn:new", "il-central-1", "deploy.yml")

        assert patched == "env:\n  - role-to-assume: arn:new\n  - aws-region: il-central-1\n"

    def test_idempotent(self) -> None:
        """Test that patching an already patched document changes nothing."""
        role = "arn:aws:iam::111122223333:role/web-deployer"
        once = patch_pipeline_document(PIPELINE, role, "il-central-1", "deploy.yml")

        assert patch_pipeline_document(once, role, "il-central-1", "deploy.yml") == once

    def test_unrelated_lines_untouched(self) -> None:
        """Test that the rest of the document is preserved byte for byte."""
        patched = patch_pipeline_document(PIPELINE, "arn:new", "il-central-1", "deploy.yml")

        assert patched.splitlines()[:9] == PIPELINE.splitlines()[:9]

    def test_missing_lines(self) -> None:
        """Test that a pipeline without the target lines is rejected."""
        with pytest.raises(IncompleteSubstitutionError) as exc_info:
            patch_pipeline_document("name: deploy\n", "arn:new", "il-central-1", "deploy.yml")

        assert exc_info.value.document == "deploy.yml"
        assert exc_info.value.missing == ["aws-region", "role-to-assume"]
