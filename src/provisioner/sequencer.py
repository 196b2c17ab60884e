"""Dependency sequencer for provisioning and teardown.

The stack is a fixed chain of stages. Each stage declares the identifiers
it requires from earlier stages and the identifiers it produces for later
ones; a stage never runs without its inputs.

PROVISIONING ORDER:
    network -> public-subnet -> private-subnet -> security-boundary
    -> registry -> cluster -> add-ons -> kubeconfig
    -> identity-provider -> role -> access-binding -> pipeline-patch

TEARDOWN is the exact reverse, with two exceptions:
- The role's inline and attached permissions are removed before the role
- The identity provider is shared by every stack in the account; it is
  probed and reported, never deleted

Stages run strictly one after another. Within the add-ons stage the
add-ons are evaluated concurrently on a bounded pool, each on a provider
client of its own. Blocking provider calls run in the default executor so
the event loop stays responsive.

Before the first provider call, every document is rendered and every
pipeline definition is checked, so a missing substitution fails the run
with nothing touched.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from .addons import AddonHealthStateMachine
from .config import BUNDLED_TEMPLATES_DIR, DEFAULT_ADDON_WORKERS
from .context import RunContext
from .documents import (
    GITHUB_OIDC_AUDIENCE,
    GITHUB_OIDC_URL,
    build_repo_refs,
    patch_pipeline_document,
    render_permission_document,
    render_trust_document,
)
from .errors import ProvisionerError, SequencingError
from .kubeconfig import remove_cluster_entry, upsert_cluster_entry
from .models import STACK_TAG, AddonConfig, ResourceKind, ResourceSpec, StackSpec, SubnetTier
from .provider import Provider, ProviderFactory
from .reconciler import ReconcileAction, ReconcileOutcome, Reconciler
from .spec_loader import (
    PERMISSION_TEMPLATE_NAME,
    TRUST_TEMPLATE_NAME,
    SpecLoadError,
    load_json_template,
    load_text_document,
    load_text_template,
)
from .summary import RunSummary

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default availability zone suffix per tier; EKS needs subnets in two zones
DEFAULT_ZONE_SUFFIX = {SubnetTier.PUBLIC: "a", SubnetTier.PRIVATE: "b"}


@dataclass(frozen=True)
class Stage:
    """One step of the chain with its declared inputs and outputs."""

    name: str
    requires: tuple[str, ...] = ()
    produces: tuple[str, ...] = ()


PROVISION_STAGES: tuple[Stage, ...] = (
    Stage("network", produces=("network_id",)),
    Stage("public-subnet", requires=("network_id",), produces=("public_subnet_id",)),
    Stage("private-subnet", requires=("network_id",), produces=("private_subnet_id",)),
    Stage("security-boundary", requires=("network_id",), produces=("security_group_id",)),
    Stage("registry", produces=("registry_uri",)),
    Stage(
        "cluster",
        requires=("public_subnet_id", "private_subnet_id", "security_group_id"),
        produces=("cluster_name", "cluster_arn", "cluster_endpoint", "cluster_ca"),
    ),
    Stage("add-ons", requires=("cluster_name",)),
    Stage("kubeconfig", requires=("cluster_name", "cluster_arn", "cluster_endpoint", "cluster_ca")),
    Stage("identity-provider", produces=("identity_provider_arn",)),
    Stage("role", requires=("identity_provider_arn",), produces=("role_arn",)),
    Stage("access-binding", requires=("cluster_name", "role_arn"), produces=("access_binding_arn",)),
    Stage("pipeline-patch", requires=("role_arn",)),
)

TEARDOWN_STAGES: tuple[str, ...] = tuple(stage.name for stage in reversed(PROVISION_STAGES))


def check_requires(stage: Stage, outputs: Mapping[str, str]) -> None:
    """Raise SequencingError if an identifier the stage needs is missing."""
    missing = [key for key in stage.requires if not outputs.get(key)]
    if missing:
        raise SequencingError(f"Stage '{stage.name}' is missing required identifiers: {missing}")


def check_produces(stage: Stage, outputs: Mapping[str, str]) -> None:
    missing = [key for key in stage.produces if not outputs.get(key)]
    if missing:
        raise SequencingError(f"Stage '{stage.name}' did not produce identifiers: {missing}")


@dataclass
class RenderedDocuments:
    """Documents rendered during pre-flight."""

    trust_document: dict[str, Any]
    permission_document: dict[str, Any]
    pipelines: dict[Path, str] = field(default_factory=dict)


class Sequencer:
    """Runs the stage chain against a provider."""

    def __init__(
        self,
        context: RunContext,
        stack: StackSpec,
        provider_factory: ProviderFactory,
        *,
        templates_dir: Path = BUNDLED_TEMPLATES_DIR,
        pipeline_files: tuple[Path, ...] = (),
        kubeconfig_path: Path | None = None,
        addon_workers: int = DEFAULT_ADDON_WORKERS,
    ) -> None:
        self._context = context
        self._stack = stack
        self._provider_factory = provider_factory
        self._templates_dir = templates_dir
        self._pipeline_files = pipeline_files
        self._kubeconfig_path = kubeconfig_path
        self._addon_workers = addon_workers
        self._provider: Provider | None = None
        self._reconciler: Reconciler | None = None

    @property
    def reconciler(self) -> Reconciler:
        if self._reconciler is None:
            self._provider = self._provider_factory()
            self._reconciler = Reconciler(self._provider)
        return self._reconciler

    def _new_summary(self, operation: str) -> RunSummary:
        return RunSummary(
            operation=operation,
            stack_name=self._context.stack_name,
            account_id=self._context.account_id,
            region=self._context.region,
        )

    async def _blocking(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    # -------------------------------------------------------------------------
    # Resource specs
    # -------------------------------------------------------------------------

    @property
    def _tags(self) -> dict[str, str]:
        return {**self._stack.tags, STACK_TAG: self._context.stack_name}

    def network_spec(self) -> ResourceSpec:
        return ResourceSpec(
            kind=ResourceKind.NETWORK,
            name=self._context.network_name,
            attributes={"cidr_block": self._stack.vpc_cidr},
            tags=self._tags,
        )

    def subnet_spec(self, tier: SubnetTier, network_id: str) -> ResourceSpec:
        subnet = self._stack.subnet(tier)
        name = (
            self._context.public_subnet_name
            if tier is SubnetTier.PUBLIC
            else self._context.private_subnet_name
        )
        zone = subnet.availability_zone or f"{self._context.region}{DEFAULT_ZONE_SUFFIX[tier]}"
        return ResourceSpec(
            kind=ResourceKind.SUBNET,
            name=name,
            scope={"vpc-id": network_id},
            attributes={"cidr_block": subnet.cidr, "availability_zone": zone, "tier": tier.value},
            tags=self._tags,
        )

    def security_group_spec(self, network_id: str) -> ResourceSpec:
        return ResourceSpec(
            kind=ResourceKind.SECURITY_BOUNDARY,
            name=self._context.security_group_name,
            scope={"vpc-id": network_id},
            attributes={
                "description": f"Cluster security group for {self._context.stack_name}",
                "ingress": [rule.model_dump() for rule in self._stack.ingress],
            },
            tags=self._tags,
        )

    def registry_spec(self) -> ResourceSpec:
        return ResourceSpec(
            kind=ResourceKind.REGISTRY, name=self._context.registry_name, tags=self._tags
        )

    def cluster_spec(self, outputs: Mapping[str, str] | None = None) -> ResourceSpec:
        attributes: dict[str, Any] = {}
        if outputs is not None:
            attributes = {
                "role_arn": (
                    f"arn:aws:iam::{self._context.account_id}:role/"
                    f"{self._stack.cluster_role_name}"
                ),
                "subnet_ids": [outputs["public_subnet_id"], outputs["private_subnet_id"]],
                "security_group_ids": [outputs["security_group_id"]],
                "kubernetes_version": self._stack.kubernetes_version,
            }
        return ResourceSpec(
            kind=ResourceKind.CLUSTER,
            name=self._context.cluster_name,
            attributes=attributes,
            tags=self._tags,
        )

    def addon_spec(self, addon: AddonConfig) -> ResourceSpec:
        return ResourceSpec(
            kind=ResourceKind.ADDON,
            name=addon.name,
            scope={"cluster-name": self._context.cluster_name},
            attributes={"version": addon.version},
            tags=self._tags,
        )

    def identity_provider_spec(self) -> ResourceSpec:
        return ResourceSpec(
            kind=ResourceKind.IDENTITY_PROVIDER,
            name=GITHUB_OIDC_URL,
            attributes={"client_ids": [GITHUB_OIDC_AUDIENCE]},
            tags=self._tags,
        )

    def role_spec(self, documents: RenderedDocuments | None = None) -> ResourceSpec:
        attributes: dict[str, Any] = {}
        if documents is not None:
            attributes = {
                "trust_document": documents.trust_document,
                "permission_policy_name": f"{self._context.role_name}-permissions",
                "permission_document": documents.permission_document,
                "managed_policy_arns": list(self._stack.managed_policy_arns),
                "description": f"Pipeline deployer role for {self._context.org}/{self._context.repo}",
            }
        return ResourceSpec(
            kind=ResourceKind.ROLE,
            name=self._context.role_name,
            attributes=attributes,
            tags=self._tags,
        )

    def access_binding_spec(self, role_arn: str) -> ResourceSpec:
        return ResourceSpec(
            kind=ResourceKind.ACCESS_BINDING,
            name=role_arn,
            scope={"cluster-name": self._context.cluster_name},
            attributes={"policy_arn": self._stack.access_policy_arn},
            tags=self._tags,
        )

    # -------------------------------------------------------------------------
    # Pre-flight
    # -------------------------------------------------------------------------

    def preflight(self) -> RenderedDocuments:
        """Render every document and validate every pipeline definition.

        Raises:
            SpecLoadError: If a template or pipeline file cannot be read.
            IncompleteSubstitutionError: If any document would be left
                partially substituted.
        """
        ctx = self._context
        trust = render_trust_document(
            load_json_template(self._templates_dir, TRUST_TEMPLATE_NAME),
            ctx.account_id,
            ctx.org,
            ctx.repo,
            ctx.trusted_branches,
        )
        try:
            permission = render_permission_document(
                load_text_template(self._templates_dir, PERMISSION_TEMPLATE_NAME),
                ctx.account_id,
                ctx.region,
                ctx.cluster_name,
            )
        except json.JSONDecodeError as e:
            raise SpecLoadError(f"Invalid JSON in {PERMISSION_TEMPLATE_NAME}: {e}") from e

        pipelines = {}
        for path in self._pipeline_files:
            text = load_text_document(path)
            patch_pipeline_document(text, ctx.role_arn, ctx.region, str(path))
            pipelines[path] = text

        logger.info(
            "Pre-flight passed",
            extra={
                "repo_refs": build_repo_refs(ctx.org, ctx.repo, ctx.trusted_branches),
                "pipeline_files": [str(p) for p in pipelines],
            },
        )
        return RenderedDocuments(trust, permission, pipelines)

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    async def provision(self) -> RunSummary:
        """Converge the whole stack.

        Fatal errors stop the chain and are recorded on the returned
        summary; resources converged before the failure stay in place.
        """
        summary = self._new_summary("provision")
        outputs: dict[str, str] = {}
        logger.info(
            "Provisioning stack",
            extra={"stack_name": self._context.stack_name, "region": self._context.region,
                   "account_id": self._context.account_id},
        )
        try:
            documents = self.preflight()
            for stage in PROVISION_STAGES:
                check_requires(stage, outputs)
                logger.info("Stage started", extra={"stage": stage.name})
                await self._run_provision_stage(stage, outputs, summary, documents)
                check_produces(stage, outputs)
        except (ProvisionerError, SpecLoadError) as e:
            logger.error(
                "Provisioning aborted",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            summary.fail(e)
        finally:
            summary.finish()
        return summary

    async def _run_provision_stage(
        self,
        stage: Stage,
        outputs: dict[str, str],
        summary: RunSummary,
        documents: RenderedDocuments,
    ) -> None:
        name = stage.name

        if name == "network":
            outcome = await self._reconcile(self.network_spec(), summary)
            outputs["network_id"] = outcome.resource_id or ""

        elif name in ("public-subnet", "private-subnet"):
            tier = SubnetTier.PUBLIC if name == "public-subnet" else SubnetTier.PRIVATE
            outcome = await self._reconcile(self.subnet_spec(tier, outputs["network_id"]), summary)
            outputs[f"{tier.value}_subnet_id"] = outcome.resource_id or ""

        elif name == "security-boundary":
            outcome = await self._reconcile(
                self.security_group_spec(outputs["network_id"]), summary
            )
            outputs["security_group_id"] = outcome.resource_id or ""

        elif name == "registry":
            outcome = await self._reconcile(self.registry_spec(), summary)
            descriptor = outcome.descriptor
            outputs["registry_uri"] = (
                (descriptor.attributes.get("uri") or descriptor.resource_id) if descriptor else ""
            )

        elif name == "cluster":
            outcome = await self._reconcile(self.cluster_spec(outputs), summary)
            attributes = outcome.descriptor.attributes if outcome.descriptor else {}
            outputs["cluster_name"] = self._context.cluster_name
            outputs["cluster_arn"] = attributes.get("arn") or outcome.resource_id or ""
            outputs["cluster_endpoint"] = attributes.get("endpoint") or ""
            outputs["cluster_ca"] = attributes.get("certificate_authority") or ""

        elif name == "add-ons":
            await self._provision_addons(summary)

        elif name == "kubeconfig":
            if self._kubeconfig_path is None:
                logger.info("No kube-config path configured, skipping wiring")
                return
            await self._blocking(
                upsert_cluster_entry,
                self._kubeconfig_path,
                outputs["cluster_arn"],
                outputs["cluster_name"],
                outputs["cluster_endpoint"],
                outputs["cluster_ca"],
                self._context.region,
            )

        elif name == "identity-provider":
            outcome = await self._reconcile(self.identity_provider_spec(), summary)
            outputs["identity_provider_arn"] = outcome.resource_id or ""

        elif name == "role":
            outcome = await self._reconcile(self.role_spec(documents), summary)
            attributes = outcome.descriptor.attributes if outcome.descriptor else {}
            outputs["role_arn"] = attributes.get("arn") or outcome.resource_id or ""

        elif name == "access-binding":
            outcome = await self._reconcile(self.access_binding_spec(outputs["role_arn"]), summary)
            outputs["access_binding_arn"] = outcome.resource_id or ""

        elif name == "pipeline-patch":
            await self._blocking(self._patch_pipelines, documents, outputs["role_arn"], summary)

        else:
            raise SequencingError(f"Unknown stage: {name}")

    async def _reconcile(self, spec: ResourceSpec, summary: RunSummary) -> ReconcileOutcome:
        outcome = await self._blocking(self.reconciler.reconcile, spec)
        summary.record(outcome)
        return outcome

    async def _provision_addons(self, summary: RunSummary) -> None:
        semaphore = asyncio.Semaphore(self._addon_workers)

        async def evaluate(addon: AddonConfig) -> ReconcileOutcome:
            async with semaphore:
                return await self._blocking(self._evaluate_addon, self.addon_spec(addon))

        results = await asyncio.gather(
            *(evaluate(addon) for addon in self._stack.addons), return_exceptions=True
        )

        # Outcomes are recorded on the event loop once every worker is done
        errors = []
        for result in results:
            if isinstance(result, BaseException):
                errors.append(result)
            else:
                summary.record(result)
        if errors:
            raise errors[0]

    def _evaluate_addon(self, spec: ResourceSpec) -> ReconcileOutcome:
        # Runs on a worker thread with a provider it owns
        machine = AddonHealthStateMachine(self._provider_factory())
        return machine.evaluate(spec)

    def _patch_pipelines(
        self, documents: RenderedDocuments, role_arn: str, summary: RunSummary
    ) -> None:
        for path, text in documents.pipelines.items():
            patched = patch_pipeline_document(text, role_arn, self._context.region, str(path))
            if patched == text:
                logger.info("Pipeline document already current", extra={"document": str(path)})
                continue
            try:
                path.write_text(patched, encoding="utf-8")
            except OSError as e:
                raise SequencingError(f"Failed to write pipeline document {path}: {e}") from e
            summary.patched_documents.append(str(path))
            logger.info(
                "Pipeline document patched",
                extra={"document": str(path), "role_arn": role_arn,
                       "region": self._context.region},
            )

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def teardown(self) -> RunSummary:
        """Remove the stack in reverse dependency order.

        Absent resources count as success. The identity provider is never
        deleted.
        """
        summary = self._new_summary("teardown")
        logger.info(
            "Tearing down stack",
            extra={"stack_name": self._context.stack_name, "region": self._context.region,
                   "account_id": self._context.account_id},
        )
        try:
            for name in TEARDOWN_STAGES:
                logger.info("Stage started", extra={"stage": name})
                await self._run_teardown_stage(name, summary)
        except ProvisionerError as e:
            logger.error(
                "Teardown aborted",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            summary.fail(e)
        finally:
            summary.finish()
        return summary

    async def _run_teardown_stage(self, name: str, summary: RunSummary) -> None:
        reconciler = self.reconciler

        if name == "pipeline-patch":
            logger.info("Pipeline documents are left as they are")

        elif name == "access-binding":
            await self._remove(self.access_binding_spec(self._context.role_arn), summary)

        elif name == "role":
            spec = self.role_spec()
            await self._blocking(reconciler.remove_dependents, spec)
            await self._remove(spec, summary)

        elif name == "identity-provider":
            outcome = await self._blocking(reconciler.retain, self.identity_provider_spec())
            summary.record(outcome)

        elif name == "kubeconfig":
            if self._kubeconfig_path is not None:
                await self._blocking(
                    remove_cluster_entry, self._kubeconfig_path, self._context.cluster_arn
                )

        elif name == "add-ons":
            for addon in self._stack.addons:
                await self._remove(self.addon_spec(addon), summary)

        elif name == "cluster":
            await self._remove(self.cluster_spec(), summary)

        elif name == "registry":
            await self._remove(self.registry_spec(), summary)

        elif name == "security-boundary":
            network_id = await self._network_id()
            if network_id is None:
                self._record_absent(summary, ResourceKind.SECURITY_BOUNDARY,
                                    self._context.security_group_name)
            else:
                await self._remove(self.security_group_spec(network_id), summary)

        elif name in ("private-subnet", "public-subnet"):
            tier = SubnetTier.PUBLIC if name == "public-subnet" else SubnetTier.PRIVATE
            network_id = await self._network_id()
            if network_id is None:
                subnet_name = (
                    self._context.public_subnet_name
                    if tier is SubnetTier.PUBLIC
                    else self._context.private_subnet_name
                )
                self._record_absent(summary, ResourceKind.SUBNET, subnet_name)
            else:
                await self._remove(self.subnet_spec(tier, network_id), summary)

        elif name == "network":
            spec = self.network_spec()
            await self._blocking(reconciler.remove_dependents, spec)
            await self._remove(spec, summary)

        else:
            raise SequencingError(f"Unknown stage: {name}")

    async def _remove(self, spec: ResourceSpec, summary: RunSummary) -> ReconcileOutcome:
        outcome = await self._blocking(self.reconciler.remove, spec)
        summary.record(outcome)
        return outcome

    async def _network_id(self) -> str | None:
        # Read-only lookup of the parent the subnets and security group live in
        spec = self.network_spec()
        descriptor = await self._blocking(self.reconciler.probe.probe, spec.kind, spec.filters)
        return descriptor.resource_id if descriptor else None

    def _record_absent(self, summary: RunSummary, kind: ResourceKind, key: str) -> None:
        logger.info(
            "Parent network absent, resource already gone",
            extra={"kind": kind.value, "key": key, "action": "none"},
        )
        summary.record(ReconcileOutcome(kind, key, ReconcileAction.ABSENT))
