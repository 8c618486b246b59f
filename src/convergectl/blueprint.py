"""Resource set for the AWS Load Balancer Controller add-on.

The controller needs an OIDC identity provider for the cluster, an IAM policy,
an IRSA service account bound to a role carrying that policy, correctly tagged
subnets and finally the Helm release itself.
"""
from __future__ import annotations

from collections.abc import Iterable

from .config import RunConfiguration
from .providers.aws import DEFAULT_CLIENT_ID, ClusterFacts
from .reconcile.models import ANY_VALUE, AttributeValue, FailurePolicy, ResourceKind, ResourceSpec

CLUSTER_TAG_TEMPLATE = "kubernetes.io/cluster/{cluster}"
CLUSTER_TAG_VALUE = "shared"
ELB_ROLE_TAG = "kubernetes.io/role/elb"


def subnet_tags(cluster_name: str) -> dict[str, AttributeValue]:
    """Return the tags the controller needs on an internet-facing subnet."""
    return {
        CLUSTER_TAG_TEMPLATE.format(cluster=cluster_name): CLUSTER_TAG_VALUE,
        ELB_ROLE_TAG: "1",
    }


def release_values(config: RunConfiguration, facts: ClusterFacts) -> dict[str, AttributeValue]:
    """Return the chart values as ``values.<path>`` attributes."""
    values: dict[str, AttributeValue] = {
        "values.clusterName": facts.cluster_name,
        "values.region": facts.region,
        "values.serviceAccount.create": False,
        "values.serviceAccount.name": config.service_account,
    }
    vpc_id = config.vpc_id or facts.vpc_id
    if vpc_id:
        values["values.vpcId"] = vpc_id
    for key, value in sorted(config.extra_args.items()):
        values[f"values.extraArgs.{key}"] = value
    return values


def build_controller_specs(
    config: RunConfiguration,
    facts: ClusterFacts,
    public_subnets: Iterable[str] = (),
) -> list[ResourceSpec]:
    """Return every spec needed to install the controller on *facts*' cluster."""
    namespace = config.namespace
    partition = facts.partition
    policy_arn = f"arn:{partition}:iam::{facts.account_id}:policy/{config.policy_name}"
    role_arn = f"arn:{partition}:iam::{facts.account_id}:role/{config.role_name}"

    identity = ResourceSpec(
        kind=ResourceKind.IDENTITY_PROVIDER,
        key=facts.issuer_host,
        attributes={"url": facts.issuer_host, "client_id": DEFAULT_CLIENT_ID},
    )
    policy = ResourceSpec(
        kind=ResourceKind.POLICY,
        key=config.policy_name,
        attributes={"document_url": config.policy_document_url},
    )
    binding = ResourceSpec(
        kind=ResourceKind.SERVICE_ACCOUNT_BINDING,
        key=f"{namespace}/serviceaccount/{config.service_account}",
        attributes={
            "role_arn": role_arn,
            "role_name": config.role_name,
            "policy_arn": policy_arn,
            "oidc_provider_arn": facts.oidc_provider_arn,
            "oidc_issuer": facts.oidc_issuer,
        },
        depends_on=frozenset({identity.key, policy.key}),
    )
    release = ResourceSpec(
        kind=ResourceKind.HELM_RELEASE,
        key=f"{namespace}/{config.chart.name}",
        attributes={
            "chart": config.chart.name,
            "repo_name": config.chart.repo_name,
            "repo_url": config.chart.repo_url,
            "chart_version": config.chart.version,
            **release_values(config, facts),
        },
        depends_on=frozenset({binding.key}),
        owned=True,
        failure_policy=FailurePolicy.FATAL,
    )

    specs = [identity, policy, binding, release]
    specs.extend(_subnet_specs(config, facts, public_subnets))
    return specs


def _subnet_specs(
    config: RunConfiguration,
    facts: ClusterFacts,
    public_subnets: Iterable[str],
) -> list[ResourceSpec]:
    tags = subnet_tags(facts.cluster_name)
    to_tag: list[str] = []
    if config.subnets.auto_tag_public:
        to_tag.extend(public_subnets)
    to_tag.extend(config.subnets.explicit_ids)

    specs: list[ResourceSpec] = []
    seen: set[str] = set()
    for subnet_id in to_tag:
        if subnet_id in seen:
            continue
        seen.add(subnet_id)
        specs.append(
            ResourceSpec(
                kind=ResourceKind.SUBNET_TAG,
                key=subnet_id,
                attributes=tags,
                failure_policy=FailurePolicy.BEST_EFFORT,
            )
        )

    if config.subnets.check:
        cluster_tag = CLUSTER_TAG_TEMPLATE.format(cluster=facts.cluster_name)
        for subnet_id in facts.subnet_ids:
            if subnet_id in seen:
                continue
            seen.add(subnet_id)
            specs.append(
                ResourceSpec(
                    kind=ResourceKind.SUBNET_TAG,
                    key=subnet_id,
                    attributes={cluster_tag: ANY_VALUE},
                    failure_policy=FailurePolicy.BEST_EFFORT,
                    validate_only=True,
                )
            )
    return specs


__all__ = ["build_controller_specs", "release_values", "subnet_tags"]
