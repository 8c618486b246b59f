"""Cloud control plane adapter backed by boto3 (IAM, EC2, EKS, STS)."""
from __future__ import annotations

import json
import urllib.error
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..reconcile.models import AttributeValue, ResourceKind
from .base import CloudProviderError

NOT_FOUND_CODES = frozenset(
    {
        "NoSuchEntity",
        "NoSuchEntityException",
        "InvalidSubnetID.NotFound",
        "ResourceNotFoundException",
    }
)
DEFAULT_CLIENT_ID = "sts.amazonaws.com"
DOCUMENT_FETCH_TIMEOUT = 30


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _strip_scheme(url: str) -> str:
    for prefix in ("https://", "http://"):
        if url.startswith(prefix):
            return url[len(prefix) :]
    return url


def partition_for_region(region: str) -> str:
    """Return the ARN partition that hosts *region*."""
    if region.startswith("cn-"):
        return "aws-cn"
    if region.startswith("us-gov-"):
        return "aws-us-gov"
    return "aws"


def _tag_value(value: AttributeValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(slots=True, frozen=True)
class ClusterFacts:
    """Facts discovered from an EKS cluster."""

    cluster_name: str
    region: str
    account_id: str
    oidc_issuer: str
    vpc_id: str
    subnet_ids: tuple[str, ...] = ()
    partition: str = "aws"

    @property
    def issuer_host(self) -> str:
        """Return the issuer URL without its scheme."""
        return _strip_scheme(self.oidc_issuer)

    @property
    def oidc_provider_arn(self) -> str:
        """Return the IAM ARN of the cluster's OIDC identity provider."""
        return f"arn:{self.partition}:iam::{self.account_id}:oidc-provider/{self.issuer_host}"


@dataclass(slots=True)
class AwsCloudProvider:
    """Observe and mutate AWS resources needed by the cluster add-on."""

    region: str
    max_attempts: int = 3
    _clients: dict[str, Any] = field(default_factory=dict, repr=False)
    _account_id: str | None = field(default=None, repr=False)

    # Control plane contract -------------------------------------------
    def describe(self, kind: ResourceKind, key: str) -> Mapping[str, Any] | None:
        """Return attributes for *key*, or ``None`` when it does not exist."""
        if kind is ResourceKind.IDENTITY_PROVIDER:
            return self._describe_identity_provider(key)
        if kind is ResourceKind.POLICY:
            return self._describe_policy(key)
        if kind is ResourceKind.SUBNET_TAG:
            return self._describe_subnet(key)
        if kind is ResourceKind.SERVICE_ACCOUNT_BINDING:
            return self._describe_role(key.rsplit("/", 1)[-1])
        raise CloudProviderError(f"{kind.value} resources are not managed by the cloud.")

    def create(
        self,
        kind: ResourceKind,
        key: str,
        attributes: Mapping[str, AttributeValue],
    ) -> str:
        """Create the resource and return its identifier."""
        if kind is ResourceKind.IDENTITY_PROVIDER:
            return self._create_identity_provider(key, attributes)
        if kind is ResourceKind.POLICY:
            return self._create_policy(key, attributes)
        if kind is ResourceKind.SERVICE_ACCOUNT_BINDING:
            return self._ensure_role(key, attributes)
        raise CloudProviderError(f"{kind.value} '{key}' cannot be created.")

    def tag(self, resource_id: str, tags: Mapping[str, AttributeValue]) -> None:
        """Apply *tags* to an EC2 resource."""
        if not tags:
            return
        self._call(
            "ec2",
            "create_tags",
            Resources=[resource_id],
            Tags=[{"Key": key, "Value": _tag_value(value)} for key, value in sorted(tags.items())],
        )

    # Discovery --------------------------------------------------------
    def account_id(self) -> str:
        """Return the caller's account id (cached)."""
        if self._account_id is None:
            identity = self._call("sts", "get_caller_identity")
            self._account_id = str(identity["Account"])
        return self._account_id

    def discover_cluster(self, cluster_name: str) -> ClusterFacts:
        """Return OIDC issuer, VPC and subnets for *cluster_name*."""
        try:
            response = self._call("eks", "describe_cluster", name=cluster_name)
        except _NotFound as exc:
            raise CloudProviderError(f"EKS cluster '{cluster_name}' not found.") from exc
        cluster = response.get("cluster") or {}
        issuer = ((cluster.get("identity") or {}).get("oidc") or {}).get("issuer")
        if not issuer:
            raise CloudProviderError(f"EKS cluster '{cluster_name}' has no OIDC issuer.")
        vpc_config = cluster.get("resourcesVpcConfig") or {}
        arn = str(cluster.get("arn") or "")
        partition = arn.split(":")[1] if arn.count(":") >= 5 else "aws"
        return ClusterFacts(
            cluster_name=cluster_name,
            region=self.region,
            account_id=self.account_id(),
            oidc_issuer=str(issuer),
            vpc_id=str(vpc_config.get("vpcId") or ""),
            subnet_ids=tuple(str(item) for item in vpc_config.get("subnetIds") or ()),
            partition=partition,
        )

    def public_subnet_ids(self, vpc_id: str) -> list[str]:
        """Return subnets in *vpc_id* that map public IPs on launch."""
        response = self._call(
            "ec2",
            "describe_subnets",
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}],
        )
        return sorted(
            subnet["SubnetId"]
            for subnet in response.get("Subnets", [])
            if subnet.get("MapPublicIpOnLaunch")
        )

    # Identity providers -----------------------------------------------
    def _describe_identity_provider(self, key: str) -> Mapping[str, Any] | None:
        url = _strip_scheme(key)
        listing = self._call("iam", "list_open_id_connect_providers")
        for entry in listing.get("OpenIDConnectProviderList", []):
            arn = str(entry.get("Arn", ""))
            if not arn.endswith(f"oidc-provider/{url}"):
                continue
            details = self._call("iam", "get_open_id_connect_provider", OpenIDConnectProviderArn=arn)
            return {
                "id": arn,
                "arn": arn,
                "url": url,
                "client_ids": ",".join(details.get("ClientIDList", [])),
            }
        return None

    def _create_identity_provider(self, key: str, attributes: Mapping[str, AttributeValue]) -> str:
        url = _strip_scheme(str(attributes.get("url") or key))
        params: dict[str, Any] = {
            "Url": f"https://{url}",
            "ClientIDList": [str(attributes.get("client_id") or DEFAULT_CLIENT_ID)],
        }
        thumbprint = attributes.get("thumbprint")
        if thumbprint:
            params["ThumbprintList"] = [str(thumbprint)]
        response = self._call("iam", "create_open_id_connect_provider", **params)
        return str(response["OpenIDConnectProviderArn"])

    # Policies ---------------------------------------------------------
    def _policy_arn(self, name: str) -> str:
        return f"arn:{partition_for_region(self.region)}:iam::{self.account_id()}:policy/{name}"

    def _describe_policy(self, name: str) -> Mapping[str, Any] | None:
        arn = self._policy_arn(name)
        try:
            response = self._call("iam", "get_policy", PolicyArn=arn)
        except _NotFound:
            return None
        policy = response.get("Policy") or {}
        return {
            "id": arn,
            "arn": str(policy.get("Arn") or arn),
            "name": str(policy.get("PolicyName") or name),
            "default_version": str(policy.get("DefaultVersionId") or ""),
        }

    def _create_policy(self, name: str, attributes: Mapping[str, AttributeValue]) -> str:
        document = attributes.get("document")
        if not document:
            url = attributes.get("document_url")
            if not url:
                raise CloudProviderError(f"Policy '{name}' needs a document or document_url.")
            document = fetch_document(str(url))
        response = self._call(
            "iam",
            "create_policy",
            PolicyName=name,
            PolicyDocument=str(document),
        )
        return str(response["Policy"]["Arn"])

    # Roles ------------------------------------------------------------
    def _describe_role(self, role_name: str) -> Mapping[str, Any] | None:
        try:
            response = self._call("iam", "get_role", RoleName=role_name)
        except _NotFound:
            return None
        role = response.get("Role") or {}
        return {"id": role.get("Arn"), "arn": role.get("Arn"), "name": role_name}

    def _ensure_role(self, key: str, attributes: Mapping[str, AttributeValue]) -> str:
        namespace, _, rest = key.partition("/")
        if not rest:
            namespace, rest = "default", key
        name = rest.rsplit("/", 1)[-1]
        role_name = str(attributes.get("role_name") or name)
        existing = self._describe_role(role_name)
        if existing is not None:
            role_arn = str(existing["arn"])
        else:
            provider_arn = attributes.get("oidc_provider_arn")
            issuer = attributes.get("oidc_issuer")
            if not provider_arn or not issuer:
                raise CloudProviderError(
                    f"Role '{role_name}' needs oidc_provider_arn and oidc_issuer to be created."
                )
            trust = trust_policy(str(provider_arn), str(issuer), namespace, name)
            response = self._call(
                "iam",
                "create_role",
                RoleName=role_name,
                AssumeRolePolicyDocument=json.dumps(trust),
                Description=f"IRSA role for {namespace}/{name}",
            )
            role_arn = str(response["Role"]["Arn"])
        policy_arn = attributes.get("policy_arn")
        if policy_arn:
            self._call("iam", "attach_role_policy", RoleName=role_name, PolicyArn=str(policy_arn))
        return role_arn

    # ------------------------------------------------------------------
    def _client(self, service: str) -> Any:
        client = self._clients.get(service)
        if client is None:
            config = Config(
                region_name=self.region,
                retries={"max_attempts": self.max_attempts, "mode": "adaptive"},
            )
            client = boto3.client(service, config=config)
            self._clients[service] = client
        return client

    def _call(self, service: str, operation: str, **kwargs: Any) -> dict[str, Any]:
        method = getattr(self._client(service), operation)
        try:
            return method(**kwargs)
        except ClientError as exc:
            code = _error_code(exc)
            if code in NOT_FOUND_CODES:
                raise _NotFound(code) from exc
            raise CloudProviderError(f"AWS {service}:{operation} failed: {code} - {exc}") from exc
        except BotoCoreError as exc:
            raise CloudProviderError(f"AWS {service}:{operation} failed: {exc}") from exc

    def _describe_subnet(self, subnet_id: str) -> Mapping[str, Any] | None:
        try:
            response = self._call("ec2", "describe_subnets", SubnetIds=[subnet_id])
        except _NotFound:
            return None
        subnets = response.get("Subnets", [])
        if not subnets:
            return None
        subnet = subnets[0]
        attributes: dict[str, Any] = {
            tag["Key"]: tag.get("Value", "") for tag in subnet.get("Tags", []) or []
        }
        attributes["id"] = subnet["SubnetId"]
        return attributes


class _NotFound(CloudProviderError):
    """A not-found response; callers translate it into absence."""


def trust_policy(provider_arn: str, issuer: str, namespace: str, name: str) -> dict[str, Any]:
    """Return an IRSA trust policy for ``namespace/name``."""
    host = _strip_scheme(issuer)
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Federated": provider_arn},
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Condition": {
                    "StringEquals": {
                        f"{host}:sub": f"system:serviceaccount:{namespace}:{name}",
                        f"{host}:aud": DEFAULT_CLIENT_ID,
                    }
                },
            }
        ],
    }


def fetch_document(url: str) -> str:
    """Download a policy document and check that it is JSON."""
    request = urllib.request.Request(url, headers={"Accept": "application/json"})
    try:
        with urllib.request.urlopen(request, timeout=DOCUMENT_FETCH_TIMEOUT) as resp:  # noqa: S310
            payload = resp.read().decode("utf-8")
    except urllib.error.URLError as exc:
        raise CloudProviderError(f"Unable to download policy document from {url}: {exc}") from exc
    try:
        json.loads(payload)
    except json.JSONDecodeError as exc:
        raise CloudProviderError(f"Policy document at {url} is not valid JSON: {exc}") from exc
    return payload


__all__ = [
    "AwsCloudProvider",
    "ClusterFacts",
    "fetch_document",
    "partition_for_region",
    "trust_policy",
]
