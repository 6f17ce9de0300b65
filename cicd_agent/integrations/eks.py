"""集群控制面（AWS EKS）协作方。

create_cluster 按名称幂等：集群已存在时返回现有集群的描述，
不会重复创建基础设施。
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from cicd_agent.config.settings import settings
from cicd_agent.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError

THROTTLING_CODES = {"ThrottlingException", "TooManyRequestsException", "RequestLimitExceeded"}


@dataclass
class ClusterSpec:
    name: str
    version: str
    node_type: str
    desired_capacity: int


@dataclass
class ClusterInfo:
    name: str
    status: str
    endpoint: Optional[str] = None
    oidc_issuer: Optional[str] = None
    version: Optional[str] = None
    nodegroups: Dict[str, str] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.status == "ACTIVE"


class ControlPlaneClient(Protocol):
    def describe_cluster(self, name: str) -> Optional[ClusterInfo]:
        ...

    def create_cluster(self, spec: ClusterSpec) -> ClusterInfo:
        ...

    def ensure_nodegroup(self, spec: ClusterSpec) -> str:
        """确保默认托管节点组存在，返回其状态。"""
        ...


def nodegroup_name(cluster_name: str) -> str:
    return f"{cluster_name}-default"


class EksControlPlane:
    """基于 boto3 的 EKS 控制面客户端。"""

    name = "eks"

    def __init__(self, cfg=settings, client: Any = None):
        self._settings = cfg
        self._client = client

    def _eks(self):
        if self._client is None:
            self._client = boto3.client(
                "eks",
                region_name=self._settings.aws_region,
                config=Config(
                    connect_timeout=self._settings.http_timeout,
                    read_timeout=self._settings.http_timeout,
                    retries={"max_attempts": 1, "mode": "standard"},
                ),
            )
        return self._client

    def describe_cluster(self, name: str) -> Optional[ClusterInfo]:
        try:
            data = self._call(lambda: self._eks().describe_cluster(name=name))
        except ApiError as exc:
            if exc.extra.get("aws_code") == "ResourceNotFoundException":
                return None
            raise
        return self._parse_cluster(data["cluster"])

    def create_cluster(self, spec: ClusterSpec) -> ClusterInfo:
        if not self._settings.eks_role_arn or not self._settings.eks_subnet_ids:
            raise ValidationError(
                code="MISSING_CONFIGURATION",
                message="EKS_ROLE_ARN and EKS_SUBNET_IDS must be configured to create clusters",
            )
        try:
            data = self._call(lambda: self._eks().create_cluster(
                name=spec.name,
                version=spec.version,
                roleArn=self._settings.eks_role_arn,
                resourcesVpcConfig={"subnetIds": list(self._settings.eks_subnet_ids)},
            ))
        except ApiError as exc:
            if exc.extra.get("aws_code") == "ResourceInUseException":
                existing = self.describe_cluster(spec.name)
                if existing is not None:
                    return existing
            raise
        return self._parse_cluster(data["cluster"])

    def ensure_nodegroup(self, spec: ClusterSpec) -> str:
        ng_name = nodegroup_name(spec.name)
        try:
            data = self._call(lambda: self._eks().describe_nodegroup(clusterName=spec.name, nodegroupName=ng_name))
            return data["nodegroup"]["status"]
        except ApiError as exc:
            if exc.extra.get("aws_code") != "ResourceNotFoundException":
                raise
        if not self._settings.eks_node_role_arn:
            raise ValidationError(code="MISSING_CONFIGURATION", message="EKS_NODE_ROLE_ARN must be configured")
        try:
            data = self._call(lambda: self._eks().create_nodegroup(
                clusterName=spec.name,
                nodegroupName=ng_name,
                scalingConfig={
                    "minSize": 1,
                    "maxSize": max(spec.desired_capacity, 1) * 2,
                    "desiredSize": spec.desired_capacity,
                },
                subnets=list(self._settings.eks_subnet_ids),
                instanceTypes=[spec.node_type],
                nodeRole=self._settings.eks_node_role_arn,
            ))
        except ApiError as exc:
            if exc.extra.get("aws_code") == "ResourceInUseException":
                return "CREATING"
            raise
        return data["nodegroup"]["status"]

    @staticmethod
    def _parse_cluster(cluster: Dict[str, Any]) -> ClusterInfo:
        identity = (cluster.get("identity") or {}).get("oidc") or {}
        return ClusterInfo(
            name=cluster["name"],
            status=cluster.get("status", "UNKNOWN"),
            endpoint=cluster.get("endpoint"),
            oidc_issuer=identity.get("issuer"),
            version=cluster.get("version"),
        )

    def _call(self, fn: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        try:
            return fn()
        except ClientError as e:
            err = e.response.get("Error", {})
            code = err.get("Code", "")
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 500)
            if code in THROTTLING_CODES:
                raise RateLimitError(code="RATE_LIMIT", message="EKS rate limit", service=self.name)
            raise ApiError(
                code="API_ERROR",
                message=err.get("Message") or str(e),
                http_status=status,
                service=self.name,
                aws_code=code,
            )
        except BotoCoreError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), service=self.name)


class InMemoryControlPlane:
    """进程内控制面替身。

    新建集群先处于 CREATING，经过 activate_after 次 describe 后变为 ACTIVE。
    """

    name = "memory-eks"

    def __init__(self, activate_after: int = 1, domain: str = "eks.local"):
        self._lock = threading.Lock()
        self._clusters: Dict[str, ClusterInfo] = {}
        self._pending: Dict[str, int] = {}
        self._activate_after = activate_after
        self._domain = domain
        self.create_calls: List[str] = []

    def describe_cluster(self, name: str) -> Optional[ClusterInfo]:
        with self._lock:
            info = self._clusters.get(name)
            if info is None:
                return None
            if not info.active:
                self._pending[name] -= 1
                if self._pending[name] <= 0:
                    info.status = "ACTIVE"
                    info.endpoint = f"https://{name}.{self._domain}"
                    info.oidc_issuer = f"https://oidc.{self._domain}/id/{name}"
            return ClusterInfo(**{**info.__dict__, "nodegroups": dict(info.nodegroups)})

    def create_cluster(self, spec: ClusterSpec) -> ClusterInfo:
        with self._lock:
            existing = self._clusters.get(spec.name)
            if existing is None:
                self.create_calls.append(spec.name)
                existing = ClusterInfo(name=spec.name, status="CREATING", version=spec.version)
                self._clusters[spec.name] = existing
                self._pending[spec.name] = self._activate_after
            return ClusterInfo(**{**existing.__dict__, "nodegroups": dict(existing.nodegroups)})

    def ensure_nodegroup(self, spec: ClusterSpec) -> str:
        with self._lock:
            info = self._clusters[spec.name]
            info.nodegroups.setdefault(nodegroup_name(spec.name), "ACTIVE")
            return info.nodegroups[nodegroup_name(spec.name)]
