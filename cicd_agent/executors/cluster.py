"""ClusterProvisioner：按名称幂等地创建/查询 EKS 集群。

创建是长耗时操作，执行器只在 wait_seconds 内轮询；超时或取消时
返回当前状态（endpoint 为空），后端可以稍后用相同名称再次调用。
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from cicd_agent.domain.exceptions import ApiError
from cicd_agent.infrastructure.logging.logger import logger
from cicd_agent.infrastructure.retry import RetryPolicy
from cicd_agent.integrations.eks import ClusterInfo, ClusterSpec, ControlPlaneClient
from cicd_agent.tools.definitions import ToolParam
from .base import ActionExecutor, ExecutionContext

CLUSTER_NAME_PATTERN = r"^[0-9A-Za-z][A-Za-z0-9\-_]{0,99}$"


@dataclass
class ProvisionArgs:
    spec: ClusterSpec
    wait_seconds: float


class ClusterProvisioner(ActionExecutor[ProvisionArgs]):
    name = "provision_eks_cluster"
    description = "创建（或查询已存在的）EKS 集群，返回 API endpoint 与 OIDC issuer URL"
    params = {
        "cluster_name": ToolParam(
            name="cluster_name",
            description="EKS 集群名称，重复调用相同名称不会重复创建",
            required=True,
            schema={"type": "string", "pattern": CLUSTER_NAME_PATTERN},
        ),
        "node_type": ToolParam(
            name="node_type",
            description="工作节点 EC2 实例类型，如 t3.large",
            required=False,
            schema={"type": "string", "minLength": 1},
        ),
        "desired_capacity": ToolParam(
            name="desired_capacity",
            description="工作节点数量",
            required=False,
            schema={"type": "integer", "minimum": 1, "maximum": 100},
        ),
        "version": ToolParam(
            name="version",
            description="Kubernetes 版本，如 1.30",
            required=False,
            schema={"type": "string", "pattern": r"^1\.\d{1,2}$"},
        ),
        "wait_seconds": ToolParam(
            name="wait_seconds",
            description="本次调用最多等待集群就绪的秒数，0 表示只提交不等待",
            required=False,
            schema={"type": "number", "minimum": 0, "maximum": 3600},
        ),
    }

    def __init__(
        self,
        control_plane: ControlPlaneClient,
        cfg,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(retry_policy)
        self._control_plane = control_plane
        self._settings = cfg
        self._clock = clock

    def _coerce(self, args: Dict[str, Any]) -> ProvisionArgs:
        spec = ClusterSpec(
            name=args["cluster_name"],
            version=args.get("version") or self._settings.eks_default_version,
            node_type=args.get("node_type") or self._settings.eks_default_node_type,
            desired_capacity=int(args.get("desired_capacity") or self._settings.eks_default_capacity),
        )
        wait = args.get("wait_seconds")
        return ProvisionArgs(
            spec=spec,
            wait_seconds=float(self._settings.cluster_wait_timeout if wait is None else wait),
        )

    def execute(self, validated: ProvisionArgs, ctx: ExecutionContext) -> Dict[str, Any]:
        spec = validated.spec
        info = self._external("describe_cluster", lambda: self._control_plane.describe_cluster(spec.name), ctx)
        created = False
        if info is None:
            info = self._external("create_cluster", lambda: self._control_plane.create_cluster(spec), ctx)
            created = True
            logger.info(
                "Cluster creation submitted",
                extra={"extra": {"cluster": spec.name, "version": spec.version, "call_id": ctx.call_id}},
            )

        info = self._wait_until_settled(info, validated.wait_seconds, ctx)
        if info.status == "FAILED":
            raise ApiError(
                code="CLUSTER_FAILED",
                message=f"Cluster {spec.name} is in FAILED state",
                http_status=409,
                cluster=spec.name,
            )

        nodegroup_status = None
        if info.active:
            nodegroup_status = self._external("ensure_nodegroup", lambda: self._control_plane.ensure_nodegroup(spec), ctx)

        return {
            "cluster_name": info.name,
            "status": info.status,
            "endpoint": info.endpoint if info.active else None,
            "oidc_issuer": info.oidc_issuer if info.active else None,
            "version": info.version or spec.version,
            "nodegroup_status": nodegroup_status,
            "created": created,
        }

    def _wait_until_settled(self, info: ClusterInfo, wait_seconds: float, ctx: ExecutionContext) -> ClusterInfo:
        deadline = self._clock() + wait_seconds
        interval = self._settings.cluster_poll_interval
        while not info.active and info.status != "FAILED":
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            # 取消时停止轮询，已提交的创建请求本身是幂等的
            if ctx.cancel.wait(min(interval, remaining)):
                break
            latest = self._external("describe_cluster", lambda: self._control_plane.describe_cluster(info.name), ctx)
            if latest is None:
                break
            info = latest
        return info
