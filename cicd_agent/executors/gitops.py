"""GitOpsInstaller：在目标集群上安装 Argo 组件。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from cicd_agent.infrastructure.logging.logger import logger
from cicd_agent.infrastructure.retry import RetryPolicy
from cicd_agent.integrations.kube import ClusterAccess, HelmRelease
from cicd_agent.tools.definitions import ToolParam
from .base import ActionExecutor, ExecutionContext

# 组件 -> (release 名, chart, 对外服务名)
ARGO_COMPONENTS: Dict[str, tuple] = {
    "cd": ("argocd", "argo/argo-cd", "argocd-server"),
    "workflows": ("argo-workflows", "argo/argo-workflows", "argo-workflows-server"),
    "events": ("argo-events", "argo/argo-events", "argo-events-webhook"),
}


@dataclass
class InstallArgs:
    cluster_name: str
    namespace: str
    components: List[str]
    argo_version: Optional[str] = None


class GitOpsInstaller(ActionExecutor[InstallArgs]):
    name = "install_argo"
    description = "在指定集群上安装 Argo CD / Workflows / Events，返回各组件的服务地址"
    params = {
        "cluster_name": ToolParam(
            name="cluster_name",
            description="目标集群名称，需先由 provision_eks_cluster 创建并处于 ACTIVE",
            required=True,
            schema={"type": "string", "minLength": 1},
        ),
        "argo_version": ToolParam(
            name="argo_version",
            description="Helm chart 版本，缺省安装最新版",
            required=False,
            schema={"type": "string", "minLength": 1},
        ),
        "components": ToolParam(
            name="components",
            description="需要安装的组件，取值 cd / workflows / events",
            required=False,
            schema={
                "type": "array",
                "items": {"type": "string", "enum": sorted(ARGO_COMPONENTS)},
                "minItems": 1,
                "uniqueItems": True,
            },
        ),
        "namespace": ToolParam(
            name="namespace",
            description="安装命名空间",
            required=False,
            schema={"type": "string", "pattern": r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$", "maxLength": 63},
        ),
    }

    def __init__(self, cluster_access: ClusterAccess, cfg, retry_policy: Optional[RetryPolicy] = None):
        super().__init__(retry_policy)
        self._cluster_access = cluster_access
        self._settings = cfg

    def _coerce(self, args: Dict[str, Any]) -> InstallArgs:
        requested = args.get("components") or ["cd"]
        # 保持固定安装顺序，与调用方给出的顺序无关
        components = [c for c in ARGO_COMPONENTS if c in requested]
        return InstallArgs(
            cluster_name=args["cluster_name"],
            namespace=args.get("namespace") or self._settings.argo_namespace,
            components=components,
            argo_version=args.get("argo_version"),
        )

    def execute(self, validated: InstallArgs, ctx: ExecutionContext) -> Dict[str, Any]:
        cluster = validated.cluster_name
        self._external("probe", lambda: self._cluster_access.probe(cluster), ctx)
        # 取消只在第一次安装前检查；一旦开始安装，所有组件都会装完
        ctx.cancel.raise_if_cancelled(self.name)

        releases: List[Dict[str, Any]] = []
        urls: Dict[str, str] = {}
        for component in validated.components:
            release_name, chart, service = ARGO_COMPONENTS[component]
            release = HelmRelease(
                name=release_name,
                chart=chart,
                namespace=validated.namespace,
                version=validated.argo_version,
            )
            # helm upgrade --install 本身幂等，但不走重试：失败通常需要人工介入
            outcome = self._cluster_access.install_chart(cluster, release)
            releases.append({"component": component, "chart": chart, **outcome})
            urls[component] = f"https://{service}.{validated.namespace}.svc"
            logger.info(
                "Argo component installed",
                extra={"extra": {"cluster": cluster, "component": component, "call_id": ctx.call_id}},
            )

        return {
            "cluster_name": cluster,
            "namespace": validated.namespace,
            "releases": releases,
            "urls": urls,
        }
