"""外部协作方集成层。

该包下的模块负责：
- 定义执行器依赖的协作方协议（代码托管、控制面、集群访问、指标后端）。
- 提供真实实现（GitHub、EKS、kubectl/helm、Prometheus）与进程内替身。

create_services 根据 executor_mode 选择实现，执行器本身不感知差异。
"""

from dataclasses import dataclass
from typing import Optional

from cicd_agent.config.settings import settings
from cicd_agent.integrations.eks import ControlPlaneClient, EksControlPlane, InMemoryControlPlane
from cicd_agent.integrations.github import GitHubClient, InMemorySourceControl, SourceControlClient
from cicd_agent.integrations.kube import ClusterAccess, HelmClusterAccess, InMemoryClusterAccess
from cicd_agent.integrations.prometheus import MetricsBackend, PrometheusMetricsBackend, StaticMetricsBackend


@dataclass
class ServiceBundle:
    source_control: SourceControlClient
    control_plane: ControlPlaneClient
    cluster_access: ClusterAccess
    metrics: MetricsBackend


def create_services(mode: Optional[str] = None, cfg=None) -> ServiceBundle:
    """根据模式创建协作方集合，默认取配置中的 executor_mode。"""

    cfg = cfg or settings
    selected = (mode or getattr(cfg, "executor_mode", "mock")).lower()
    if selected == "live":
        return ServiceBundle(
            source_control=GitHubClient(cfg),
            control_plane=EksControlPlane(cfg),
            cluster_access=HelmClusterAccess(cfg),
            metrics=PrometheusMetricsBackend(cfg),
        )
    return ServiceBundle(
        source_control=InMemorySourceControl(),
        control_plane=InMemoryControlPlane(),
        cluster_access=InMemoryClusterAccess(reach_all=True),
        metrics=StaticMetricsBackend(),
    )
