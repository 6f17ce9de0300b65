"""默认工具目录：把六个执行器注册进注册表并冻结。"""

from typing import Optional

from cicd_agent.config.settings import settings
from cicd_agent.executors import (
    ClusterProvisioner,
    GitOpsInstaller,
    ManifestCommitter,
    StabilityEvaluator,
    WebhookConfigurer,
    WorkflowTemplateGenerator,
)
from cicd_agent.infrastructure.retry import RetryPolicy
from cicd_agent.integrations import ServiceBundle, create_services
from .registry import ToolRegistry


def build_default_registry(services: Optional[ServiceBundle] = None, cfg=None) -> ToolRegistry:
    cfg = cfg or settings
    services = services or create_services(cfg=cfg)
    policy = RetryPolicy.from_settings(cfg)

    registry = ToolRegistry()
    for executor in (
        ClusterProvisioner(services.control_plane, cfg, retry_policy=policy),
        GitOpsInstaller(services.cluster_access, cfg, retry_policy=policy),
        WebhookConfigurer(services.source_control, retry_policy=policy),
        WorkflowTemplateGenerator(retry_policy=policy),
        ManifestCommitter(services.source_control, retry_policy=policy),
        StabilityEvaluator(services.metrics, cfg, retry_policy=policy),
    ):
        registry.register(executor.descriptor())
    return registry.freeze()
