"""动作执行器。

每个执行器对应一个可被推理后端调用的工具，负责参数校验与对外部系统的操作。
"""

from cicd_agent.executors.base import ActionExecutor, ExecutionContext
from cicd_agent.executors.cluster import ClusterProvisioner
from cicd_agent.executors.gitops import GitOpsInstaller
from cicd_agent.executors.manifest import ManifestCommitter
from cicd_agent.executors.stability import StabilityEvaluator
from cicd_agent.executors.webhook import WebhookConfigurer
from cicd_agent.executors.workflow import WorkflowTemplateGenerator

__all__ = [
    "ActionExecutor",
    "ExecutionContext",
    "ClusterProvisioner",
    "GitOpsInstaller",
    "ManifestCommitter",
    "StabilityEvaluator",
    "WebhookConfigurer",
    "WorkflowTemplateGenerator",
]
