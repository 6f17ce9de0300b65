"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("AGENT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 推理后端 ----
    default_provider: str = Field(default="openai", description="默认使用的 Provider 名称：openai、kimi、glm")
    default_model: str = Field(default="cicd-agent", description="逻辑模型名，由 registry 映射为具体厂商模型")
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI API 基础URL")
    kimi_api_key: Optional[str] = Field(default=None, description="Kimi API 密钥")
    kimi_base_url: str = Field(default="https://api.moonshot.cn/v1", description="Kimi API 基础URL")
    glm_api_key: Optional[str] = Field(default=None, description="GLM API 密钥")
    glm_base_url: str = Field(default="https://open.bigmodel.cn/api/paas/v4", description="GLM API 基础URL")
    http_timeout: float = Field(default=30.0, ge=1.0, description="所有 HTTP 调用的超时时间（秒）")

    # ---- 编排器 ----
    storage_root: str = Field(default=".storage", description="会话状态存储根目录")
    session_store: Literal["memory", "json"] = Field(default="json", description="会话状态存储实现")
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    trace_dir: Optional[str] = Field(default=None, description="回合审计 trace 目录，为空则不记录")
    prompt_locale: str = Field(default="zh", description="系统提示词语言")
    max_context_messages: int = Field(default=40, ge=1, le=200, description="最大上下文消息数")
    max_tool_rounds: int = Field(default=8, ge=1, le=50, description="单轮对话内工具调用最大轮数")
    max_parallel_tools: int = Field(default=8, ge=1, le=32, description="同一批次内并发执行的工具数")
    tool_batch_timeout: float = Field(default=1800.0, ge=1.0, description="单个工具批次的最长等待时间（秒）")

    # ---- 外部协作方 ----
    executor_mode: Literal["mock", "live"] = Field(
        default="mock",
        description="mock 使用进程内替身，live 连接真实的 GitHub/EKS/集群/Prometheus",
    )
    retry_attempts: int = Field(default=3, ge=1, le=10, description="外部调用的最大尝试次数")
    retry_backoff_initial: float = Field(default=0.5, ge=0.0)
    retry_backoff_factor: float = Field(default=2.0, ge=1.0)
    retry_backoff_max: float = Field(default=8.0, ge=0.0)

    github_token: Optional[str] = Field(default=None, description="GitHub App / PAT token")
    github_api_url: str = Field(default="https://api.github.com")

    aws_region: str = Field(default="us-east-1")
    eks_role_arn: Optional[str] = Field(default=None, description="EKS 集群服务角色")
    eks_node_role_arn: Optional[str] = Field(default=None, description="托管节点组角色")
    eks_subnet_ids: List[str] = Field(default_factory=list)
    eks_default_version: str = Field(default="1.30")
    eks_default_node_type: str = Field(default="t3.large")
    eks_default_capacity: int = Field(default=2, ge=1)
    cluster_poll_interval: float = Field(default=15.0, gt=0.0, description="集群状态轮询间隔（秒）")
    cluster_wait_timeout: float = Field(default=900.0, ge=0.0, description="等待集群 ACTIVE 的最长时间（秒）")

    kubectl_binary: str = Field(default="kubectl")
    helm_binary: str = Field(default="helm")
    kube_context_template: str = Field(default="{cluster_name}", description="由集群名推导 kube context")
    helm_timeout: float = Field(default=600.0, ge=1.0)
    argo_namespace: str = Field(default="argocd")

    prometheus_url: str = Field(default="http://localhost:9090")
    metrics_step_seconds: int = Field(default=60, ge=1)
    stability_min_samples: int = Field(default=5, ge=2)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key", "kimi_api_key", "glm_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
