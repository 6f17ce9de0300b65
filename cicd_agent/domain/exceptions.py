"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在编排层统一区分两类失败：

- 会话内失败：参数校验、数据不足、外部服务失败、并发修改等，
  由 ToolExecutor 转成结构化工具结果交还给推理后端。
- 回合级失败：未知工具、工具轮数超限、批次不完整、取消等，
  直接中止本轮对话并抛给调用方。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "UNKNOWN_TOOL"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、tool、errors 等）。
    """

    retryable = False

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> dict:
        """转成可直接序列化给推理后端的错误载荷。"""

        payload = {"code": self.code, "message": self.message}
        payload.update(self.extra)
        return payload


class ValidationError(BusinessError):
    """参数或配置校验失败，永不重试。"""


# ---- 工具注册表 ----


class ToolRegistryError(BusinessError):
    """工具注册/解析阶段的编程或配置错误。"""


class UnknownToolError(ToolRegistryError):
    """请求了未注册的工具名。"""

    def __init__(self, name: str):
        super().__init__(code="UNKNOWN_TOOL", message=f"Tool {name!r} is not registered", tool=name)


class DuplicateToolError(ToolRegistryError):
    """重复注册同名工具。"""

    def __init__(self, name: str):
        super().__init__(code="DUPLICATE_TOOL", message=f"Tool {name!r} is already registered", tool=name)


class RegistryFrozenError(ToolRegistryError):
    """注册表冻结后仍尝试修改。"""

    def __init__(self, name: str):
        super().__init__(code="REGISTRY_FROZEN", message=f"Registry is frozen, cannot register {name!r}", tool=name)


# ---- 外部服务 ----


class ExternalServiceError(BusinessError):
    """外部系统（云控制面、代码托管、指标后端、LLM）调用失败。

    retryable 为 True 时可在执行器层按退避策略有限重试。
    """

    retryable = True

    def __init__(self, code: str, message: str, http_status: int = 502, **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)


class NetworkError(ExternalServiceError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(ExternalServiceError):
    """第三方 API 返回非 2xx/429 错误时抛出；仅 5xx 可重试。"""

    def __init__(self, code: str, message: str, http_status: int = 502, **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)
        self.retryable = http_status >= 500


class RateLimitError(ExternalServiceError):
    """限流错误，由上层负责重试/退避策略。"""


class ClusterUnreachableError(ExternalServiceError):
    """目标集群 API Server 不可达。"""

    def __init__(self, cluster: str, message: str):
        super().__init__(code="CLUSTER_UNREACHABLE", message=message, http_status=503, cluster=cluster)


class InstallationFailedError(BusinessError):
    """集群可达，但 Helm 安装失败。"""

    def __init__(self, cluster: str, release: str, message: str):
        super().__init__(
            code="INSTALLATION_FAILED",
            message=message,
            http_status=500,
            cluster=cluster,
            release=release,
        )


# ---- 执行器语义错误 ----


class ConcurrentModificationError(BusinessError):
    """分支 head 在读取与更新之间被移动（CAS 失败）。

    不在内部重试：调用方必须重新读取最新状态后再决定是否提交。
    """

    def __init__(self, ref: str, expected_sha: str, actual_sha: str = ""):
        super().__init__(
            code="CONCURRENT_MODIFICATION",
            message=f"Reference {ref} moved from {expected_sha} during update",
            http_status=409,
            ref=ref,
            expected_sha=expected_sha,
            actual_sha=actual_sha,
        )


class InsufficientDataError(BusinessError):
    """指标样本不足，无法计算稳定性评分。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="INSUFFICIENT_DATA", message=message, http_status=422, **extra)


# ---- 回合级错误 ----


class ToolLoopExceededError(BusinessError):
    """推理后端在达到轮数上限后仍请求工具。"""

    def __init__(self, max_rounds: int):
        super().__init__(
            code="TOOL_LOOP_EXCEEDED",
            message=f"Backend kept requesting tools after {max_rounds} rounds",
            http_status=508,
            max_rounds=max_rounds,
        )


class ToolProtocolError(BusinessError):
    """后端响应或工具批次违反协议（空响应、重复 id、结果缺失）。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="TOOL_PROTOCOL_ERROR", message=message, http_status=502, **extra)


class TurnCancelledError(BusinessError):
    """会话被外部取消。"""

    def __init__(self, message: str = "Turn cancelled", **extra):
        super().__init__(code="TURN_CANCELLED", message=message, http_status=499, **extra)


class ConversationNotFoundError(BusinessError):
    """continuation token 无法解析为已存储的会话状态。"""

    def __init__(self, token: str):
        super().__init__(
            code="UNKNOWN_CONTINUATION",
            message=f"Continuation token {token!r} not found",
            http_status=404,
            continuation_token=token,
        )
