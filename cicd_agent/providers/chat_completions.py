"""OpenAI 兼容 chat/completions 适配器。

OpenAI、Kimi(Moonshot)、GLM(BigModel) 都提供相同形态的接口：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

本模块负责：

1. 接收统一的 ChatRequest。
2. 转换为 chat/completions 请求（含 tools / tool_choice）。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 将响应 JSON 解析为统一的 ChatResult（含工具调用与 response id）。
"""

import json
from typing import Any, Dict, List, Optional

import httpx

from cicd_agent.config.settings import settings
from cicd_agent.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from cicd_agent.domain.models import ChatChoice, ChatMessage, ChatRequest, ChatResult, ChatUsage
from cicd_agent.providers.registry import ModelConfig, OPENAI_CONFIG, ProviderConfig
from cicd_agent.tools.definitions import ToolCall, ToolDef


class ChatCompletionsClient:
    """OpenAI 兼容 Provider 客户端实现。"""

    def __init__(
        self,
        cfg=settings,
        provider: ProviderConfig = OPENAI_CONFIG,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        # Settings 里包含 base_url、api_key、超时等配置
        self._settings = cfg
        self._provider = provider
        self._transport = transport
        self.name = provider.name

    def chat(self, req: ChatRequest) -> ChatResult:
        api_key = getattr(self._settings, self._provider.api_key_setting, None)
        if not api_key:
            raise ValidationError(
                code="MISSING_API_KEY",
                message=f"{self._provider.api_key_setting.upper()} not set",
            )
        model_cfg = self._model_config(req.model)
        payload = self._build_payload(req, model_cfg)
        base = getattr(self._settings, self._provider.base_url_setting, None) or self._provider.base_url
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False, transport=self._transport) as client:
                resp = client.post(
                    f"{base.rstrip('/')}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), service=self.name)
        if resp.status_code == 429:
            # 限流错误交给编排器的退避重试
            raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit", service=self.name)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code, service=self.name)
        return self._parse_response(resp.json(), req)

    # ---- 辅助方法 ----

    def _model_config(self, logical: str) -> ModelConfig:
        model_cfg = self._provider.models.get(logical)
        if model_cfg is None:
            raise ValidationError(
                code="UNKNOWN_MODEL",
                message=f"Model {logical!r} is not configured for provider {self.name}",
            )
        return model_cfg

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig) -> dict:
        payload = {
            "model": model_cfg.provider_model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "temperature": req.temperature if req.temperature is not None else model_cfg.default_temperature,
            "max_tokens": req.max_tokens or model_cfg.max_tokens,
            "top_p": req.top_p,
        }
        if req.tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in req.tools]
            payload["tool_choice"] = req.tool_choice
        return payload

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        choices: List[ChatChoice] = []
        for i, ch in enumerate(data.get("choices", [])):
            msg = ch.get("message") or {}
            choices.append(
                ChatChoice(index=i, message=self._build_chat_message(msg), finish_reason=ch.get("finish_reason"))
            )
        usage_raw = data.get("usage") or {}
        usage = ChatUsage(
            prompt_tokens=usage_raw.get("prompt_tokens", 0),
            completion_tokens=usage_raw.get("completion_tokens", 0),
            total_tokens=usage_raw.get("total_tokens", 0),
        )
        return ChatResult(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=usage,
            response_id=data.get("id"),
            raw=data,
        )

    def _build_chat_message(self, payload: Dict[str, Any]) -> ChatMessage:
        """解析 message，兼容 tool_calls 与旧版 function_call。"""

        role = payload.get("role") or "assistant"
        content = payload.get("content") or ""
        tool_calls: List[ToolCall] = []
        for call in payload.get("tool_calls") or []:
            func = call.get("function") or {}
            tool_calls.append(
                ToolCall(
                    # 缺失 id 保持为空串，由工具批次校验报出协议错误
                    id=call.get("id") or "",
                    name=func.get("name") or call.get("name") or "",
                    arguments=self._parse_arguments(func.get("arguments")),
                )
            )

        function_call = payload.get("function_call")
        if function_call:
            tool_calls.append(
                ToolCall(
                    id=function_call.get("id") or "function_call",
                    name=function_call.get("name") or "",
                    arguments=self._parse_arguments(function_call.get("arguments")),
                )
            )

        return ChatMessage(role=role, content=content, tool_calls=tool_calls or None)

    def _message_to_payload(self, message: ChatMessage) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": message.role, "content": message.content or None}
        if message.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments, ensure_ascii=False),
                    },
                }
                for call in message.tool_calls
            ]
        if message.tool_call_id:
            payload["tool_call_id"] = message.tool_call_id
        return payload

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters_schema(),
            },
        }

    @staticmethod
    def _parse_arguments(raw: Any) -> Any:
        """解析 arguments；非法 JSON 原样保留，交给执行器的参数校验报错。"""

        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str):
            if not raw.strip():
                return {}
            try:
                return json.loads(raw)
            except json.JSONDecodeError:
                return raw
        return {}
