"""WebhookConfigurer：按 URL 幂等地配置仓库 webhook。"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from cicd_agent.domain.exceptions import ApiError
from cicd_agent.infrastructure.retry import RetryPolicy
from cicd_agent.integrations.github import Hook, SourceControlClient
from cicd_agent.tools.definitions import ToolParam
from .base import ActionExecutor, ExecutionContext

DEFAULT_EVENTS = ["pull_request", "push"]


@dataclass
class WebhookArgs:
    owner: str
    repo: str
    webhook_url: str
    events: List[str]


class WebhookConfigurer(ActionExecutor[WebhookArgs]):
    name = "configure_github_webhook"
    description = "为 GitHub 仓库配置 webhook；相同 URL 的 webhook 已存在时直接返回其 id"
    params = {
        "owner": ToolParam(
            name="owner",
            description="仓库所有者（用户或组织）",
            required=True,
            schema={"type": "string", "minLength": 1},
        ),
        "repo": ToolParam(
            name="repo",
            description="仓库名",
            required=True,
            schema={"type": "string", "minLength": 1},
        ),
        "webhook_url": ToolParam(
            name="webhook_url",
            description="接收事件的 URL，通常是 Argo Events 的地址",
            required=True,
            schema={"type": "string", "pattern": r"^https?://\S+$"},
        ),
        "events": ToolParam(
            name="events",
            description="订阅的事件列表",
            required=False,
            schema={"type": "array", "items": {"type": "string", "minLength": 1}, "minItems": 1},
        ),
    }

    def __init__(self, source_control: SourceControlClient, retry_policy: Optional[RetryPolicy] = None):
        super().__init__(retry_policy)
        self._scm = source_control
        self._locks_guard = threading.Lock()
        self._locks: Dict[Tuple[str, str, str], threading.Lock] = {}

    def _coerce(self, args: Dict[str, Any]) -> WebhookArgs:
        events = list(dict.fromkeys(args.get("events") or DEFAULT_EVENTS))
        return WebhookArgs(
            owner=args["owner"],
            repo=args["repo"],
            webhook_url=args["webhook_url"].strip(),
            events=events,
        )

    def execute(self, validated: WebhookArgs, ctx: ExecutionContext) -> Dict[str, Any]:
        return self._external("upsert_hook", lambda: self._upsert(validated), ctx)

    def _lock_for(self, args: WebhookArgs) -> threading.Lock:
        key = (args.owner.lower(), args.repo.lower(), args.webhook_url)
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def _upsert(self, args: WebhookArgs) -> Dict[str, Any]:
        # 同一 (owner, repo, url) 的 list 与 create 串行执行
        with self._lock_for(args):
            # 重试时重新 list，避免上一次创建成功但响应丢失导致重复创建
            existing = self._find(args)
            if existing is not None:
                return self._payload(existing, created=False)
            try:
                hook = self._scm.create_hook(args.owner, args.repo, args.webhook_url, args.events)
            except ApiError as exc:
                # GitHub 对重复的 config.url 返回 422 "Hook already exists"
                if exc.http_status != 422:
                    raise
                existing = self._find(args)
                if existing is None:
                    raise
                return self._payload(existing, created=False)
            return self._payload(hook, created=True)

    def _find(self, args: WebhookArgs) -> Optional[Hook]:
        for hook in self._scm.list_hooks(args.owner, args.repo):
            if hook.url.strip() == args.webhook_url:
                return hook
        return None

    @staticmethod
    def _payload(hook: Hook, created: bool) -> Dict[str, Any]:
        return {"id": hook.id, "created": created, "url": hook.url, "events": hook.events}
