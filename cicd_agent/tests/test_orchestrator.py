import json
import tempfile
from pathlib import Path

import pytest

from cicd_agent.agents.orchestrator import AgentConfig, ConversationOrchestrator, trim_history
from cicd_agent.domain.cancellation import CancelToken
from cicd_agent.domain.exceptions import (
    ConversationNotFoundError,
    RateLimitError,
    ToolLoopExceededError,
    ToolProtocolError,
    TurnCancelledError,
    UnknownToolError,
)
from cicd_agent.domain.models import ChatChoice, ChatMessage, ChatResult
from cicd_agent.infrastructure.retry import RetryPolicy
from cicd_agent.infrastructure.storage.json_store import InMemoryConversationStore, JsonConversationStore
from cicd_agent.integrations import ServiceBundle
from cicd_agent.integrations.eks import InMemoryControlPlane
from cicd_agent.integrations.github import InMemorySourceControl
from cicd_agent.integrations.kube import InMemoryClusterAccess
from cicd_agent.integrations.prometheus import StaticMetricsBackend
from cicd_agent.tools.catalog import build_default_registry
from cicd_agent.tools.definitions import ToolCall
from cicd_agent.tools.executor import ToolExecutor


class SettingsStub:
    retry_attempts = 2
    retry_backoff_initial = 0.0
    retry_backoff_factor = 2.0
    retry_backoff_max = 0.0
    eks_default_version = "1.30"
    eks_default_node_type = "t3.large"
    eks_default_capacity = 2
    cluster_wait_timeout = 2.0
    cluster_poll_interval = 0.01
    argo_namespace = "argocd"
    stability_min_samples = 5


class ScriptedProvider:
    """按脚本逐轮返回响应；每一步是 ChatMessage 或 callable(req) -> ChatMessage。"""

    name = "fake"

    def __init__(self, steps, response_ids=False):
        self.steps = list(steps)
        self.requests = []
        self.response_ids = response_ids

    def chat(self, req):
        self.requests.append(req)
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        msg = step(req) if callable(step) else step
        rid = f"resp-{len(self.requests)}" if self.response_ids else None
        return ChatResult(provider="fake", model=req.model, choices=[ChatChoice(index=0, message=msg)], response_id=rid)


def final(text):
    return ChatMessage(role="assistant", content=text)


def calls(*items):
    return ChatMessage(
        role="assistant",
        content="",
        tool_calls=[ToolCall(id=cid, name=name, arguments=args) for cid, name, args in items],
    )


def tool_payloads(req):
    return {m.tool_call_id: json.loads(m.content) for m in req.messages if m.role == "tool"}


def services():
    return ServiceBundle(
        source_control=InMemorySourceControl(),
        control_plane=InMemoryControlPlane(activate_after=1),
        cluster_access=InMemoryClusterAccess(reach_all=True),
        metrics=StaticMetricsBackend(),
    )


def make_orchestrator(provider, max_rounds=8, store=None, bundle=None, trace_dir=None, max_context=40):
    registry = build_default_registry(bundle or services(), SettingsStub())
    return ConversationOrchestrator(
        registry=registry,
        provider_client=provider,
        store=store or InMemoryConversationStore(),
        tool_executor=ToolExecutor(registry, max_workers=4, batch_timeout=30),
        config=AgentConfig(provider="fake", max_tool_rounds=max_rounds, max_context_messages=max_context, trace_dir=trace_dir),
        retry_policy=RetryPolicy(attempts=2, backoff_initial=0.0, backoff_max=0.0),
    )


WORKFLOW_CALL = ("generate_ci_workflow_template", {"languages": ["python"]})


def test_plain_answer_without_tools():
    provider = ScriptedProvider([final("Hello, how can I help?")])
    store = InMemoryConversationStore()
    outcome = make_orchestrator(provider, store=store).run_turn("hi")
    assert outcome.response_text == "Hello, how can I help?"
    assert outcome.rounds == 0
    assert outcome.continuation_token.startswith("ct-")
    req = provider.requests[0]
    assert req.messages[0].role == "system"
    assert req.messages[-1].content == "hi"
    assert len(req.tools) == 6
    state = store.load(outcome.continuation_token)
    assert [m.role for m in state.turns] == ["user", "assistant"]


def test_response_id_becomes_continuation_token():
    provider = ScriptedProvider([final("ok")], response_ids=True)
    outcome = make_orchestrator(provider).run_turn("hi")
    assert outcome.continuation_token == "resp-1"


def test_unsafe_response_id_falls_back_to_generated_token():
    class OddIdProvider(ScriptedProvider):
        def chat(self, req):
            result = super().chat(req)
            result.response_id = "chatcmpl:abc/../x"
            return result

    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=d)
        outcome = make_orchestrator(OddIdProvider([final("ok")]), store=store).run_turn("hi")
        assert outcome.continuation_token.startswith("ct-")
        assert store.load(outcome.continuation_token).turns[-1].content == "ok"


def test_loop_stops_after_exactly_max_rounds():
    rounds = 3
    provider = ScriptedProvider([calls((f"c{i}", *WORKFLOW_CALL)) for i in range(rounds + 1)])
    store = InMemoryConversationStore()
    orch = make_orchestrator(provider, max_rounds=rounds, store=store)
    with pytest.raises(ToolLoopExceededError) as ei:
        orch.run_turn("loop forever")
    assert ei.value.extra["max_rounds"] == rounds
    # N 批工具执行，N+1 次后端调用
    assert len(provider.requests) == rounds + 1
    assert len(tool_payloads(provider.requests[-1])) == rounds
    assert store._states == {}


def test_every_call_in_a_batch_gets_a_result():
    provider = ScriptedProvider([
        calls(
            ("a", *WORKFLOW_CALL),
            ("b", "commit_manifest", {"owner": "acme"}),
            ("c", "configure_github_webhook", {"owner": "acme", "repo": "shop", "webhook_url": "https://hooks.example.com/x"}),
        ),
        final("done"),
    ])
    outcome = make_orchestrator(provider).run_turn("do three things")
    assert outcome.rounds == 1
    assert [r.call_id for r in outcome.tool_results] == ["a", "b", "c"]
    payloads = tool_payloads(provider.requests[1])
    assert set(payloads) == {"a", "b", "c"}
    assert payloads["a"]["ok"] is True
    assert payloads["b"]["ok"] is False
    assert payloads["b"]["error"]["code"] == "INVALID_ARGUMENTS"
    assert payloads["c"]["result"]["created"] is True
    # 工具结果紧跟在对应的 assistant 工具调用之后
    roles = [m.role for m in provider.requests[1].messages]
    assert roles[-4:] == ["assistant", "tool", "tool", "tool"]


def test_validation_error_is_fed_back_and_corrected():
    def retry_with_fixed_args(req):
        [payload] = tool_payloads(req).values()
        assert payload["error"]["code"] == "INVALID_ARGUMENTS"
        return calls(("fix", "generate_ci_workflow_template", {"languages": ["go"], "coverage_threshold": 90}))

    provider = ScriptedProvider([
        calls(("bad", "generate_ci_workflow_template", {"languages": ["go"], "coverage_threshold": 150})),
        retry_with_fixed_args,
        final("template ready"),
    ])
    outcome = make_orchestrator(provider).run_turn("make a go pipeline")
    assert outcome.rounds == 2
    assert [r.ok for r in outcome.tool_results] == [False, True]


def test_end_to_end_deploy_reports_url_verbatim():
    bundle = services()

    def after_cluster(req):
        result = tool_payloads(req)["p1"]["result"]
        assert result["status"] == "ACTIVE"
        return calls(
            ("i1", "install_argo", {"cluster_name": result["cluster_name"], "components": ["cd", "events"]}),
            ("w1", "generate_ci_workflow_template", {"languages": ["python"]}),
        )

    def after_install(req):
        install = tool_payloads(req)["i1"]["result"]
        return calls(
            ("h1", "configure_github_webhook", {"owner": "acme", "repo": "shop", "webhook_url": install["urls"]["events"]}),
            ("m1", "commit_manifest", {
                "owner": "acme",
                "repo": "gitops",
                "branch": "main",
                "file_path": "apps/shop/app.yaml",
                "content": "kind: Application\n",
                "message": "Add shop",
            }),
        )

    def summarize(req):
        payloads = tool_payloads(req)
        argo_url = payloads["i1"]["result"]["urls"]["cd"]
        return final(f"Deployed. Argo CD: {argo_url}; commit {payloads['m1']['result']['commit_sha']}")

    provider = ScriptedProvider([
        calls(("p1", "provision_eks_cluster", {"cluster_name": "shop-prod"})),
        after_cluster,
        after_install,
        summarize,
    ])
    outcome = make_orchestrator(provider, bundle=bundle).run_turn("Deploy acme/shop to a new EKS cluster")
    assert outcome.rounds == 3
    assert "https://argocd-server.argocd.svc" in outcome.response_text
    assert bundle.control_plane.create_calls == ["shop-prod"]
    assert set(bundle.cluster_access.installed["shop-prod"]) == {"argocd", "argo-events"}
    assert bundle.source_control.read_file("acme", "gitops", "main", "apps/shop/app.yaml") == "kind: Application\n"
    hooks = bundle.source_control.list_hooks("acme", "shop")
    assert [h.url for h in hooks] == ["https://argo-events-webhook.argocd.svc"]


def test_continuation_resumes_history():
    store = InMemoryConversationStore()
    provider = ScriptedProvider([
        calls(("w", *WORKFLOW_CALL)),
        final("first answer"),
        final("second answer"),
    ])
    orch = make_orchestrator(provider, store=store)
    first = orch.run_turn("generate a template")
    second = orch.run_turn("thanks, and now?", continuation_token=first.continuation_token)
    assert second.session_id == first.session_id
    assert second.continuation_token != first.continuation_token
    contents = [m.content for m in provider.requests[-1].messages]
    assert "generate a template" in contents
    assert "first answer" in contents
    assert contents[-1] == "thanks, and now?"
    assert len(store.load(second.continuation_token).turns) == 6
    # 旧 token 仍指向旧快照
    assert len(store.load(first.continuation_token).turns) == 4


def test_unknown_continuation_token():
    orch = make_orchestrator(ScriptedProvider([]))
    with pytest.raises(ConversationNotFoundError):
        orch.run_turn("hi", continuation_token="ct-missing")


def test_unknown_tool_aborts_turn():
    store = InMemoryConversationStore()
    provider = ScriptedProvider([calls(("x", "delete_everything", {}))])
    with pytest.raises(UnknownToolError):
        make_orchestrator(provider, store=store).run_turn("hi")
    assert store._states == {}


def test_empty_backend_response_is_protocol_error():
    provider = ScriptedProvider([final("   ")])
    with pytest.raises(ToolProtocolError):
        make_orchestrator(provider).run_turn("hi")


def test_cancelled_turn_never_calls_backend():
    provider = ScriptedProvider([final("unused")])
    token = CancelToken()
    token.cancel("shutdown")
    with pytest.raises(TurnCancelledError):
        make_orchestrator(provider).run_turn("hi", cancel=token)
    assert provider.requests == []


def test_cancel_between_rounds():
    token = CancelToken()

    def cancel_after_tools(req):
        token.cancel("user stop")
        return calls(("w2", *WORKFLOW_CALL))

    provider = ScriptedProvider([calls(("w1", *WORKFLOW_CALL)), cancel_after_tools, final("unused")])
    with pytest.raises(TurnCancelledError):
        make_orchestrator(provider).run_turn("hi", cancel=token)
    assert len(provider.requests) == 2


def test_transient_backend_errors_are_retried():
    provider = ScriptedProvider([RateLimitError(code="RATE_LIMIT", message="busy"), final("ok")])
    outcome = make_orchestrator(provider).run_turn("hi")
    assert outcome.response_text == "ok"
    assert len(provider.requests) == 2


def test_trace_file_written():
    with tempfile.TemporaryDirectory() as d:
        provider = ScriptedProvider([calls(("w", *WORKFLOW_CALL)), final("done")])
        make_orchestrator(provider, trace_dir=d).run_turn("hi")
        [path] = list(Path(d).glob("tr-*.json"))
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["final_status"] == "success"
        assert [s["type"] for s in data["steps"]] == ["backend", "tool", "backend"]


def test_trim_history_cuts_at_user_boundary():
    turns = [
        ChatMessage(role="user", content="u1"),
        ChatMessage(role="assistant", content="", tool_calls=[ToolCall(id="t", name="x", arguments={})]),
        ChatMessage(role="tool", content="{}", tool_call_id="t"),
        ChatMessage(role="assistant", content="a1"),
        ChatMessage(role="user", content="u2"),
        ChatMessage(role="assistant", content="a2"),
    ]
    assert [m.content for m in trim_history(turns, 3)] == ["u2", "a2"]
    assert trim_history(turns, 10) == turns
    # 窗口内没有 user 消息时回退到最近的 user 消息
    assert [m.content for m in trim_history(turns[:4], 2)] == ["u1", "", "{}", "a1"]
