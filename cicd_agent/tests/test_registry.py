import threading

import pytest

from cicd_agent.domain.exceptions import DuplicateToolError, RegistryFrozenError, UnknownToolError
from cicd_agent.integrations import create_services
from cicd_agent.tools.catalog import build_default_registry
from cicd_agent.tools.definitions import ToolDef, ToolParam
from cicd_agent.tools.registry import ToolRegistry


def _tool(name):
    return ToolDef(
        name=name,
        description=f"{name} tool",
        params={"x": ToolParam(name="x", description="X", required=True, schema={"type": "string"})},
    )


def test_register_and_resolve():
    reg = ToolRegistry()
    reg.register(_tool("a"))
    reg.register(_tool("b"))
    assert reg.resolve("a").name == "a"
    assert [d.name for d in reg.list_descriptors()] == ["a", "b"]
    assert "b" in reg
    assert len(reg) == 2


def test_duplicate_name_rejected():
    reg = ToolRegistry()
    reg.register(_tool("a"))
    with pytest.raises(DuplicateToolError) as ei:
        reg.register(_tool("a"))
    assert ei.value.code == "DUPLICATE_TOOL"
    assert len(reg) == 1


def test_unknown_tool():
    reg = ToolRegistry().freeze()
    with pytest.raises(UnknownToolError) as ei:
        reg.resolve("nope")
    assert ei.value.code == "UNKNOWN_TOOL"
    assert ei.value.extra["tool"] == "nope"


def test_register_after_freeze_rejected():
    reg = ToolRegistry()
    reg.register(_tool("a"))
    reg.freeze()
    with pytest.raises(RegistryFrozenError):
        reg.register(_tool("b"))
    assert reg.names() == ("a",)


def test_list_descriptors_is_a_stable_snapshot():
    reg = ToolRegistry()
    reg.register(_tool("a"))
    snapshot = reg.list_descriptors()
    reg.register(_tool("b"))
    assert [d.name for d in snapshot] == ["a"]
    assert [d.name for d in reg.list_descriptors()] == ["a", "b"]


def test_concurrent_resolve_after_freeze():
    reg = ToolRegistry()
    for i in range(20):
        reg.register(_tool(f"t{i}"))
    reg.freeze()
    errors = []

    def worker():
        try:
            for i in range(200):
                assert reg.resolve(f"t{i % 20}").name == f"t{i % 20}"
                assert len(reg.list_descriptors()) == 20
        except AssertionError as e:  # pragma: no cover - 失败时收集
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []


def test_default_catalog_registers_six_tools():
    class SettingsStub:
        retry_attempts = 1
        retry_backoff_initial = 0.0
        retry_backoff_factor = 2.0
        retry_backoff_max = 0.0
        eks_default_version = "1.30"
        eks_default_node_type = "t3.large"
        eks_default_capacity = 2
        cluster_wait_timeout = 0
        cluster_poll_interval = 0.01
        argo_namespace = "argocd"
        stability_min_samples = 5

    reg = build_default_registry(create_services("mock"), SettingsStub())
    assert reg.frozen
    assert set(reg.names()) == {
        "provision_eks_cluster",
        "install_argo",
        "configure_github_webhook",
        "generate_ci_workflow_template",
        "commit_manifest",
        "evaluate_stability",
    }
    for descriptor in reg.list_descriptors():
        schema = descriptor.parameters_schema()
        assert schema["type"] == "object"
        assert schema["additionalProperties"] is False
        assert descriptor.executor is not None
