import subprocess

import pytest

from cicd_agent.domain.cancellation import CancelToken
from cicd_agent.domain.exceptions import (
    ClusterUnreachableError,
    InstallationFailedError,
    TurnCancelledError,
    ValidationError,
)
from cicd_agent.executors.base import ExecutionContext
from cicd_agent.executors.gitops import GitOpsInstaller
from cicd_agent.infrastructure.retry import RetryPolicy
from cicd_agent.integrations.kube import HelmClusterAccess, InMemoryClusterAccess
from cicd_agent.tools.definitions import ToolCall
from cicd_agent.tools.executor import ToolExecutor
from cicd_agent.tools.registry import ToolRegistry

NO_RETRY = RetryPolicy(attempts=1)


class SettingsStub:
    argo_namespace = "argocd"
    kubectl_binary = "kubectl"
    helm_binary = "helm"
    kube_context_template = "arn:aws:eks:us-east-1:123:cluster/{cluster_name}"
    helm_timeout = 300
    http_timeout = 5.0


def _run(installer, args):
    return installer.execute(installer.validate(args), ExecutionContext(call_id="c1"))


def test_install_default_component():
    access = InMemoryClusterAccess(reachable=["demo"])
    installer = GitOpsInstaller(access, SettingsStub(), retry_policy=NO_RETRY)
    out = _run(installer, {"cluster_name": "demo"})
    assert out["namespace"] == "argocd"
    assert [r["component"] for r in out["releases"]] == ["cd"]
    assert out["urls"] == {"cd": "https://argocd-server.argocd.svc"}
    assert set(access.installed["demo"]) == {"argocd"}


def test_install_components_in_fixed_order():
    access = InMemoryClusterAccess(reach_all=True)
    installer = GitOpsInstaller(access, SettingsStub(), retry_policy=NO_RETRY)
    out = _run(installer, {"cluster_name": "demo", "components": ["events", "cd"], "namespace": "gitops", "argo_version": "7.1.0"})
    assert [r["component"] for r in out["releases"]] == ["cd", "events"]
    assert access.installed["demo"]["argocd"].version == "7.1.0"
    assert access.installed["demo"]["argo-events"].namespace == "gitops"


def test_unknown_component_rejected():
    installer = GitOpsInstaller(InMemoryClusterAccess(reach_all=True), SettingsStub())
    with pytest.raises(ValidationError):
        installer.validate({"cluster_name": "demo", "components": ["rollouts"]})


def test_unreachable_and_failed_install_are_distinct():
    access = InMemoryClusterAccess(reachable=["ok"], failing=["argocd"])
    installer = GitOpsInstaller(access, SettingsStub(), retry_policy=NO_RETRY)
    with pytest.raises(ClusterUnreachableError) as unreachable:
        _run(installer, {"cluster_name": "missing"})
    with pytest.raises(InstallationFailedError) as failed:
        _run(installer, {"cluster_name": "ok"})
    assert unreachable.value.code == "CLUSTER_UNREACHABLE"
    assert failed.value.code == "INSTALLATION_FAILED"
    assert failed.value.extra["release"] == "argocd"


def test_errors_become_tool_results():
    access = InMemoryClusterAccess()
    installer = GitOpsInstaller(access, SettingsStub(), retry_policy=NO_RETRY)
    reg = ToolRegistry()
    reg.register(installer.descriptor())
    te = ToolExecutor(reg.freeze())
    [res] = te.execute_batch([ToolCall(id="c1", name="install_argo", arguments={"cluster_name": "demo"})])
    assert not res.ok
    assert res.error["code"] == "CLUSTER_UNREACHABLE"
    assert res.error["cluster"] == "demo"


class FakeRunner:
    def __init__(self, results):
        self.results = list(results)
        self.commands = []

    def __call__(self, cmd, **kwargs):
        self.commands.append((cmd, kwargs))
        code, out, err = self.results.pop(0)
        if code == "timeout":
            raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))
        return subprocess.CompletedProcess(cmd, code, stdout=out, stderr=err)


def test_helm_access_probe_and_install_commands():
    runner = FakeRunner([(0, "ok", ""), (0, "", ""), (0, "deployed", "")])
    access = HelmClusterAccess(SettingsStub(), runner=runner)
    installer = GitOpsInstaller(access, SettingsStub(), retry_policy=NO_RETRY)
    out = _run(installer, {"cluster_name": "demo", "argo_version": "7.1.0"})
    assert out["releases"][0]["status"] == "deployed"

    probe_cmd, probe_kwargs = runner.commands[0]
    assert probe_cmd[:3] == ["kubectl", "--context", "arn:aws:eks:us-east-1:123:cluster/demo"]
    assert probe_kwargs["timeout"] == 5.0
    assert runner.commands[1][0][:3] == ["helm", "repo", "add"]
    install_cmd = runner.commands[2][0]
    assert install_cmd[:5] == ["helm", "upgrade", "--install", "argocd", "argo/argo-cd"]
    assert "--create-namespace" in install_cmd
    assert install_cmd[install_cmd.index("--version") + 1] == "7.1.0"
    assert install_cmd[install_cmd.index("--timeout") + 1] == "300s"


def test_helm_access_maps_failures():
    access = HelmClusterAccess(SettingsStub(), runner=FakeRunner([(1, "", "connection refused")]))
    with pytest.raises(ClusterUnreachableError) as ei:
        access.probe("demo")
    assert "connection refused" in ei.value.message

    access = HelmClusterAccess(SettingsStub(), runner=FakeRunner([("timeout", "", "")]))
    with pytest.raises(ClusterUnreachableError):
        access.probe("demo")

    runner = FakeRunner([(0, "ok", ""), (0, "", ""), (1, "", "Error: timed out waiting for the condition")])
    installer = GitOpsInstaller(HelmClusterAccess(SettingsStub(), runner=runner), SettingsStub(), retry_policy=NO_RETRY)
    with pytest.raises(InstallationFailedError) as ei:
        _run(installer, {"cluster_name": "demo"})
    assert "timed out" in ei.value.message


def test_missing_binary_is_validation_error():
    def runner(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    access = HelmClusterAccess(SettingsStub(), runner=runner)
    with pytest.raises(ValidationError) as ei:
        access.probe("demo")
    assert ei.value.code == "MISSING_BINARY"


def test_cancel_during_install_completes_all_components():
    cancel = CancelToken()

    class CancellingAccess(InMemoryClusterAccess):
        def install_chart(self, cluster_name, release):
            cancel.cancel("user stopped")
            return super().install_chart(cluster_name, release)

    access = CancellingAccess(reach_all=True)
    installer = GitOpsInstaller(access, SettingsStub(), retry_policy=NO_RETRY)
    args = installer.validate({"cluster_name": "demo", "components": ["cd", "workflows", "events"]})
    out = installer.execute(args, ExecutionContext(call_id="c1", cancel=cancel))
    assert [r["component"] for r in out["releases"]] == ["cd", "workflows", "events"]
    assert set(access.installed["demo"]) == {"argocd", "argo-workflows", "argo-events"}


def test_cancel_before_install_changes_nothing():
    cancel = CancelToken()
    cancel.cancel()
    access = InMemoryClusterAccess(reach_all=True)
    installer = GitOpsInstaller(access, SettingsStub(), retry_policy=NO_RETRY)
    with pytest.raises(TurnCancelledError):
        installer.execute(installer.validate({"cluster_name": "demo"}), ExecutionContext(call_id="c1", cancel=cancel))
    assert access.installed == {}
