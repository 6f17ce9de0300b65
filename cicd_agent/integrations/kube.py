"""集群访问协作方：连通性探测与 Helm 安装。

HelmClusterAccess 通过 kubectl / helm 命令行完成操作，
每条命令都带有显式超时；kube context 由集群名按模板推导。
"""

import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol

from cicd_agent.config.settings import settings
from cicd_agent.domain.exceptions import ClusterUnreachableError, InstallationFailedError, ValidationError

ARGO_HELM_REPO = ("argo", "https://argoproj.github.io/argo-helm")
STDERR_TAIL = 800


@dataclass(frozen=True)
class HelmRelease:
    name: str
    chart: str
    namespace: str
    version: Optional[str] = None


class ClusterAccess(Protocol):
    def probe(self, cluster_name: str) -> None:
        """集群不可达时抛出 ClusterUnreachableError。"""
        ...

    def install_chart(self, cluster_name: str, release: HelmRelease) -> Dict[str, str]:
        ...


Runner = Callable[..., subprocess.CompletedProcess]


class HelmClusterAccess:
    name = "helm"

    def __init__(self, cfg=settings, runner: Runner = subprocess.run):
        self._settings = cfg
        self._run = runner

    def context_for(self, cluster_name: str) -> str:
        return self._settings.kube_context_template.format(cluster_name=cluster_name)

    def probe(self, cluster_name: str) -> None:
        cmd = [
            self._settings.kubectl_binary,
            "--context",
            self.context_for(cluster_name),
            "get",
            "--raw",
            "/readyz",
        ]
        try:
            completed = self._exec(cmd, timeout=self._settings.http_timeout)
        except subprocess.TimeoutExpired as exc:
            raise ClusterUnreachableError(cluster_name, f"API server did not answer within {exc.timeout}s") from exc
        if completed.returncode != 0:
            raise ClusterUnreachableError(cluster_name, _tail(completed.stderr or completed.stdout))

    def install_chart(self, cluster_name: str, release: HelmRelease) -> Dict[str, str]:
        repo_name, repo_url = ARGO_HELM_REPO
        self._helm(cluster_name, release, ["repo", "add", repo_name, repo_url, "--force-update"])
        timeout = int(self._settings.helm_timeout)
        args = [
            "upgrade",
            "--install",
            release.name,
            release.chart,
            "--namespace",
            release.namespace,
            "--create-namespace",
            "--kube-context",
            self.context_for(cluster_name),
            "--wait",
            "--timeout",
            f"{timeout}s",
        ]
        if release.version:
            args.extend(["--version", release.version])
        self._helm(cluster_name, release, args, timeout=timeout + 30)
        return {"release": release.name, "namespace": release.namespace, "status": "deployed"}

    def _helm(self, cluster_name: str, release: HelmRelease, args: List[str], timeout: float = 120) -> None:
        try:
            completed = self._exec([self._settings.helm_binary, *args], timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise InstallationFailedError(
                cluster_name, release.name, f"helm {args[0]} timed out after {exc.timeout}s"
            ) from exc
        if completed.returncode != 0:
            raise InstallationFailedError(cluster_name, release.name, _tail(completed.stderr or completed.stdout))

    def _exec(self, cmd: List[str], timeout: float) -> subprocess.CompletedProcess:
        try:
            return self._run(cmd, capture_output=True, text=True, check=False, timeout=timeout)
        except FileNotFoundError as exc:
            raise ValidationError(code="MISSING_BINARY", message=f"{cmd[0]} 命令未安装") from exc


def _tail(text: Optional[str]) -> str:
    text = (text or "").strip()
    return text[-STDERR_TAIL:] if text else "command failed without output"


class InMemoryClusterAccess:
    """进程内替身：reachable 之外的集群一律视为不可达。"""

    name = "memory-helm"

    def __init__(self, reachable: Optional[List[str]] = None, reach_all: bool = False, failing: Optional[List[str]] = None):
        self._lock = threading.Lock()
        self._reachable = set(reachable or [])
        self._reach_all = reach_all
        self._failing = set(failing or [])
        self.installed: Dict[str, Dict[str, HelmRelease]] = {}

    def mark_reachable(self, cluster_name: str) -> None:
        with self._lock:
            self._reachable.add(cluster_name)

    def probe(self, cluster_name: str) -> None:
        if not (self._reach_all or cluster_name in self._reachable):
            raise ClusterUnreachableError(cluster_name, f"cluster {cluster_name} is not reachable")

    def install_chart(self, cluster_name: str, release: HelmRelease) -> Dict[str, str]:
        if release.name in self._failing:
            raise InstallationFailedError(cluster_name, release.name, f"release {release.name} failed to install")
        with self._lock:
            self.installed.setdefault(cluster_name, {})[release.name] = release
        return {"release": release.name, "namespace": release.namespace, "status": "deployed"}
