"""代码托管（GitHub）协作方。

- SourceControlClient: 执行器依赖的协议，覆盖 Git Data API 与 webhook。
- GitHubClient: 基于 httpx 的 REST 实现。
- InMemorySourceControl: 进程内替身，mock 模式与测试使用。

update_ref 具有 compare-and-swap 语义：只有当分支 head 仍等于
expected_sha 时才推进，否则抛出 ConcurrentModificationError。
"""

import base64
import hashlib
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from cicd_agent.config.settings import settings
from cicd_agent.domain.exceptions import (
    ApiError,
    ConcurrentModificationError,
    NetworkError,
    RateLimitError,
    ValidationError,
)

HOOKS_PAGE_SIZE = 100


@dataclass
class Hook:
    id: int
    url: str
    events: List[str] = field(default_factory=list)


@dataclass
class TreeEntry:
    path: str
    sha: str
    mode: str = "100644"
    type: str = "blob"


class SourceControlClient(Protocol):
    def get_ref(self, owner: str, repo: str, branch: str) -> str:
        ...

    def get_commit_tree(self, owner: str, repo: str, commit_sha: str) -> str:
        ...

    def create_blob(self, owner: str, repo: str, content: str) -> str:
        ...

    def create_tree(self, owner: str, repo: str, base_tree: str, entries: List[TreeEntry]) -> str:
        ...

    def create_commit(self, owner: str, repo: str, message: str, tree: str, parents: List[str]) -> str:
        ...

    def update_ref(self, owner: str, repo: str, branch: str, sha: str, expected_sha: str) -> None:
        ...

    def list_hooks(self, owner: str, repo: str) -> List[Hook]:
        ...

    def create_hook(self, owner: str, repo: str, url: str, events: List[str]) -> Hook:
        ...


class GitHubClient:
    """GitHub REST 客户端。"""

    name = "github"

    def __init__(self, cfg=settings, transport: Optional[httpx.BaseTransport] = None):
        self._settings = cfg
        self._transport = transport

    # ---- Git Data API ----

    def get_ref(self, owner: str, repo: str, branch: str) -> str:
        data = self._request("GET", f"/repos/{owner}/{repo}/git/ref/heads/{branch}")
        return data["object"]["sha"]

    def get_commit_tree(self, owner: str, repo: str, commit_sha: str) -> str:
        data = self._request("GET", f"/repos/{owner}/{repo}/git/commits/{commit_sha}")
        return data["tree"]["sha"]

    def create_blob(self, owner: str, repo: str, content: str) -> str:
        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        data = self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/blobs",
            json={"content": encoded, "encoding": "base64"},
        )
        return data["sha"]

    def create_tree(self, owner: str, repo: str, base_tree: str, entries: List[TreeEntry]) -> str:
        data = self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/trees",
            json={
                "base_tree": base_tree,
                "tree": [{"path": e.path, "mode": e.mode, "type": e.type, "sha": e.sha} for e in entries],
            },
        )
        return data["sha"]

    def create_commit(self, owner: str, repo: str, message: str, tree: str, parents: List[str]) -> str:
        data = self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/commits",
            json={"message": message, "tree": tree, "parents": parents},
        )
        return data["sha"]

    def update_ref(self, owner: str, repo: str, branch: str, sha: str, expected_sha: str) -> None:
        ref = f"heads/{branch}"
        current = self.get_ref(owner, repo, branch)
        if current != expected_sha:
            raise ConcurrentModificationError(ref, expected_sha, current)
        try:
            # force=False：只允许 fast-forward，head 被他人推进后 GitHub 返回 422
            self._request(
                "PATCH",
                f"/repos/{owner}/{repo}/git/refs/{ref}",
                json={"sha": sha, "force": False},
            )
        except ApiError as exc:
            if exc.http_status == 422:
                raise ConcurrentModificationError(ref, expected_sha) from exc
            raise

    # ---- Webhooks ----

    def list_hooks(self, owner: str, repo: str) -> List[Hook]:
        hooks: List[Hook] = []
        page = 1
        while True:
            data = self._request(
                "GET",
                f"/repos/{owner}/{repo}/hooks",
                params={"per_page": HOOKS_PAGE_SIZE, "page": page},
            )
            for item in data or []:
                hooks.append(self._parse_hook(item))
            if not data or len(data) < HOOKS_PAGE_SIZE:
                return hooks
            page += 1

    def create_hook(self, owner: str, repo: str, url: str, events: List[str]) -> Hook:
        data = self._request(
            "POST",
            f"/repos/{owner}/{repo}/hooks",
            json={
                "name": "web",
                "active": True,
                "events": events,
                "config": {"url": url, "content_type": "json"},
            },
        )
        return self._parse_hook(data)

    @staticmethod
    def _parse_hook(item: Dict[str, Any]) -> Hook:
        config = item.get("config") or {}
        return Hook(id=int(item["id"]), url=str(config.get("url") or ""), events=list(item.get("events") or []))

    def _request(self, method: str, path: str, **kwargs) -> Any:
        token = getattr(self._settings, "github_token", None)
        if not token:
            raise ValidationError(code="MISSING_API_KEY", message="GITHUB_TOKEN not set")
        try:
            with httpx.Client(
                base_url=self._settings.github_api_url,
                timeout=self._settings.http_timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                },
            ) as client:
                resp = client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), service=self.name)
        if resp.status_code == 429 or (
            resp.status_code == 403 and resp.headers.get("x-ratelimit-remaining") == "0"
        ):
            raise RateLimitError(code="RATE_LIMIT", message="GitHub rate limit", service=self.name)
        if resp.status_code >= 400:
            raise ApiError(
                code="API_ERROR",
                message=resp.text,
                http_status=resp.status_code,
                service=self.name,
                path=path,
            )
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()


def _object_sha(kind: str, payload: str) -> str:
    return hashlib.sha1(f"{kind} {len(payload)}\0{payload}".encode("utf-8")).hexdigest()


@dataclass
class _Repo:
    refs: Dict[str, str] = field(default_factory=dict)
    blobs: Dict[str, str] = field(default_factory=dict)
    trees: Dict[str, Dict[str, str]] = field(default_factory=dict)
    commits: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    hooks: List[Hook] = field(default_factory=list)


class InMemorySourceControl:
    """线程安全的进程内 Git 仓库替身。

    未知仓库在首次访问时自动初始化，默认分支带一个空的初始提交。
    """

    name = "memory-scm"

    def __init__(self, default_branch: str = "main"):
        self._lock = threading.RLock()
        self._repos: Dict[tuple, _Repo] = {}
        self._default_branch = default_branch
        self._next_hook_id = 1
        self.hook_creations = 0

    def _repo(self, owner: str, repo: str) -> _Repo:
        key = (owner, repo)
        if key not in self._repos:
            state = _Repo()
            empty_tree = _object_sha("tree", "")
            state.trees[empty_tree] = {}
            root = _object_sha("commit", f"{empty_tree}\ninitial")
            state.commits[root] = {"tree": empty_tree, "parents": [], "message": "initial"}
            state.refs[self._default_branch] = root
            self._repos[key] = state
        return self._repos[key]

    def get_ref(self, owner: str, repo: str, branch: str) -> str:
        with self._lock:
            refs = self._repo(owner, repo).refs
            if branch not in refs:
                raise ApiError(code="API_ERROR", message="Reference does not exist", http_status=404)
            return refs[branch]

    def get_commit_tree(self, owner: str, repo: str, commit_sha: str) -> str:
        with self._lock:
            commit = self._repo(owner, repo).commits.get(commit_sha)
            if commit is None:
                raise ApiError(code="API_ERROR", message="Commit not found", http_status=404)
            return commit["tree"]

    def create_blob(self, owner: str, repo: str, content: str) -> str:
        with self._lock:
            sha = _object_sha("blob", content)
            self._repo(owner, repo).blobs[sha] = content
            return sha

    def create_tree(self, owner: str, repo: str, base_tree: str, entries: List[TreeEntry]) -> str:
        with self._lock:
            state = self._repo(owner, repo)
            files = dict(state.trees.get(base_tree, {}))
            for entry in entries:
                if entry.sha not in state.blobs:
                    raise ApiError(code="API_ERROR", message=f"Blob {entry.sha} not found", http_status=422)
                files[entry.path] = entry.sha
            sha = _object_sha("tree", "\n".join(f"{p} {s}" for p, s in sorted(files.items())))
            state.trees[sha] = files
            return sha

    def create_commit(self, owner: str, repo: str, message: str, tree: str, parents: List[str]) -> str:
        with self._lock:
            state = self._repo(owner, repo)
            sha = _object_sha("commit", f"{tree}\n{' '.join(parents)}\n{message}")
            state.commits[sha] = {"tree": tree, "parents": list(parents), "message": message}
            return sha

    def update_ref(self, owner: str, repo: str, branch: str, sha: str, expected_sha: str) -> None:
        with self._lock:
            refs = self._repo(owner, repo).refs
            current = refs.get(branch, "")
            if current != expected_sha:
                raise ConcurrentModificationError(f"heads/{branch}", expected_sha, current)
            refs[branch] = sha

    def list_hooks(self, owner: str, repo: str) -> List[Hook]:
        with self._lock:
            return list(self._repo(owner, repo).hooks)

    def create_hook(self, owner: str, repo: str, url: str, events: List[str]) -> Hook:
        with self._lock:
            if any(h.url.strip() == url.strip() for h in self._repo(owner, repo).hooks):
                raise ApiError(
                    code="API_ERROR",
                    message="Validation Failed: Hook already exists on this repository",
                    http_status=422,
                    service=self.name,
                )
            hook = Hook(id=self._next_hook_id, url=url, events=list(events))
            self._next_hook_id += 1
            self._repo(owner, repo).hooks.append(hook)
            self.hook_creations += 1
            return hook

    # ---- 测试辅助 ----

    def advance_ref(self, owner: str, repo: str, branch: str, message: str = "external change") -> str:
        """模拟他人在同一分支上推进了一次提交。"""

        with self._lock:
            state = self._repo(owner, repo)
            parent = state.refs[branch]
            tree = state.commits[parent]["tree"]
            sha = self.create_commit(owner, repo, message, tree, [parent])
            state.refs[branch] = sha
            return sha

    def read_file(self, owner: str, repo: str, branch: str, path: str) -> Optional[str]:
        with self._lock:
            state = self._repo(owner, repo)
            tree = state.trees[state.commits[state.refs[branch]]["tree"]]
            blob = tree.get(path)
            return state.blobs.get(blob) if blob else None
