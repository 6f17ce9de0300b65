"""ManifestCommitter：把一个文件作为单次提交写入 GitOps 仓库的分支。

流程：读分支 head -> 读 head 的 tree -> blob -> tree -> commit(parent=head)
-> 以 head 为期望值做 compare-and-swap 更新分支。
分支在此期间被他人推进时抛出 ConcurrentModificationError，不在内部重试，
由后端决定是否基于新的 head 重新提交。
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cicd_agent.domain.exceptions import ValidationError
from cicd_agent.infrastructure.logging.logger import logger
from cicd_agent.infrastructure.retry import RetryPolicy
from cicd_agent.integrations.github import SourceControlClient, TreeEntry
from cicd_agent.tools.definitions import ToolParam
from .base import ActionExecutor, ExecutionContext


@dataclass
class CommitArgs:
    owner: str
    repo: str
    branch: str
    file_path: str
    content: str
    message: str


class ManifestCommitter(ActionExecutor[CommitArgs]):
    name = "commit_manifest"
    description = "把 Kubernetes manifest 作为一次提交写入仓库分支，分支被并发修改时失败"
    params = {
        "owner": ToolParam(name="owner", description="仓库所有者", required=True, schema={"type": "string", "minLength": 1}),
        "repo": ToolParam(name="repo", description="仓库名", required=True, schema={"type": "string", "minLength": 1}),
        "branch": ToolParam(name="branch", description="目标分支", required=True, schema={"type": "string", "minLength": 1}),
        "file_path": ToolParam(
            name="file_path",
            description="仓库内的相对路径，如 apps/demo/deployment.yaml",
            required=True,
            schema={"type": "string", "minLength": 1},
        ),
        "content": ToolParam(name="content", description="文件完整内容", required=True, schema={"type": "string"}),
        "message": ToolParam(name="message", description="提交信息", required=True, schema={"type": "string", "minLength": 1}),
    }

    def __init__(self, source_control: SourceControlClient, retry_policy: Optional[RetryPolicy] = None):
        super().__init__(retry_policy)
        self._scm = source_control

    def _coerce(self, args: Dict[str, Any]) -> CommitArgs:
        raw_path = args["file_path"].strip()
        path = posixpath.normpath(raw_path)
        if raw_path.startswith("/") or path == "." or path.startswith(".."):
            raise ValidationError(
                code="INVALID_ARGUMENTS",
                message=f"{self.name}: file_path must be relative to the repository root",
                tool=self.name,
                errors=[f"file_path: {raw_path!r} escapes the repository"],
            )
        return CommitArgs(
            owner=args["owner"],
            repo=args["repo"],
            branch=args["branch"],
            file_path=path,
            content=args["content"],
            message=args["message"],
        )

    def execute(self, validated: CommitArgs, ctx: ExecutionContext) -> Dict[str, Any]:
        a = validated
        head = self._external("get_ref", lambda: self._scm.get_ref(a.owner, a.repo, a.branch), ctx)
        base_tree = self._external("get_commit_tree", lambda: self._scm.get_commit_tree(a.owner, a.repo, head), ctx)
        blob = self._external("create_blob", lambda: self._scm.create_blob(a.owner, a.repo, a.content), ctx)
        tree = self._external(
            "create_tree",
            lambda: self._scm.create_tree(a.owner, a.repo, base_tree, [TreeEntry(path=a.file_path, sha=blob)]),
            ctx,
        )
        commit = self._external(
            "create_commit",
            lambda: self._scm.create_commit(a.owner, a.repo, a.message, tree, [head]),
            ctx,
        )
        ctx.cancel.raise_if_cancelled(f"{self.name}:update_ref")
        self._scm.update_ref(a.owner, a.repo, a.branch, commit, expected_sha=head)
        logger.info(
            "Manifest committed",
            extra={"extra": {"repo": f"{a.owner}/{a.repo}", "branch": a.branch, "commit": commit, "call_id": ctx.call_id}},
        )
        return {
            "commit_sha": commit,
            "previous_sha": head,
            "branch": a.branch,
            "file_path": a.file_path,
        }
