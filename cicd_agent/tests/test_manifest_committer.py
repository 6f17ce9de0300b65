import pytest

from cicd_agent.domain.exceptions import ConcurrentModificationError, ValidationError
from cicd_agent.executors.base import ExecutionContext
from cicd_agent.executors.manifest import ManifestCommitter
from cicd_agent.infrastructure.retry import RetryPolicy
from cicd_agent.integrations.github import InMemorySourceControl

FAST_RETRY = RetryPolicy(attempts=3, backoff_initial=0.0, backoff_max=0.0)
ARGS = {
    "owner": "acme",
    "repo": "gitops",
    "branch": "main",
    "file_path": "apps/shop/deployment.yaml",
    "content": "apiVersion: apps/v1\nkind: Deployment\n",
    "message": "Deploy shop",
}


def _run(committer, args):
    return committer.execute(committer.validate(args), ExecutionContext(call_id="c1"))


def test_commit_advances_branch():
    scm = InMemorySourceControl()
    head = scm.get_ref("acme", "gitops", "main")
    out = _run(ManifestCommitter(scm, retry_policy=FAST_RETRY), ARGS)
    assert out["previous_sha"] == head
    assert out["branch"] == "main"
    assert out["file_path"] == "apps/shop/deployment.yaml"
    assert scm.get_ref("acme", "gitops", "main") == out["commit_sha"]
    assert scm.read_file("acme", "gitops", "main", "apps/shop/deployment.yaml") == ARGS["content"]


def test_second_commit_keeps_existing_files():
    scm = InMemorySourceControl()
    committer = ManifestCommitter(scm, retry_policy=FAST_RETRY)
    _run(committer, ARGS)
    _run(committer, {**ARGS, "file_path": "apps/shop/service.yaml", "content": "kind: Service\n"})
    assert scm.read_file("acme", "gitops", "main", "apps/shop/deployment.yaml") == ARGS["content"]
    assert scm.read_file("acme", "gitops", "main", "apps/shop/service.yaml") == "kind: Service\n"


def test_concurrent_head_move_is_reported_not_overwritten():
    class RacingScm(InMemorySourceControl):
        external_sha = None

        def create_commit(self, owner, repo, message, tree, parents):
            sha = super().create_commit(owner, repo, message, tree, parents)
            if self.external_sha is None:
                # 在读取 head 之后、更新分支之前，别人推进了分支
                self.external_sha = "pending"
                self.external_sha = self.advance_ref(owner, repo, "main")
            return sha

    scm = RacingScm()
    with pytest.raises(ConcurrentModificationError) as ei:
        _run(ManifestCommitter(scm, retry_policy=FAST_RETRY), ARGS)
    assert ei.value.code == "CONCURRENT_MODIFICATION"
    assert ei.value.retryable is False
    assert scm.get_ref("acme", "gitops", "main") == scm.external_sha
    assert scm.read_file("acme", "gitops", "main", ARGS["file_path"]) is None


def test_paths_outside_repository_rejected():
    committer = ManifestCommitter(InMemorySourceControl())
    for bad in ("/etc/passwd", "../outside.yaml", "."):
        with pytest.raises(ValidationError):
            committer.validate({**ARGS, "file_path": bad})
    assert committer.validate({**ARGS, "file_path": "apps//shop/./x.yaml"}).file_path == "apps/shop/x.yaml"
