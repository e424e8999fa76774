from __future__ import annotations

import json

from hypothesis import given, strategies as st
import pytest

from depsync.github_gateway import GitHubApiError
from depsync.models import ManifestFile, PullRequest, PullRequestSnapshot, UpgradeRecord
from depsync.observability import configure_logging
from depsync.reconciler import UpgradeReconciler
from depsync.templates import TemplateConfig


_BRANCH = "depsync/lodash-4.x"
_TITLE = "Upgrade dependency lodash to version 4.x"
_BODY = "This Pull Request updates dependency lodash from version 3.9.0 to 4.0.0"
_COMMIT = "Upgrade dependency lodash to version 4.0.0"
_MUTATIONS = {"create_branch", "write_file", "create_pull_request", "update_pull_request"}


def _manifest(prod: str = "3.9.0", dev: str = "3.8.0") -> str:
    return (
        json.dumps(
            {"name": "app", "dependencies": {"lodash": prod}, "devDependencies": {"lodash": dev}},
            indent=2,
        )
        + "\n"
    )


def _upgrade(
    *,
    dep_name: str = "lodash",
    dep_type: str = "dependencies",
    new_version: str = "4.0.0",
) -> UpgradeRecord:
    return UpgradeRecord(
        upgrade_type="major",
        dep_type=dep_type,
        dep_name=dep_name,
        current_version="3.9.0",
        new_version=new_version,
    )


class FakeGitHub:
    """In-memory remote: branches hold (sha, manifest) and PRs are keyed by head."""

    def __init__(self, manifest: str | None = None) -> None:
        self.branches: dict[str, tuple[str, str]] = {"main": ("sha-0", manifest or _manifest())}
        self.open_prs: dict[str, PullRequestSnapshot] = {}
        self.closed_prs: list[tuple[str, PullRequestSnapshot]] = []
        self.calls: list[str] = []
        self.created_branches: list[tuple[str, str]] = []
        self.writes: list[tuple[str, str, str, str, str]] = []
        self.created_prs: list[tuple[str, str, str, str]] = []
        self.updated_prs: list[tuple[int, str, str]] = []
        self.branch_error: Exception | None = None
        self.read_error: Exception | None = None
        self.write_error: Exception | None = None
        self.find_pr_error: Exception | None = None
        self.closed_pr_error: Exception | None = None
        self.next_pr_number = 100
        self.sha_counter = 0

    @property
    def mutations(self) -> list[str]:
        return [call for call in self.calls if call in _MUTATIONS]

    def has_closed_pull_request(self, *, head: str, title: str) -> bool:
        self.calls.append("has_closed_pull_request")
        if self.closed_pr_error is not None:
            raise self.closed_pr_error
        return any(pr_head == head and pr.title == title for pr_head, pr in self.closed_prs)

    def create_branch(self, branch: str, *, base_sha: str) -> None:
        self.calls.append("create_branch")
        if self.branch_error is not None:
            raise self.branch_error
        if branch in self.branches:
            raise GitHubApiError(
                "Reference already exists", kind="already_exists", status_code=422
            )
        self.created_branches.append((branch, base_sha))
        self.branches[branch] = self.branches["main"]

    def get_file(self, path: str, *, ref: str) -> ManifestFile:
        self.calls.append("get_file")
        if self.read_error is not None:
            raise self.read_error
        if ref not in self.branches:
            raise GitHubApiError("Not Found", kind="not_found", status_code=404)
        sha, content = self.branches[ref]
        return ManifestFile(path=path, sha=sha, content=content)

    def write_file(self, path: str, *, branch: str, sha: str, content: str, message: str) -> str:
        self.calls.append("write_file")
        if self.write_error is not None:
            raise self.write_error
        current_sha, _ = self.branches[branch]
        if sha != current_sha:
            raise GitHubApiError("sha mismatch", kind="conflict", status_code=409)
        self.sha_counter += 1
        new_sha = f"sha-{self.sha_counter}"
        self.branches[branch] = (new_sha, content)
        self.writes.append((path, branch, sha, content, message))
        return new_sha

    def find_pull_request_by_head(self, *, head: str) -> PullRequestSnapshot | None:
        self.calls.append("find_pull_request_by_head")
        if self.find_pr_error is not None:
            raise self.find_pr_error
        return self.open_prs.get(head)

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        self.calls.append("create_pull_request")
        number = self.next_pr_number
        self.next_pr_number += 1
        self.open_prs[head] = PullRequestSnapshot(number=number, title=title, body=body)
        self.created_prs.append((title, head, base, body))
        return PullRequest(number=number, html_url=f"https://example/pr/{number}")

    def update_pull_request(self, pr_number: int, *, title: str, body: str) -> None:
        self.calls.append("update_pull_request")
        for head, pr in self.open_prs.items():
            if pr.number == pr_number:
                self.open_prs[head] = PullRequestSnapshot(number=pr_number, title=title, body=body)
        self.updated_prs.append((pr_number, title, body))


def _reconciler(github: FakeGitHub) -> UpgradeReconciler:
    return UpgradeReconciler(
        github,  # type: ignore[arg-type]
        package_file="package.json",
        base_branch="main",
        base_sha="sha-0",
        templates=TemplateConfig(),
    )


def test_reconcile_happy_path_creates_branch_commit_and_pr() -> None:
    github = FakeGitHub()

    outcome = _reconciler(github).reconcile(_upgrade())

    assert outcome.status == "created"
    assert outcome.pr_number == 100
    assert outcome.label == "created: pr#100"
    assert outcome.steps == ("created: branch", "created: commit", "created: pr#100")
    assert outcome.commit_written is True
    assert github.calls == [
        "has_closed_pull_request",
        "create_branch",
        "get_file",
        "write_file",
        "find_pull_request_by_head",
        "create_pull_request",
    ]
    assert github.created_branches == [(_BRANCH, "sha-0")]
    path, branch, sha, content, message = github.writes[0]
    assert (path, branch, sha, message) == ("package.json", _BRANCH, "sha-0", _COMMIT)
    assert content == _manifest(prod="4.0.0")
    assert github.created_prs == [(_TITLE, _BRANCH, "main", _BODY)]


def test_reconcile_twice_is_idempotent() -> None:
    github = FakeGitHub()
    reconciler = _reconciler(github)

    first = reconciler.reconcile(_upgrade())
    mutations_after_first = list(github.mutations)
    second = reconciler.reconcile(_upgrade())

    assert first.status == "created"
    assert second.status == "skipped"
    assert second.reason == "pr-current"
    assert second.pr_number == first.pr_number
    assert second.steps == (
        "skipped: branch-exists",
        "skipped: commit-current",
        "skipped: pr-current",
    )
    # Only the branch create attempt repeats; it is rejected as already existing.
    assert github.mutations == [*mutations_after_first, "create_branch"]
    assert len(github.writes) == 1
    assert len(github.created_prs) == 1
    assert github.updated_prs == []


def test_reconcile_skips_upgrade_when_closed_pr_has_same_title() -> None:
    github = FakeGitHub()
    github.closed_prs.append((_BRANCH, PullRequestSnapshot(number=7, title=_TITLE, body="old")))

    outcome = _reconciler(github).reconcile(_upgrade())

    assert outcome.status == "skipped"
    assert outcome.reason == "duplicate"
    assert outcome.label == "skipped: duplicate"
    assert github.calls == ["has_closed_pull_request"]


def test_reconcile_ignores_closed_pr_with_different_title() -> None:
    github = FakeGitHub()
    github.closed_prs.append((_BRANCH, PullRequestSnapshot(number=7, title="Other", body="b")))

    outcome = _reconciler(github).reconcile(_upgrade())

    assert outcome.status == "created"


def test_reconcile_manifest_already_current_creates_pr_without_write() -> None:
    github = FakeGitHub(manifest=_manifest(prod="4.0.0"))

    outcome = _reconciler(github).reconcile(_upgrade())

    assert outcome.status == "created"
    assert "skipped: commit-current" in outcome.steps
    assert outcome.commit_written is False
    assert "write_file" not in github.calls
    assert github.calls.count("create_pull_request") == 1


def test_reconcile_existing_branch_is_reused(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    github = FakeGitHub()
    github.branches[_BRANCH] = ("sha-branch", _manifest())

    outcome = _reconciler(github).reconcile(_upgrade())

    assert outcome.status == "created"
    assert outcome.steps[0] == "skipped: branch-exists"
    assert github.writes[0][2] == "sha-branch"
    assert "event=upgrade_branch_exists" in capsys.readouterr().err


@pytest.mark.parametrize("kind", ["other", "conflict", "not_found"])
def test_reconcile_branch_failure_aborts_only_this_upgrade(kind: str) -> None:
    github = FakeGitHub()
    github.branch_error = GitHubApiError("boom", kind=kind)  # type: ignore[arg-type]

    outcome = _reconciler(github).reconcile(_upgrade())

    assert outcome.status == "failed"
    assert outcome.reason == "branch-create"
    assert github.calls == ["has_closed_pull_request", "create_branch"]


def test_reconcile_write_conflict_is_not_retried() -> None:
    github = FakeGitHub()
    github.write_error = GitHubApiError("sha mismatch", kind="conflict", status_code=409)

    outcome = _reconciler(github).reconcile(_upgrade())

    assert outcome.status == "failed"
    assert outcome.label == "failed: commit-conflict"
    assert github.calls.count("write_file") == 1
    assert "find_pull_request_by_head" not in github.calls


def test_reconcile_stale_sha_surfaces_as_conflict() -> None:
    github = FakeGitHub()
    real_get_file = github.get_file

    def get_file_then_race(path: str, *, ref: str) -> ManifestFile:
        manifest = real_get_file(path, ref=ref)
        # Someone else commits between our read and our write.
        github.branches[ref] = ("sha-other", manifest.content)
        return manifest

    github.get_file = get_file_then_race  # type: ignore[method-assign]

    outcome = _reconciler(github).reconcile(_upgrade())

    assert outcome.label == "failed: commit-conflict"
    assert github.writes == []


@pytest.mark.parametrize(
    ("setup", "reason"),
    [
        ("missing_file", "manifest-missing"),
        ("missing_dependency", "manifest-patch"),
        ("invalid_json", "manifest-patch"),
        ("write_other", "commit"),
    ],
)
def test_reconcile_commit_failures_are_contained(setup: str, reason: str) -> None:
    github = FakeGitHub()
    upgrade = _upgrade()
    if setup == "missing_file":
        github.read_error = GitHubApiError("Not Found", kind="not_found", status_code=404)
    elif setup == "missing_dependency":
        upgrade = _upgrade(dep_name="react")
    elif setup == "invalid_json":
        github.branches["main"] = ("sha-0", "{not json")
    else:
        github.write_error = GitHubApiError("Server Error", kind="other", status_code=500)

    outcome = _reconciler(github).reconcile(upgrade)

    assert outcome.status == "failed"
    assert outcome.reason == reason
    assert "create_pull_request" not in github.calls


def test_reconcile_patches_requested_section_only() -> None:
    github = FakeGitHub()

    _reconciler(github).reconcile(_upgrade(dep_type="devDependencies"))

    written = json.loads(github.writes[0][3])
    assert written["devDependencies"]["lodash"] == "4.0.0"
    assert written["dependencies"]["lodash"] == "3.9.0"


def test_reconcile_updates_stale_pr() -> None:
    github = FakeGitHub()
    github.open_prs[_BRANCH] = PullRequestSnapshot(number=42, title="stale", body="stale body")

    outcome = _reconciler(github).reconcile(_upgrade())

    assert outcome.status == "updated"
    assert outcome.label == "updated: pr#42"
    assert github.updated_prs == [(42, _TITLE, _BODY)]
    assert github.created_prs == []


@pytest.mark.parametrize(
    ("title", "body"),
    [
        (_TITLE, _BODY),
        (_TITLE, "edited by a human"),
        ("edited by a human", _BODY),
    ],
)
def test_reconcile_pr_matching_title_or_body_is_left_alone(title: str, body: str) -> None:
    github = FakeGitHub()
    github.open_prs[_BRANCH] = PullRequestSnapshot(number=42, title=title, body=body)

    outcome = _reconciler(github).reconcile(_upgrade())

    assert outcome.label == "skipped: pr-current"
    assert outcome.pr_number == 42
    assert "update_pull_request" not in github.calls


@given(title=st.text(max_size=20), body=st.text(max_size=20))
def test_reconcile_pr_update_uses_or_match(title: str, body: str) -> None:
    github = FakeGitHub()
    github.open_prs[_BRANCH] = PullRequestSnapshot(number=42, title=title, body=body)

    outcome = _reconciler(github).reconcile(_upgrade())

    stale = title != _TITLE and body != _BODY
    assert ("update_pull_request" in github.calls) is stale
    assert outcome.status == ("updated" if stale else "skipped")


def test_reconcile_pr_failures_are_contained() -> None:
    github = FakeGitHub()
    github.find_pr_error = GitHubApiError("Server Error", kind="other", status_code=502)

    outcome = _reconciler(github).reconcile(_upgrade())

    assert outcome.status == "failed"
    assert outcome.reason == "pr"
    assert outcome.commit_written is True
    assert outcome.steps == ("created: branch", "created: commit", "failed: pr")


def test_reconcile_duplicate_check_failure_is_contained() -> None:
    github = FakeGitHub()
    github.closed_pr_error = RuntimeError("Unexpected GitHub response")

    outcome = _reconciler(github).reconcile(_upgrade())

    assert outcome.label == "failed: duplicate-check"
    assert github.calls == ["has_closed_pull_request"]


def test_reconcile_render_failure_is_contained() -> None:
    github = FakeGitHub()

    outcome = _reconciler(github).reconcile(_upgrade(new_version="not-a-version"))

    assert outcome.label == "failed: render"
    assert github.calls == []


def test_reconcile_never_raises_on_unexpected_errors() -> None:
    github = FakeGitHub()
    github.read_error = KeyError("content")

    outcome = _reconciler(github).reconcile(_upgrade())

    assert outcome.label == "failed: commit"


def test_reconcile_logs_outcomes(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose="low")
    github = FakeGitHub()
    github.write_error = GitHubApiError("sha mismatch", kind="conflict", status_code=409)

    _reconciler(github).reconcile(_upgrade())

    stderr = capsys.readouterr().err
    assert "event=upgrade_step_failed" in stderr
    assert "dep_name=lodash" in stderr
    assert "error_type=GitHubApiError" in stderr
    assert "event=upgrade_failed" in stderr
    assert 'outcome="failed: commit-conflict"' in stderr
    assert "event=upgrade_branch_created" not in stderr
