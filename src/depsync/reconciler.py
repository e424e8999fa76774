from __future__ import annotations

import logging

from depsync.github_gateway import GitHubApiError, GitHubGateway
from depsync.manifest import ManifestPatchError, read_dependency_version, set_dependency_version
from depsync.models import (
    OutcomeStatus,
    ReconcileOutcome,
    RenderedChangeSet,
    UpgradeRecord,
    step_label,
)
from depsync.observability import log_event
from depsync.templates import TemplateConfig, render_change_set


LOGGER = logging.getLogger("depsync.reconciler")


class UpgradeReconciler:
    """Converges branch, commit and pull request state for one upgrade at a time.

    Steps run in a fixed order: duplicate check, branch, commit, pull request.
    Every call re-reads remote state; nothing is cached between upgrades.
    ``reconcile`` never raises: collaborator failures become ``failed``
    outcomes so the caller can move on to the next upgrade.
    """

    def __init__(
        self,
        github: GitHubGateway,
        *,
        package_file: str,
        base_branch: str,
        base_sha: str,
        templates: TemplateConfig,
    ) -> None:
        self._github = github
        self._package_file = package_file
        self._base_branch = base_branch
        self._base_sha = base_sha
        self._templates = templates

    def reconcile(self, upgrade: UpgradeRecord) -> ReconcileOutcome:
        outcome = self._reconcile(upgrade)
        log_outcome(upgrade, outcome)
        return outcome

    def _reconcile(self, upgrade: UpgradeRecord) -> ReconcileOutcome:
        steps: list[str] = []
        try:
            change_set = render_change_set(upgrade, self._templates)
        except Exception as exc:  # noqa: BLE001
            return _failed(upgrade, "render", exc, steps)

        try:
            duplicate = self._github.has_closed_pull_request(
                head=change_set.branch_name, title=change_set.pr_title
            )
        except Exception as exc:  # noqa: BLE001
            return _failed(upgrade, "duplicate-check", exc, steps)
        if duplicate:
            return _outcome(upgrade, "skipped", steps, reason="duplicate")

        try:
            steps.append(self._ensure_branch(upgrade, change_set))
        except Exception as exc:  # noqa: BLE001
            return _failed(upgrade, "branch-create", exc, steps)

        try:
            steps.append(self._ensure_commit(upgrade, change_set))
        except Exception as exc:  # noqa: BLE001
            return _failed(upgrade, _commit_failure_reason(exc), exc, steps)

        try:
            return self._ensure_pr(upgrade, change_set, steps)
        except Exception as exc:  # noqa: BLE001
            return _failed(upgrade, "pr", exc, steps)

    def _ensure_branch(self, upgrade: UpgradeRecord, change_set: RenderedChangeSet) -> str:
        # Create without checking first; an existing branch is the uncommon case.
        try:
            self._github.create_branch(change_set.branch_name, base_sha=self._base_sha)
        except GitHubApiError as exc:
            if exc.kind != "already_exists":
                raise
            log_event(
                LOGGER,
                "upgrade_branch_exists",
                dep_name=upgrade.dep_name,
                branch=change_set.branch_name,
            )
            return step_label("skipped", reason="branch-exists")
        log_event(
            LOGGER,
            "upgrade_branch_created",
            dep_name=upgrade.dep_name,
            branch=change_set.branch_name,
        )
        return step_label("created", reason="branch")

    def _ensure_commit(self, upgrade: UpgradeRecord, change_set: RenderedChangeSet) -> str:
        manifest = self._github.get_file(self._package_file, ref=change_set.branch_name)
        current_value = read_dependency_version(
            manifest.content, upgrade.dep_type, upgrade.dep_name
        )
        if current_value == upgrade.new_version:
            log_event(
                LOGGER,
                "upgrade_commit_current",
                dep_name=upgrade.dep_name,
                branch=change_set.branch_name,
                version=upgrade.new_version,
            )
            return step_label("skipped", reason="commit-current")

        new_content = set_dependency_version(
            manifest.content, upgrade.dep_type, upgrade.dep_name, upgrade.new_version
        )
        # The write is pinned to the sha just read; a concurrent change surfaces as a conflict.
        new_sha = self._github.write_file(
            self._package_file,
            branch=change_set.branch_name,
            sha=manifest.sha,
            content=new_content,
            message=change_set.commit_message,
        )
        log_event(
            LOGGER,
            "upgrade_commit_written",
            dep_name=upgrade.dep_name,
            branch=change_set.branch_name,
            previous_version=current_value,
            version=upgrade.new_version,
            sha=new_sha,
        )
        return step_label("created", reason="commit")

    def _ensure_pr(
        self,
        upgrade: UpgradeRecord,
        change_set: RenderedChangeSet,
        steps: list[str],
    ) -> ReconcileOutcome:
        existing = self._github.find_pull_request_by_head(head=change_set.branch_name)
        if existing is None:
            pr = self._github.create_pull_request(
                change_set.pr_title,
                change_set.branch_name,
                self._base_branch,
                change_set.pr_body,
            )
            return _outcome(upgrade, "created", steps, pr_number=pr.number)

        # A match on either field counts as current.
        if existing.title == change_set.pr_title or existing.body == change_set.pr_body:
            log_event(
                LOGGER,
                "upgrade_pr_current",
                dep_name=upgrade.dep_name,
                pr_number=existing.number,
            )
            return _outcome(
                upgrade, "skipped", steps, reason="pr-current", pr_number=existing.number
            )

        self._github.update_pull_request(
            existing.number, title=change_set.pr_title, body=change_set.pr_body
        )
        return _outcome(upgrade, "updated", steps, pr_number=existing.number)


def _outcome(
    upgrade: UpgradeRecord,
    status: OutcomeStatus,
    steps: list[str],
    *,
    reason: str | None = None,
    pr_number: int | None = None,
) -> ReconcileOutcome:
    label = step_label(status, reason=reason, pr_number=pr_number)
    return ReconcileOutcome(
        dep_name=upgrade.dep_name,
        status=status,
        reason=reason,
        pr_number=pr_number,
        steps=(*steps, label),
    )


def _commit_failure_reason(exc: Exception) -> str:
    if isinstance(exc, ManifestPatchError):
        return "manifest-patch"
    if isinstance(exc, GitHubApiError):
        if exc.kind == "conflict":
            return "commit-conflict"
        if exc.kind == "not_found":
            return "manifest-missing"
    return "commit"


def _failed(
    upgrade: UpgradeRecord,
    reason: str,
    exc: Exception,
    steps: list[str],
) -> ReconcileOutcome:
    log_event(
        LOGGER,
        "upgrade_step_failed",
        level=logging.WARNING,
        dep_name=upgrade.dep_name,
        reason=reason,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return _outcome(upgrade, "failed", steps, reason=reason)


def log_outcome(upgrade: UpgradeRecord, outcome: ReconcileOutcome) -> None:
    log_event(
        LOGGER,
        f"upgrade_{outcome.status}",
        level=logging.WARNING if outcome.status == "failed" else logging.INFO,
        dep_name=upgrade.dep_name,
        dep_type=upgrade.dep_type,
        new_version=upgrade.new_version,
        outcome=outcome.label,
        steps=", ".join(outcome.steps),
    )
