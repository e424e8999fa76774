from __future__ import annotations

from collections.abc import Mapping
import logging

from depsync.config import AppConfig, RepoConfig
from depsync.github_gateway import GitHubGateway
from depsync.models import BatchSummary, ReconcileOutcome, step_label
from depsync.observability import log_event
from depsync.reconciler import UpgradeReconciler, log_outcome
from depsync.upgrades import UpgradeSource


LOGGER = logging.getLogger("depsync.sequencer")


class BatchSequencer:
    """Runs every configured (repository, manifest, upgrade) tuple one at a time.

    Upgrades are reconciled in discovery order on the calling thread; upgrade
    N+1 issues no GitHub call until upgrade N has settled.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        gateways: Mapping[str, GitHubGateway],
        upgrade_source: UpgradeSource,
    ) -> None:
        self._config = config
        self._gateways = gateways
        self._upgrade_source = upgrade_source

    def run(self) -> BatchSummary:
        total = BatchSummary()
        for repo in self._config.repos:
            for package_file in repo.package_files:
                total.merge(self._process_package_file(repo, package_file))

        if len(self._config.repos) > 1:
            log_event(LOGGER, "all_repos_done", repo_count=len(self._config.repos))
        log_event(
            LOGGER,
            "batch_completed",
            attempted=total.attempted,
            created=total.created,
            updated=total.updated,
            skipped=total.skipped,
            failed=total.failed,
        )
        return total

    def _process_package_file(self, repo: RepoConfig, package_file: str) -> BatchSummary:
        summary = BatchSummary()
        log_event(
            LOGGER,
            "package_file_started",
            repo_full_name=repo.full_name,
            package_file=package_file,
        )
        try:
            upgrades = self._upgrade_source.upgrades_for(repo.full_name, package_file)
        except Exception as exc:  # noqa: BLE001
            _log_package_file_failed(repo, package_file, exc)
            return summary
        if not upgrades:
            log_event(
                LOGGER,
                "no_upgrades",
                repo_full_name=repo.full_name,
                package_file=package_file,
            )
            return summary

        try:
            github = self._gateways[repo.full_name]
            base_branch = github.get_default_branch()
            base_sha = github.get_branch_sha(base_branch)
        except Exception as exc:  # noqa: BLE001
            _log_package_file_failed(repo, package_file, exc)
            # The upgrades are known, so each one is still counted.
            for upgrade in upgrades:
                outcome = ReconcileOutcome(
                    dep_name=upgrade.dep_name,
                    status="failed",
                    reason="bootstrap",
                    steps=(step_label("failed", reason="bootstrap"),),
                )
                log_outcome(upgrade, outcome)
                summary.record(outcome)
            return summary

        reconciler = UpgradeReconciler(
            github,
            package_file=package_file,
            base_branch=base_branch,
            base_sha=base_sha,
            templates=self._config.templates,
        )
        for upgrade in upgrades:
            summary.record(reconciler.reconcile(upgrade))

        log_event(
            LOGGER,
            "package_file_completed",
            repo_full_name=repo.full_name,
            package_file=package_file,
            attempted=summary.attempted,
            created=summary.created,
            updated=summary.updated,
            skipped=summary.skipped,
            failed=summary.failed,
        )
        return summary


def _log_package_file_failed(repo: RepoConfig, package_file: str, exc: Exception) -> None:
    log_event(
        LOGGER,
        "package_file_failed",
        level=logging.WARNING,
        repo_full_name=repo.full_name,
        package_file=package_file,
        error_type=type(exc).__name__,
        error=str(exc),
    )
