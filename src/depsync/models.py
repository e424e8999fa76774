from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import semver


UpgradeType = Literal["pin", "minor", "major"]
OutcomeStatus = Literal["created", "updated", "skipped", "failed"]
GitHubErrorKind = Literal["already_exists", "conflict", "not_found", "other"]

UPGRADE_TYPES: tuple[UpgradeType, ...] = ("pin", "minor", "major")


@dataclass(frozen=True)
class UpgradeRecord:
    upgrade_type: UpgradeType
    dep_type: str
    dep_name: str
    current_version: str
    new_version: str

    @property
    def new_version_major(self) -> int:
        return semver.Version.parse(self.new_version).major


@dataclass(frozen=True)
class RenderedChangeSet:
    branch_name: str
    pr_title: str
    pr_body: str
    commit_message: str


@dataclass(frozen=True)
class ManifestFile:
    path: str
    sha: str
    content: str


@dataclass(frozen=True)
class PullRequest:
    number: int
    html_url: str


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    body: str


@dataclass(frozen=True)
class ReconcileOutcome:
    dep_name: str
    status: OutcomeStatus
    reason: str | None = None
    pr_number: int | None = None
    # One label per completed step, e.g. ("created: branch", "skipped: commit-current").
    steps: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return step_label(self.status, reason=self.reason, pr_number=self.pr_number)

    @property
    def commit_written(self) -> bool:
        return "created: commit" in self.steps


def step_label(
    status: OutcomeStatus, *, reason: str | None = None, pr_number: int | None = None
) -> str:
    if status in {"created", "updated"} and pr_number is not None:
        return f"{status}: pr#{pr_number}"
    if reason:
        return f"{status}: {reason}"
    return status


@dataclass
class BatchSummary:
    attempted: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    def record(self, outcome: ReconcileOutcome) -> None:
        self.attempted += 1
        if outcome.status == "created":
            self.created += 1
        elif outcome.status == "updated":
            self.updated += 1
        elif outcome.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1

    def merge(self, other: BatchSummary) -> None:
        self.attempted += other.attempted
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed

    def render(self) -> str:
        return (
            f"attempted={self.attempted} created={self.created} updated={self.updated} "
            f"skipped={self.skipped} failed={self.failed}"
        )
