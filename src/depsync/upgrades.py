from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
from typing import cast

from depsync.config import DEFAULT_PACKAGE_FILE
from depsync.models import UPGRADE_TYPES, UpgradeRecord, UpgradeType
from depsync.observability import log_event


LOGGER = logging.getLogger("depsync.upgrades")
_FIELD_ALIASES: dict[str, str] = {
    "upgrade_type": "upgradeType",
    "dep_type": "depType",
    "dep_name": "depName",
    "current_version": "currentVersion",
    "new_version": "newVersion",
    "package_file": "packageFile",
}


class UpgradeSourceError(ValueError):
    pass


@dataclass(frozen=True)
class UpgradeCandidate:
    repo_full_name: str
    package_file: str
    upgrade: UpgradeRecord


@dataclass(frozen=True)
class UpgradeSource:
    candidates: tuple[UpgradeCandidate, ...]

    def upgrades_for(self, repo_full_name: str, package_file: str) -> tuple[UpgradeRecord, ...]:
        upgrades = tuple(
            candidate.upgrade
            for candidate in self.candidates
            if candidate.repo_full_name == repo_full_name
            and candidate.package_file == package_file
        )
        log_event(
            LOGGER,
            "upgrades_loaded",
            repo_full_name=repo_full_name,
            package_file=package_file,
            count=len(upgrades),
        )
        return upgrades


def load_upgrades(path: Path) -> UpgradeSource:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise UpgradeSourceError(f"{path} is not valid JSON: {exc}") from exc
    return parse_upgrades(payload)


def parse_upgrades(payload: object) -> UpgradeSource:
    if not isinstance(payload, list):
        raise UpgradeSourceError("Upgrades file must contain a JSON list")
    candidates: list[UpgradeCandidate] = []
    for index, raw in enumerate(payload):
        if not isinstance(raw, dict):
            raise UpgradeSourceError(f"upgrades[{index}] must be a JSON object")
        candidates.append(_parse_candidate(cast(dict[str, object], raw), index=index))
    return UpgradeSource(candidates=tuple(candidates))


def _parse_candidate(entry: dict[str, object], *, index: int) -> UpgradeCandidate:
    upgrade_type = _require_str(entry, "upgrade_type", index=index)
    if upgrade_type not in UPGRADE_TYPES:
        raise UpgradeSourceError(
            f"upgrades[{index}].upgrade_type must be one of: {', '.join(UPGRADE_TYPES)}"
        )
    upgrade = UpgradeRecord(
        upgrade_type=cast(UpgradeType, upgrade_type),
        dep_type=_require_str(entry, "dep_type", index=index),
        dep_name=_require_str(entry, "dep_name", index=index),
        current_version=_require_str(entry, "current_version", index=index),
        new_version=_require_str(entry, "new_version", index=index),
    )
    try:
        _ = upgrade.new_version_major
    except ValueError as exc:
        raise UpgradeSourceError(
            f"upgrades[{index}].new_version is not a semantic version: {upgrade.new_version!r}"
        ) from exc

    return UpgradeCandidate(
        repo_full_name=_require_str(entry, "repo", index=index),
        package_file=_optional_str(entry, "package_file", index=index) or DEFAULT_PACKAGE_FILE,
        upgrade=upgrade,
    )


def _lookup(entry: dict[str, object], key: str) -> object:
    if key in entry:
        return entry[key]
    alias = _FIELD_ALIASES.get(key)
    if alias is not None:
        return entry.get(alias)
    return None


def _require_str(entry: dict[str, object], key: str, *, index: int) -> str:
    value = _lookup(entry, key)
    if not isinstance(value, str) or not value:
        raise UpgradeSourceError(f"upgrades[{index}].{key} is required and must be a string")
    return value


def _optional_str(entry: dict[str, object], key: str, *, index: int) -> str | None:
    value = _lookup(entry, key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise UpgradeSourceError(f"upgrades[{index}].{key} must be a non-empty string")
    return value
