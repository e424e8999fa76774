from __future__ import annotations

from dataclasses import dataclass, fields
from string import Formatter

from depsync.models import RenderedChangeSet, UpgradeRecord


TEMPLATE_FIELDS = frozenset(
    {
        "upgrade_type",
        "dep_type",
        "dep_name",
        "current_version",
        "new_version",
        "new_version_major",
    }
)


@dataclass(frozen=True)
class TemplateConfig:
    branch_name: str = "depsync/{dep_name}-{new_version_major}.x"
    pr_title_pin: str = "Pin dependency {dep_name} to version {new_version}"
    pr_title_minor: str = "Upgrade dependency {dep_name} to version {new_version}"
    pr_title_major: str = "Upgrade dependency {dep_name} to version {new_version_major}.x"
    pr_body: str = (
        "This Pull Request updates dependency {dep_name} "
        "from version {current_version} to {new_version}"
    )
    commit_message: str = "Upgrade dependency {dep_name} to version {new_version}"


def template_names() -> tuple[str, ...]:
    return tuple(item.name for item in fields(TemplateConfig))


def unknown_placeholders(template: str) -> tuple[str, ...]:
    """Return placeholder names in ``template`` that rendering cannot fill."""
    unknown: list[str] = []
    for _literal, field_name, _spec, _conversion in Formatter().parse(template):
        if field_name is None:
            continue
        if field_name not in TEMPLATE_FIELDS and field_name not in unknown:
            unknown.append(field_name)
    return tuple(unknown)


def render_change_set(upgrade: UpgradeRecord, templates: TemplateConfig) -> RenderedChangeSet:
    values: dict[str, object] = {
        "upgrade_type": upgrade.upgrade_type,
        "dep_type": upgrade.dep_type,
        "dep_name": upgrade.dep_name,
        "current_version": upgrade.current_version,
        "new_version": upgrade.new_version,
        "new_version_major": upgrade.new_version_major,
    }
    return RenderedChangeSet(
        branch_name=templates.branch_name.format(**values),
        pr_title=_pr_title_template(upgrade, templates).format(**values),
        pr_body=templates.pr_body.format(**values),
        commit_message=templates.commit_message.format(**values),
    )


def _pr_title_template(upgrade: UpgradeRecord, templates: TemplateConfig) -> str:
    if upgrade.upgrade_type == "pin":
        return templates.pr_title_pin
    if upgrade.upgrade_type == "minor":
        return templates.pr_title_minor
    return templates.pr_title_major
