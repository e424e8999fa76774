from __future__ import annotations

import argparse
import os
from pathlib import Path
import sys

from depsync.config import AppConfig, ConfigError, load_config, load_template_config
from depsync.github_gateway import GitHubGateway
from depsync.observability import configure_logging
from depsync.sequencer import BatchSequencer
from depsync.templates import render_change_set
from depsync.upgrades import UpgradeSourceError, load_upgrades


DEFAULT_CONFIG_PATH = Path("depsync.toml")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="depsync")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Reconcile branches, commits and pull requests for every upgrade"
    )
    run_parser.add_argument("--config", type=Path, default=None)
    run_parser.add_argument(
        "--upgrades",
        type=Path,
        required=True,
        help="JSON file listing upgrade candidates",
    )
    run_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )
    run_parser.add_argument(
        "repo", nargs="?", default=None, help="Only process this owner/name repository"
    )
    run_parser.add_argument(
        "package_file",
        nargs="?",
        default=None,
        help="Manifest path inside the repository (default: package.json)",
    )

    render_parser = subparsers.add_parser(
        "render", help="Print branch names, titles and commit messages without calling GitHub"
    )
    render_parser.add_argument("--config", type=Path, default=None)
    render_parser.add_argument(
        "--upgrades",
        type=Path,
        required=True,
        help="JSON file listing upgrade candidates",
    )

    return parser


def main() -> None:
    args = build_parser().parse_args()

    if args.command == "run":
        _cmd_run(args)
        return
    if args.command == "render":
        _cmd_render(args)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_run(args: argparse.Namespace) -> None:
    try:
        config = load_config(
            _resolve_config_path(args.config),
            environ=os.environ,
            repo_override=args.repo,
            package_file_override=args.package_file,
        )
        upgrade_source = load_upgrades(args.upgrades)
    except (ConfigError, UpgradeSourceError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    configure_logging("high" if args.verbose else config.runtime.verbose)
    sequencer = BatchSequencer(
        config,
        gateways=_build_gateways(config),
        upgrade_source=upgrade_source,
    )
    summary = sequencer.run()
    print(summary.render())


def _cmd_render(args: argparse.Namespace) -> None:
    try:
        templates = load_template_config(_resolve_config_path(args.config))
        upgrade_source = load_upgrades(args.upgrades)
    except (ConfigError, UpgradeSourceError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    for candidate in upgrade_source.candidates:
        change_set = render_change_set(candidate.upgrade, templates)
        print(
            f"repo={candidate.repo_full_name} package_file={candidate.package_file} "
            f"dep_name={candidate.upgrade.dep_name}"
        )
        print(f"branch={change_set.branch_name}")
        print(f"pr_title={change_set.pr_title}")
        print(f"commit_message={change_set.commit_message}")
        print()


def _resolve_config_path(path: Path | None) -> Path | None:
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return path
    if DEFAULT_CONFIG_PATH.exists():
        return DEFAULT_CONFIG_PATH
    return None


def _build_gateways(config: AppConfig) -> dict[str, GitHubGateway]:
    return {
        repo.full_name: GitHubGateway(repo.owner, repo.name, token=config.runtime.token)
        for repo in config.repos
    }
