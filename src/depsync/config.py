from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
import tomllib
from typing import cast

from depsync.observability import VerboseMode, normalize_verbose_mode
from depsync.templates import TemplateConfig, template_names, unknown_placeholders


TOKEN_ENV_VAR = "DEPSYNC_TOKEN"
VERBOSE_ENV_VAR = "DEPSYNC_VERBOSE"
DEFAULT_PACKAGE_FILE = "package.json"


@dataclass(frozen=True)
class RuntimeConfig:
    token: str
    verbose: VerboseMode | None = None


@dataclass(frozen=True)
class RepoConfig:
    owner: str
    name: str
    package_files: tuple[str, ...] = (DEFAULT_PACKAGE_FILE,)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repos: tuple[RepoConfig, ...]
    templates: TemplateConfig = field(default_factory=TemplateConfig)


class ConfigError(ValueError):
    pass


def load_config(
    path: Path | None,
    *,
    environ: Mapping[str, str] | None = None,
    repo_override: str | None = None,
    package_file_override: str | None = None,
) -> AppConfig:
    """Merge defaults, the TOML file, environment variables and CLI overrides.

    ``repo_override`` replaces the configured repository list with a single
    repository, mirroring the positional ``REPO [PACKAGE_FILE]`` arguments.
    """
    data: dict[str, object] = {}
    if path is not None:
        data = _read_toml(path)
    env = environ if environ is not None else {}

    runtime_data = _optional_table(data, "runtime") or {}
    templates_data = _optional_table(data, "templates") or {}

    token = env.get(TOKEN_ENV_VAR) or _optional_str(runtime_data, "token")
    if not token:
        raise ConfigError(
            f"A GitHub token must be configured (runtime.token or {TOKEN_ENV_VAR})"
        )

    raw_verbose = env.get(VERBOSE_ENV_VAR) or _optional_str(runtime_data, "verbose")
    try:
        verbose = normalize_verbose_mode(raw_verbose)
    except ValueError as exc:
        raise ConfigError("runtime.verbose must be one of: low, high") from exc

    if repo_override is not None:
        owner, name = _split_full_name(repo_override, key="repository argument")
        package_files = (package_file_override or DEFAULT_PACKAGE_FILE,)
        repos: tuple[RepoConfig, ...] = (
            RepoConfig(owner=owner, name=name, package_files=package_files),
        )
    else:
        repos = _load_repo_configs(data.get("repositories"))
    if not repos:
        raise ConfigError("At least one repository must be configured")

    return AppConfig(
        runtime=RuntimeConfig(token=token, verbose=verbose),
        repos=repos,
        templates=_load_templates(templates_data),
    )


def load_template_config(path: Path | None) -> TemplateConfig:
    if path is None:
        return TemplateConfig()
    data = _read_toml(path)
    return _load_templates(_optional_table(data, "templates") or {})


def _load_repo_configs(raw: object) -> tuple[RepoConfig, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError("repositories must be a list of strings or tables")

    repos: list[RepoConfig] = []
    for index, entry in enumerate(raw):
        if isinstance(entry, str):
            owner, name = _split_full_name(entry, key=f"repositories[{index}]")
            repos.append(RepoConfig(owner=owner, name=name))
            continue
        table = _require_repo_table(entry, table_name=f"repositories[{index}]")
        owner, name = _split_full_name(
            _require_str(table, "name"), key=f"repositories[{index}].name"
        )
        package_files = _tuple_of_str(table, "package_files") or (DEFAULT_PACKAGE_FILE,)
        repos.append(RepoConfig(owner=owner, name=name, package_files=package_files))
    _ensure_unique_full_names(repos)
    return tuple(repos)


def _load_templates(data: dict[str, object]) -> TemplateConfig:
    known = template_names()
    overrides: dict[str, str] = {}
    for key in sorted(data):
        if key not in known:
            raise ConfigError(f"Unknown template {key!r}; expected one of: {', '.join(known)}")
        value = _require_str(data, key)
        unknown = unknown_placeholders(value)
        if unknown:
            raise ConfigError(
                f"templates.{key} uses unknown placeholders: {', '.join(unknown)}"
            )
        overrides[key] = value
    return TemplateConfig(**overrides)


def _read_toml(path: Path) -> dict[str, object]:
    with path.open("rb") as fh:
        try:
            return tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"{path} is not valid TOML: {exc}") from exc


def _split_full_name(value: str, *, key: str) -> tuple[str, str]:
    owner, sep, name = value.strip().partition("/")
    if not sep or not owner or not name or "/" in name:
        raise ConfigError(f"{key} must look like 'owner/name', got {value!r}")
    return owner, name


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_repo_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a string or a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item:
            raise ConfigError(f"{key} must be a list of strings")
        if item not in out:
            out.append(item)
    return tuple(out)


def _ensure_unique_full_names(repos: list[RepoConfig]) -> None:
    seen: set[str] = set()
    for repo in repos:
        if repo.full_name in seen:
            raise ConfigError(f"Duplicate repository {repo.full_name!r}")
        seen.add(repo.full_name)
