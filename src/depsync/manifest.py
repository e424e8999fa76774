from __future__ import annotations

import copy
import json
import re
from typing import cast


_JSON_STRING = r'"((?:[^"\\]|\\.)*)"'
_SECTION_PATTERN = re.compile(rf"{_JSON_STRING}\s*:\s*\{{")
_ENTRY_PATTERN = re.compile(rf"{_JSON_STRING}\s*:\s*{_JSON_STRING}")


class ManifestPatchError(ValueError):
    pass


def read_dependency_version(content: str, dep_type: str, dep_name: str) -> str | None:
    manifest = _load_manifest(content)
    section = manifest.get(dep_type)
    if not isinstance(section, dict):
        return None
    value = section.get(dep_name)
    if not isinstance(value, str):
        return None
    return value


def set_dependency_version(content: str, dep_type: str, dep_name: str, new_version: str) -> str:
    manifest = _load_manifest(content)
    section = manifest.get(dep_type)
    if not isinstance(section, dict):
        raise ManifestPatchError(f"Section {dep_type!r} not found in manifest")
    if dep_name not in section:
        raise ManifestPatchError(f"Dependency {dep_name!r} not found in section {dep_type!r}")
    old_value = section[dep_name]
    if not isinstance(old_value, str):
        raise ManifestPatchError(f"Value of {dep_type}.{dep_name} must be a string")
    if old_value == new_version:
        return content

    expected = copy.deepcopy(manifest)
    cast(dict[str, object], expected[dep_type])[dep_name] = new_version

    replacement = _json_string(new_version)

    for section_match in _SECTION_PATTERN.finditer(content):
        if _decode_json_string(section_match.group(1)) != dep_type:
            continue
        for entry_match in _ENTRY_PATTERN.finditer(content, section_match.end()):
            if _decode_json_string(entry_match.group(1)) != dep_name:
                continue
            if _decode_json_string(entry_match.group(2)) != old_value:
                continue
            candidate = (
                content[: entry_match.start(2) - 1]
                + replacement
                + content[entry_match.end(2) + 1 :]
            )
            if _parses_to(candidate, expected):
                return candidate

    raise ManifestPatchError(
        f"Could not locate {dep_type}.{dep_name} in manifest text for replacement"
    )


def _load_manifest(content: str) -> dict[str, object]:
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ManifestPatchError(f"Manifest is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ManifestPatchError("Manifest must be a JSON object")
    return cast(dict[str, object], parsed)


def _json_string(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _decode_json_string(raw: str) -> str | None:
    try:
        decoded = json.loads(f'"{raw}"')
    except json.JSONDecodeError:
        return None
    return decoded if isinstance(decoded, str) else None


def _parses_to(candidate: str, expected: dict[str, object]) -> bool:
    try:
        return bool(json.loads(candidate) == expected)
    except json.JSONDecodeError:
        return False
