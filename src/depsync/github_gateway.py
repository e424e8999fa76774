from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import json
import logging
from typing import Literal, cast
from urllib.parse import quote, urlencode

from depsync.models import GitHubErrorKind, ManifestFile, PullRequest, PullRequestSnapshot
from depsync.observability import log_event
from depsync.shell import CommandError, run


LOGGER = logging.getLogger("depsync.github_gateway")
_REFERENCE_EXISTS_MESSAGE = "reference already exists"


class GitHubApiError(RuntimeError):
    """GitHub request failure classified by ``kind``."""

    def __init__(
        self,
        message: str,
        *,
        kind: GitHubErrorKind,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind: GitHubErrorKind = kind
        self.status_code = status_code
        self.message = message


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    token: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def get_default_branch(self) -> str:
        payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}")
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for repository")
        branch = _as_string(payload_obj.get("default_branch"))
        if not branch:
            raise RuntimeError("Unexpected GitHub response: missing default_branch")
        log_event(LOGGER, "github_read", endpoint="repository", default_branch=branch)
        return branch

    def get_branch_sha(self, branch: str) -> str:
        path = f"/repos/{self.owner}/{self.name}/git/refs/heads/{quote(branch, safe='/')}"
        payload = self._api_json("GET", path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for git ref")
        target = _as_object_dict(payload_obj.get("object"))
        sha = _as_string(target.get("sha") if target else None)
        if not sha:
            raise RuntimeError("Unexpected GitHub response: missing git ref sha")
        log_event(LOGGER, "github_read", endpoint="git_ref", branch=branch, sha=sha)
        return sha

    def get_file(self, path: str, *, ref: str) -> ManifestFile:
        api_path = (
            f"/repos/{self.owner}/{self.name}/contents/{quote(path)}?{urlencode({'ref': ref})}"
        )
        payload = self._api_json("GET", api_path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for file contents")
        sha = _as_string(payload_obj.get("sha"))
        encoding = _as_string(payload_obj.get("encoding"))
        if encoding and encoding != "base64":
            raise RuntimeError(f"Unexpected GitHub file encoding: {encoding!r}")
        try:
            content = base64.b64decode(_as_string(payload_obj.get("content"))).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise RuntimeError(f"Unable to decode contents of {path} at {ref}") from exc
        log_event(LOGGER, "github_read", endpoint="contents", path=path, ref=ref, sha=sha)
        return ManifestFile(path=path, sha=sha, content=content)

    def create_branch(self, branch: str, *, base_sha: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/git/refs"
        self._api_json(
            "POST",
            path,
            payload={"ref": f"refs/heads/{branch}", "sha": base_sha},
        )
        log_event(LOGGER, "github_branch_created", branch=branch, base_sha=base_sha)

    def write_file(
        self,
        path: str,
        *,
        branch: str,
        sha: str,
        content: str,
        message: str,
    ) -> str:
        api_path = f"/repos/{self.owner}/{self.name}/contents/{quote(path)}"
        payload = self._api_json(
            "PUT",
            api_path,
            payload={
                "message": message,
                "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
                "sha": sha,
                "branch": branch,
            },
        )
        payload_obj = _as_object_dict(payload)
        content_obj = _as_object_dict(payload_obj.get("content")) if payload_obj else None
        new_sha = _as_string(content_obj.get("sha") if content_obj else None)
        log_event(
            LOGGER,
            "github_file_written",
            path=path,
            branch=branch,
            previous_sha=sha,
            sha=new_sha,
        )
        return new_sha

    def has_closed_pull_request(self, *, head: str, title: str) -> bool:
        for pr in self._list_pull_requests_by_head(head=head, state="closed"):
            if pr.title == title:
                return True
        return False

    def find_pull_request_by_head(self, *, head: str) -> PullRequestSnapshot | None:
        candidates = self._list_pull_requests_by_head(head=head, state="open")
        if not candidates:
            return None
        return max(candidates, key=lambda pr: pr.number)

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        path = f"/repos/{self.owner}/{self.name}/pulls"
        payload = self._api_json(
            "POST",
            path,
            payload={"title": title, "head": head, "base": base, "body": body},
        )
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for PR")
        number = _as_int(payload_obj.get("number"), field="number")
        html_url = _as_string(payload_obj.get("html_url"))
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=number,
            pr_url=html_url,
            base=base,
            head=head,
        )
        return PullRequest(number=number, html_url=html_url)

    def update_pull_request(self, pr_number: int, *, title: str, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        self._api_json("PATCH", path, payload={"title": title, "body": body})
        log_event(
            LOGGER,
            "github_pr_updated",
            repo_full_name=self.full_name,
            pr_number=pr_number,
        )

    def _list_pull_requests_by_head(
        self, *, head: str, state: Literal["open", "closed"]
    ) -> list[PullRequestSnapshot]:
        query = urlencode({"state": state, "head": f"{self.owner}:{head}", "per_page": "100"})
        payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/pulls?{query}")
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected GitHub response: expected list for pull request lookup")

        pull_requests: list[PullRequestSnapshot] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            pull_requests.append(
                PullRequestSnapshot(
                    number=_as_int(item_obj.get("number"), field="number"),
                    title=_as_string(item_obj.get("title")),
                    body=_as_string(item_obj.get("body")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            head=head,
            state=state,
            count=len(pull_requests),
        )
        return pull_requests

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        env = {"GH_TOKEN": self.token} if self.token else None
        stderr = ""
        try:
            raw = run(cmd, input_text=stdin_payload, env=env)
        except CommandError as exc:
            # gh exits non-zero on HTTP error statuses but still prints the response.
            raw = exc.stdout
            stderr = exc.stderr
            if not raw.strip():
                log_event(
                    LOGGER,
                    "github_request_failed",
                    level=logging.WARNING,
                    method=method_upper,
                    path=path,
                    exit_code=exc.returncode,
                    stderr=_preview_for_log(stderr),
                )
                raise GitHubApiError(
                    f"GitHub {method_upper} {path} failed: gh exited with status "
                    f"{exc.returncode}: {_preview_for_log(stderr)}",
                    kind="other",
                ) from exc

        try:
            status_code, body = _parse_http_response(raw)
        except RuntimeError as exc:
            log_event(
                LOGGER,
                "github_request_failed",
                level=logging.WARNING,
                method=method_upper,
                path=path,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
                stderr=_preview_for_log(stderr),
            )
            raise GitHubApiError(
                f"GitHub {method_upper} {path} failed: {exc}", kind="other"
            ) from exc

        if status_code < 200 or status_code >= 300:
            message = _error_message(body)
            kind = _classify_error(status_code, message)
            log_event(
                LOGGER,
                "github_request_failed",
                level=logging.WARNING,
                method=method_upper,
                path=path,
                status_code=status_code,
                kind=kind,
                error=message,
            )
            raise GitHubApiError(
                f"GitHub {method_upper} {path} failed with status {status_code}: {message}",
                kind=kind,
                status_code=status_code,
            )

        if not body.strip():
            return None
        return json.loads(body)


def _classify_error(status_code: int, message: str) -> GitHubErrorKind:
    if status_code == 422 and _REFERENCE_EXISTS_MESSAGE in message.lower():
        return "already_exists"
    if status_code == 409:
        return "conflict"
    if status_code == 404:
        return "not_found"
    return "other"


def _error_message(body: str) -> str:
    stripped = body.strip()
    if not stripped:
        return "<empty>"
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        return stripped
    parsed_obj = _as_object_dict(parsed)
    if parsed_obj is not None and isinstance(parsed_obj.get("message"), str):
        return cast(str, parsed_obj["message"])
    return stripped


def _parse_http_response(raw: str) -> tuple[int, str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    # Headers end at the first blank line after the final status line.
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        if lines[index] == "":
            body_start = index + 1
            break

    body = "\n".join(lines[body_start:])
    return status_code, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")
