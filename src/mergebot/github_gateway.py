from __future__ import annotations

import json
import logging
from typing import cast
from urllib.parse import quote, urlencode

from mergebot.collaborators import (
    Issues,
    MergeConflictError,
    PullRequests,
    Repositories,
    Search,
)
from mergebot.models import (
    CommitState,
    IssueSearchResult,
    PullRequestSnapshot,
    RepoStatus,
    Repository,
)
from mergebot.observability import log_event
from mergebot.shell import execute, preview


LOGGER = logging.getLogger("mergebot.github_gateway")
_SEARCH_PAGE_SIZE = 100
# 409: head branch modified while merging. 405 is shared with branch protection
# refusals (missing reviews, required checks), which only the message tells apart.
_HEAD_MODIFIED_STATUS = 409
_NOT_MERGEABLE_STATUS = 405
_NOT_MERGEABLE_MESSAGE = "not mergeable"


class GitHubApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubGateway(Issues, PullRequests, Repositories, Search):
    """GitHub REST calls made through the authenticated `gh` CLI."""

    def add_label(self, repository: Repository, issue_number: int, label: str) -> None:
        path = f"/repos/{repository.full_name}/issues/{issue_number}/labels"
        self._api_json("POST", path, payload={"labels": [label]})
        log_event(
            LOGGER,
            "github_write",
            endpoint="issue_labels_add",
            repo=repository,
            issue_number=issue_number,
            label=label,
        )

    def remove_label(self, repository: Repository, issue_number: int, label: str) -> None:
        path = (
            f"/repos/{repository.full_name}/issues/{issue_number}/labels/{quote(label, safe='')}"
        )
        try:
            self._api_json("DELETE", path)
        except GitHubApiError as exc:
            if exc.status_code != 404:
                raise
            # Already gone; the desired end state holds.
            log_event(
                LOGGER,
                "github_label_already_absent",
                repo=repository,
                issue_number=issue_number,
                label=label,
            )
            return
        log_event(
            LOGGER,
            "github_write",
            endpoint="issue_labels_remove",
            repo=repository,
            issue_number=issue_number,
            label=label,
        )

    def comment(self, message: str, repository: Repository, issue_number: int) -> None:
        path = f"/repos/{repository.full_name}/issues/{issue_number}/comments"
        self._api_json("POST", path, payload={"body": message})
        log_event(
            LOGGER,
            "github_write",
            endpoint="issue_comments",
            repo=repository,
            issue_number=issue_number,
        )

    def get(self, repository: Repository, pr_number: int) -> PullRequestSnapshot:
        path = f"/repos/{repository.full_name}/pulls/{pr_number}"
        payload_obj = _object(self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for pull request")

        head = _object(payload_obj.get("head"))
        base = _object(payload_obj.get("base"))
        if head is None or base is None:
            raise GitHubApiError("Unexpected GitHub response: missing pull request head/base")
        head_repo = _object(head.get("repo"))
        base_repo = _object(base.get("repo"))
        # null while GitHub is still computing mergeability.
        mergeable = payload_obj.get("mergeable")

        snapshot = PullRequestSnapshot(
            number=_integer(payload_obj.get("number"), field="number"),
            merged=_boolean(payload_obj.get("merged"), field="merged"),
            mergeable=None if mergeable is None else _boolean(mergeable, field="mergeable"),
            head_sha=_text(head.get("sha")),
            head_ref=_text(head.get("ref")),
            base_ref=_text(base.get("ref")),
            head_clone_url=_optional_text(head_repo.get("clone_url")) if head_repo else None,
            base_clone_url=_optional_text(base_repo.get("clone_url")) if base_repo else None,
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            repo=repository,
            pr_number=snapshot.number,
            merged=snapshot.merged,
            mergeable=snapshot.mergeable,
        )
        return snapshot

    def merge(self, repository: Repository, pr_number: int) -> None:
        path = f"/repos/{repository.full_name}/pulls/{pr_number}/merge"
        try:
            self._api_json("PUT", path, payload={})
        except GitHubApiError as exc:
            if _is_merge_conflict(exc):
                raise MergeConflictError(str(exc)) from exc
            raise
        log_event(
            LOGGER,
            "github_write",
            endpoint="pull_request_merge",
            repo=repository,
            pr_number=pr_number,
        )

    def combined_status(
        self, repository: Repository, sha: str
    ) -> tuple[str, tuple[RepoStatus, ...]]:
        path = f"/repos/{repository.full_name}/commits/{sha}/status"
        payload_obj = _object(self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for combined status")
        statuses_payload = payload_obj.get("statuses")
        if not isinstance(statuses_payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected statuses list")

        state = _text(payload_obj.get("state")).strip().lower()
        statuses: list[RepoStatus] = []
        for item in statuses_payload:
            item_obj = _object(item)
            if item_obj is None:
                continue
            statuses.append(
                RepoStatus(
                    context=_text(item_obj.get("context")),
                    state=_text(item_obj.get("state")).strip().lower(),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="combined_status",
            repo=repository,
            sha=sha,
            state=state,
            count=len(statuses),
        )
        return state, tuple(statuses)

    def create_status(
        self,
        repository: Repository,
        sha: str,
        *,
        state: CommitState,
        context: str,
        description: str,
    ) -> None:
        path = f"/repos/{repository.full_name}/statuses/{sha}"
        self._api_json(
            "POST",
            path,
            payload={"state": state, "context": context, "description": description},
        )
        log_event(
            LOGGER,
            "github_write",
            endpoint="commit_status",
            repo=repository,
            sha=sha,
            state=state,
            context=context,
        )

    def issues(self, query: str) -> tuple[IssueSearchResult, ...]:
        results: list[IssueSearchResult] = []
        page = 1
        while True:
            params = urlencode({"q": query, "per_page": _SEARCH_PAGE_SIZE, "page": page})
            payload_obj = _object(self._api_json("GET", f"/search/issues?{params}"))
            if payload_obj is None:
                raise GitHubApiError("Unexpected GitHub response: expected object for search")
            items = payload_obj.get("items")
            if not isinstance(items, list):
                raise GitHubApiError("Unexpected GitHub response: expected search items list")

            for item in items:
                item_obj = _object(item)
                if item_obj is None:
                    continue
                user_obj = _object(item_obj.get("user"))
                results.append(
                    IssueSearchResult(
                        number=_integer(item_obj.get("number"), field="number"),
                        user_login=_text(user_obj.get("login") if user_obj else None),
                    )
                )
            total_count = payload_obj.get("total_count")
            if len(items) < _SEARCH_PAGE_SIZE:
                break
            if isinstance(total_count, int) and len(results) >= total_count:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="search_issues",
            query=query,
            count=len(results),
        )
        return tuple(results)

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)

        result = execute(cmd, input_text=stdin_payload)
        raw = result.stdout
        try:
            status_code, body = _split_http_response(raw)
        except GitHubApiError:
            log_event(
                LOGGER,
                "github_request_failed",
                level=logging.ERROR,
                method=method_upper,
                path=path,
                exit_code=result.returncode,
                stderr=preview(result.stderr),
            )
            raise
        if status_code < 200 or status_code >= 300:
            log_event(
                LOGGER,
                "github_request_failed",
                level=logging.WARNING,
                method=method_upper,
                path=path,
                status_code=status_code,
                body=preview(body),
            )
            message = body.strip() or "<empty>"
            raise GitHubApiError(
                f"GitHub API {method_upper} {path} failed with status {status_code}: {message}",
                status_code=status_code,
            )
        if not body.strip():
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise GitHubApiError(
                f"Unexpected GitHub response: invalid JSON for {method_upper} {path}",
                status_code=status_code,
            ) from exc


def _is_merge_conflict(exc: GitHubApiError) -> bool:
    if exc.status_code == _HEAD_MODIFIED_STATUS:
        return True
    return (
        exc.status_code == _NOT_MERGEABLE_STATUS
        and _NOT_MERGEABLE_MESSAGE in str(exc).lower()
    )


def _split_http_response(raw: str) -> tuple[int, str]:
    """Return the final status code and body of `gh api --include` output.

    Interim responses such as `100 Continue` come first, each followed by a
    blank line, so the last header block wins.
    """
    rest = raw.replace("\r\n", "\n")
    status_code: int | None = None
    while rest.startswith("HTTP/"):
        head, _, rest = rest.partition("\n\n")
        status_line = head.split("\n", 1)[0]
        parts = status_line.split(" ", 2)
        if len(parts) < 2 or not parts[1].isdigit():
            raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}")
        status_code = int(parts[1])
    if status_code is None:
        raise GitHubApiError("Unexpected GitHub response: missing HTTP status line")
    return status_code, rest


def _object(value: object) -> dict[str, object] | None:
    if isinstance(value, dict):
        return cast(dict[str, object], value)
    return None


def _text(value: object) -> str:
    return value if isinstance(value, str) else ""


def _optional_text(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _integer(value: object, *, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    return value


def _boolean(value: object, *, field: str) -> bool:
    if not isinstance(value, bool):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    return value
