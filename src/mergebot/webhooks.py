from __future__ import annotations

from http import HTTPStatus
import logging
from typing import cast, get_args

from mergebot.commands import MERGE_COMMAND, is_merge_command
from mergebot.merge_command import MergeCoordinator
from mergebot.models import (
    Branch,
    CommitState,
    Issue,
    IssueComment,
    Repository,
    StatusEvent,
    User,
)
from mergebot.observability import log_event
from mergebot.responses import ErrorResponse, Response, SuccessResponse


LOGGER = logging.getLogger("mergebot.webhooks")


class PayloadError(ValueError):
    pass


def handle_event(
    event_type: str,
    payload: object,
    coordinator: MergeCoordinator,
    *,
    merge_command: str = MERGE_COMMAND,
) -> Response:
    try:
        if event_type == "issue_comment":
            issue_comment = parse_issue_comment(payload)
            if issue_comment is None or not is_merge_command(
                issue_comment.body, command=merge_command
            ):
                return SuccessResponse()
            return coordinator.handle_merge_command(issue_comment)
        if event_type == "status":
            return coordinator.handle_status_event(parse_status_event(payload))
    except PayloadError as exc:
        return invalid_payload(event_type, exc)
    log_event(LOGGER, "webhook_event_ignored", event_type=event_type)
    return SuccessResponse()


def invalid_payload(event_type: str, exc: ValueError) -> ErrorResponse:
    """A 400 for a delivery that is not valid JSON or lacks the fields we read."""
    log_event(
        LOGGER,
        "webhook_payload_invalid",
        level=logging.WARNING,
        event_type=event_type,
        error=exc,
    )
    return ErrorResponse(
        error=exc,
        status_code=int(HTTPStatus.BAD_REQUEST),
        message=f"Invalid {event_type} payload: {exc}",
    )


def parse_issue_comment(payload: object) -> IssueComment | None:
    """Return the comment event, or None for edits, deletions and plain issues."""
    payload_obj = _require_object(payload, field="payload")
    if payload_obj.get("action", "created") != "created":
        return None
    issue_obj = _require_object(payload_obj.get("issue"), field="issue")
    if issue_obj.get("pull_request") is None:
        return None
    comment_obj = _require_object(payload_obj.get("comment"), field="comment")
    user_obj = _require_object(issue_obj.get("user"), field="issue.user")
    return IssueComment(
        issue=Issue(
            number=_require_int(issue_obj.get("number"), field="issue.number"),
            repository=_parse_repository(payload_obj.get("repository")),
            user=User(login=_require_str(user_obj.get("login"), field="issue.user.login")),
        ),
        body=_optional_str(comment_obj.get("body"), field="comment.body"),
    )


def parse_status_event(payload: object) -> StatusEvent:
    payload_obj = _require_object(payload, field="payload")
    branches_payload = payload_obj.get("branches", [])
    if not isinstance(branches_payload, list):
        raise PayloadError("branches must be a list")

    branches: list[Branch] = []
    for index, item in enumerate(branches_payload):
        branch_obj = _require_object(item, field=f"branches[{index}]")
        commit_obj = _require_object(branch_obj.get("commit"), field=f"branches[{index}].commit")
        branches.append(
            Branch(
                name=_require_str(branch_obj.get("name"), field=f"branches[{index}].name"),
                sha=_require_str(commit_obj.get("sha"), field=f"branches[{index}].commit.sha"),
            )
        )
    return StatusEvent(
        sha=_require_str(payload_obj.get("sha"), field="sha"),
        state=_require_commit_state(payload_obj.get("state")),
        repository=_parse_repository(payload_obj.get("repository")),
        branches=tuple(branches),
    )


def _parse_repository(value: object) -> Repository:
    repo_obj = _require_object(value, field="repository")
    owner_obj = _require_object(repo_obj.get("owner"), field="repository.owner")
    return Repository(
        owner=_require_str(owner_obj.get("login"), field="repository.owner.login"),
        name=_require_str(repo_obj.get("name"), field="repository.name"),
    )


def _require_commit_state(value: object) -> CommitState:
    if value not in get_args(CommitState):
        raise PayloadError(f"state must be one of {', '.join(get_args(CommitState))}")
    return cast(CommitState, value)


def _require_object(value: object, *, field: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise PayloadError(f"{field} must be an object")
    return cast(dict[str, object], value)


def _require_str(value: object, *, field: str) -> str:
    if not isinstance(value, str) or not value:
        raise PayloadError(f"{field} must be a non-empty string")
    return value


def _optional_str(value: object, *, field: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise PayloadError(f"{field} must be a string")
    return value


def _require_int(value: object, *, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise PayloadError(f"{field} must be an integer")
    return value
