from __future__ import annotations

from typing import Final

from mergebot.models import StatusEvent


MERGE_COMMAND: Final[str] = "!merge"


def is_merge_command(comment: str, *, command: str = MERGE_COMMAND) -> bool:
    return comment.strip() == command


def is_status_for_branch_head(status_event: StatusEvent) -> bool:
    return any(branch.sha == status_event.sha for branch in status_event.branches)


def new_pull_requests_possibly_ready_for_merging(status_event: StatusEvent) -> bool:
    # Only a success status on a branch head can flip a PR's combined status
    # to success.
    return status_event.state == "success" and is_status_for_branch_head(status_event)
