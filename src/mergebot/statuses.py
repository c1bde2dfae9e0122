from __future__ import annotations

from collections.abc import Iterable
import logging
from typing import Final

from mergebot.collaborators import Repositories
from mergebot.models import PullRequestSnapshot, RepoStatus, Repository
from mergebot.observability import log_event
from mergebot.responses import ErrorResponse, bad_gateway


LOGGER = logging.getLogger("mergebot.statuses")
SQUASH_CONTEXT: Final[str] = "review/squash"


def get_statuses(
    repository: Repository,
    pr: PullRequestSnapshot,
    repositories: Repositories,
) -> tuple[str, tuple[RepoStatus, ...]] | ErrorResponse:
    try:
        state, statuses = repositories.combined_status(repository, pr.head_sha)
    except Exception as exc:  # noqa: BLE001
        log_event(
            LOGGER,
            "statuses_fetch_failed",
            level=logging.ERROR,
            repo=repository,
            pr_number=pr.number,
            head_sha=pr.head_sha,
            error=exc,
        )
        return bad_gateway(
            exc, f"Failed to get the statuses for PR {repository.full_name}#{pr.number}"
        )
    log_event(
        LOGGER,
        "statuses_fetched",
        repo=repository,
        pr_number=pr.number,
        state=state,
        count=len(statuses),
    )
    return state, statuses


def contains_pending_squash_status(
    statuses: Iterable[RepoStatus], *, squash_context: str = SQUASH_CONTEXT
) -> bool:
    return any(
        status.context == squash_context and status.state == "pending" for status in statuses
    )
