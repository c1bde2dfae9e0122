from __future__ import annotations

import logging
from typing import Final

from mergebot.collaborators import (
    GitRepos,
    Issues,
    MergeConflictError,
    PullRequests,
    Repositories,
    Search,
)
from mergebot.commands import new_pull_requests_possibly_ready_for_merging
from mergebot.models import (
    Issue,
    IssueComment,
    PullRequestSnapshot,
    Repository,
    StatusEvent,
    User,
)
from mergebot.observability import log_event
from mergebot.responses import ErrorResponse, Response, SuccessResponse, bad_gateway
from mergebot.statuses import SQUASH_CONTEXT, contains_pending_squash_status, get_statuses


LOGGER = logging.getLogger("mergebot.merge_command")
MERGING_LABEL: Final[str] = "merging"
SQUASH_FAILURE_DESCRIPTION: Final[str] = (
    "Failed to automatically squash the fixup! and squash! commits. Please squash manually"
)


class MergeCoordinator:
    """Drives a pull request from a `!merge` request to merged.

    The merging label is the only state kept between events: it is added
    when a command is accepted and removed once the PR is merged, found
    already merged, or reported as conflicting.
    """

    def __init__(
        self,
        *,
        issues: Issues,
        pull_requests: PullRequests,
        repositories: Repositories,
        search: Search,
        git_repos: GitRepos,
        merging_label: str = MERGING_LABEL,
        squash_context: str = SQUASH_CONTEXT,
    ) -> None:
        self._issues = issues
        self._pull_requests = pull_requests
        self._repositories = repositories
        self._search = search
        self._git_repos = git_repos
        self._merging_label = merging_label
        self._squash_context = squash_context

    def handle_merge_command(self, issue_comment: IssueComment) -> Response:
        issue = issue_comment.issue
        log_event(LOGGER, "merge_command_received", pr=issue, author=issue.user.login)

        err_resp = self._add_label(issue)
        if err_resp is not None:
            return err_resp

        pr = self._get_pr(issue)
        if isinstance(pr, ErrorResponse):
            return pr
        if pr.merged:
            log_event(LOGGER, "pr_already_merged", pr=issue, label=self._merging_label)
            err_resp = self._remove_label(issue)
            if err_resp is not None:
                return err_resp
            return SuccessResponse()
        if pr.mergeable is False:
            # Only the author can fix a branch-level conflict, and no status
            # event will change that. Stay quiet and keep the label.
            log_event(LOGGER, "pr_not_mergeable", pr=issue)
            return SuccessResponse()

        statuses = get_statuses(issue.repository, pr, self._repositories)
        if isinstance(statuses, ErrorResponse):
            return statuses
        state, repo_statuses = statuses
        if state == "pending" and contains_pending_squash_status(
            repo_statuses, squash_context=self._squash_context
        ):
            return self._squash_and_report_failure(issue, pr)
        if state != "success":
            log_event(LOGGER, "pr_statuses_not_successful", pr=issue, state=state)
            return SuccessResponse()

        err_resp = self.merge_ready_pr(issue)
        if err_resp is not None:
            return err_resp
        return SuccessResponse(f"Successfully merged PR {issue.full_name}")

    def handle_status_event(self, status_event: StatusEvent) -> Response:
        log_event(
            LOGGER,
            "status_event_received",
            repo=status_event.repository,
            sha=status_event.sha,
            state=status_event.state,
            branch_count=len(status_event.branches),
        )
        if not new_pull_requests_possibly_ready_for_merging(status_event):
            return SuccessResponse()
        return self.merge_pull_requests_ready_for_merging(status_event)

    def merge_pull_requests_ready_for_merging(self, status_event: StatusEvent) -> Response:
        repository = status_event.repository
        # The SHA does not have to be the head of the returned PRs. If one
        # commit is in two labelled PRs with a success status, both get
        # merged: each of them matches every merge criterion on its own.
        query = (
            f'{status_event.sha} label:"{self._merging_label}" is:open '
            f"repo:{repository.full_name} status:success"
        )
        try:
            results = self._search.issues(query)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "merge_candidates_search_failed",
                level=logging.ERROR,
                query=query,
                error=exc,
            )
            return bad_gateway(exc, f"Searching for issues with query '{query}' failed")
        log_event(
            LOGGER,
            "merge_candidates_found",
            repo=repository,
            sha=status_event.sha,
            count=len(results),
        )

        final_err_resp: ErrorResponse | None = None
        for result in results:
            issue = Issue(
                number=result.number,
                repository=repository,
                user=User(login=result.user_login),
            )
            err_resp = self.merge_ready_pr(issue)
            if err_resp is None:
                continue
            log_event(
                LOGGER,
                "merge_candidate_failed",
                level=logging.WARNING,
                pr=issue,
                message=err_resp.message,
                error=err_resp.error,
            )
            if final_err_resp is not None:
                log_event(
                    LOGGER,
                    "merge_error_superseded",
                    level=logging.WARNING,
                    message=final_err_resp.message,
                    error=final_err_resp.error,
                )
            final_err_resp = err_resp
        if final_err_resp is not None:
            return final_err_resp
        return SuccessResponse(f"Successfully merged {len(results)} PRs")

    def merge_ready_pr(self, issue: Issue) -> ErrorResponse | None:
        try:
            self._pull_requests.merge(issue.repository, issue.number)
        except MergeConflictError:
            return self._handle_merge_conflict(issue)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "pr_merge_failed",
                level=logging.ERROR,
                pr=issue,
                error=exc,
            )
            return bad_gateway(exc, f"Failed to merge PR {issue.full_name}")
        log_event(LOGGER, "pr_merged", pr=issue, label=self._merging_label)
        return self._remove_label(issue)

    def _handle_merge_conflict(self, issue: Issue) -> ErrorResponse | None:
        log_event(
            LOGGER,
            "pr_merge_conflict",
            level=logging.WARNING,
            pr=issue,
            label=self._merging_label,
        )
        remove_label_err_resp = self._remove_label(issue)
        if remove_label_err_resp is not None:
            log_event(
                LOGGER,
                "merge_conflict_label_kept",
                level=logging.WARNING,
                pr=issue,
                label=self._merging_label,
            )

        message = (
            "I'm unable to merge this PR because of a merge conflict. "
            f"@{issue.user.login}, can you please take a look?"
        )
        try:
            self._issues.comment(message, issue.repository, issue.number)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "merge_conflict_notification_failed",
                level=logging.ERROR,
                pr=issue,
                error=exc,
            )
            return bad_gateway(
                exc,
                f"Failed to notify the author of PR {issue.full_name} about the merge conflict",
            )
        # The author was notified, but a stale label would keep the PR in
        # the re-trigger search.
        return remove_label_err_resp

    def _squash_and_report_failure(self, issue: Issue, pr: PullRequestSnapshot) -> Response:
        log_event(LOGGER, "squash_started", pr=issue, head_sha=pr.head_sha)
        try:
            self._git_repos.squash(issue.repository, pr)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "squash_failed",
                level=logging.ERROR,
                pr=issue,
                head_sha=pr.head_sha,
                error=exc,
            )
            status_err_resp = self._report_squash_failure(issue.repository, pr)
            if status_err_resp is not None:
                return status_err_resp
            return bad_gateway(exc, f"Failed to squash PR {issue.full_name}")
        return SuccessResponse(f"Squashed PR {issue.full_name}")

    def _report_squash_failure(
        self, repository: Repository, pr: PullRequestSnapshot
    ) -> ErrorResponse | None:
        try:
            self._repositories.create_status(
                repository,
                pr.head_sha,
                state="failure",
                context=self._squash_context,
                description=SQUASH_FAILURE_DESCRIPTION,
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "squash_status_update_failed",
                level=logging.ERROR,
                repo=repository,
                head_sha=pr.head_sha,
                context=self._squash_context,
                error=exc,
            )
            return bad_gateway(
                exc,
                f"Failed to set the '{self._squash_context}' status on commit {pr.head_sha}",
            )
        return None

    def _get_pr(self, issue: Issue) -> PullRequestSnapshot | ErrorResponse:
        try:
            return self._pull_requests.get(issue.repository, issue.number)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "pr_fetch_failed",
                level=logging.ERROR,
                pr=issue,
                error=exc,
            )
            return bad_gateway(exc, f"Getting PR {issue.full_name} failed")

    def _add_label(self, issue: Issue) -> ErrorResponse | None:
        try:
            self._issues.add_label(issue.repository, issue.number, self._merging_label)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "label_add_failed",
                level=logging.ERROR,
                pr=issue,
                label=self._merging_label,
                error=exc,
            )
            return bad_gateway(
                exc, f"Failed to add the '{self._merging_label}' label to PR {issue.full_name}"
            )
        return None

    def _remove_label(self, issue: Issue) -> ErrorResponse | None:
        try:
            self._issues.remove_label(issue.repository, issue.number, self._merging_label)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "label_remove_failed",
                level=logging.ERROR,
                pr=issue,
                label=self._merging_label,
                error=exc,
            )
            return bad_gateway(
                exc,
                f"Failed to remove the '{self._merging_label}' label from PR {issue.full_name}",
            )
        return None
