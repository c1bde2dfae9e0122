from __future__ import annotations

from collections.abc import Iterator
import logging

import pytest

from mergebot.collaborators import (
    GitRepos,
    Issues,
    MergeConflictError,
    PullRequests,
    Repositories,
    Search,
)
from mergebot.merge_command import SQUASH_FAILURE_DESCRIPTION, MergeCoordinator
from mergebot.models import (
    Branch,
    Issue,
    IssueComment,
    IssueSearchResult,
    PullRequestSnapshot,
    RepoStatus,
    Repository,
    StatusEvent,
    User,
)
from mergebot.observability import configure_logging
from mergebot.responses import ErrorResponse, SuccessResponse


REPO = Repository(owner="owner", name="repo")


@pytest.fixture(autouse=True)
def restore_mergebot_logger_state() -> Iterator[None]:
    logger = logging.getLogger("mergebot")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate


class FakeGitHub(Issues, PullRequests, Repositories, Search):
    def __init__(self) -> None:
        self.calls: list[tuple[object, ...]] = []
        self.pr = _pr(7)
        self.state = "success"
        self.statuses: tuple[RepoStatus, ...] = (RepoStatus(context="ci/build", state="success"),)
        self.search_results: tuple[IssueSearchResult, ...] = ()
        self.add_label_error: Exception | None = None
        self.remove_label_error: Exception | None = None
        self.comment_error: Exception | None = None
        self.get_error: Exception | None = None
        self.status_error: Exception | None = None
        self.create_status_error: Exception | None = None
        self.search_error: Exception | None = None
        self.merge_errors: dict[int, Exception] = {}

    def add_label(self, repository: Repository, issue_number: int, label: str) -> None:
        self.calls.append(("add_label", repository, issue_number, label))
        if self.add_label_error is not None:
            raise self.add_label_error

    def remove_label(self, repository: Repository, issue_number: int, label: str) -> None:
        self.calls.append(("remove_label", repository, issue_number, label))
        if self.remove_label_error is not None:
            raise self.remove_label_error

    def comment(self, message: str, repository: Repository, issue_number: int) -> None:
        self.calls.append(("comment", repository, issue_number, message))
        if self.comment_error is not None:
            raise self.comment_error

    def get(self, repository: Repository, pr_number: int) -> PullRequestSnapshot:
        self.calls.append(("get", repository, pr_number))
        if self.get_error is not None:
            raise self.get_error
        return self.pr

    def merge(self, repository: Repository, pr_number: int) -> None:
        self.calls.append(("merge", repository, pr_number))
        error = self.merge_errors.get(pr_number)
        if error is not None:
            raise error

    def combined_status(
        self, repository: Repository, sha: str
    ) -> tuple[str, tuple[RepoStatus, ...]]:
        self.calls.append(("combined_status", repository, sha))
        if self.status_error is not None:
            raise self.status_error
        return self.state, self.statuses

    def create_status(
        self,
        repository: Repository,
        sha: str,
        *,
        state: str,
        context: str,
        description: str,
    ) -> None:
        self.calls.append(("create_status", repository, sha, state, context, description))
        if self.create_status_error is not None:
            raise self.create_status_error

    def issues(self, query: str) -> tuple[IssueSearchResult, ...]:
        self.calls.append(("search", query))
        if self.search_error is not None:
            raise self.search_error
        return self.search_results

    def call_names(self) -> list[object]:
        return [call[0] for call in self.calls]


class FakeGitRepos(GitRepos):
    def __init__(self) -> None:
        self.squashed: list[tuple[Repository, PullRequestSnapshot]] = []
        self.error: Exception | None = None

    def squash(self, repository: Repository, pr: PullRequestSnapshot) -> None:
        self.squashed.append((repository, pr))
        if self.error is not None:
            raise self.error


def _pr(
    number: int, *, merged: bool = False, mergeable: bool | None = True
) -> PullRequestSnapshot:
    return PullRequestSnapshot(
        number=number,
        merged=merged,
        mergeable=mergeable,
        head_sha="headsha",
        head_ref="feature",
        base_ref="main",
    )


def _comment(number: int = 7, login: str = "alice") -> IssueComment:
    return IssueComment(
        issue=Issue(number=number, repository=REPO, user=User(login=login)),
        body="!merge",
    )


def _coordinator(
    github: FakeGitHub, git_repos: FakeGitRepos | None = None, **kwargs: str
) -> MergeCoordinator:
    return MergeCoordinator(
        issues=github,
        pull_requests=github,
        repositories=github,
        search=github,
        git_repos=git_repos or FakeGitRepos(),
        **kwargs,
    )


def _status_event(*, state: str = "success", branch_sha: str = "headsha") -> StatusEvent:
    return StatusEvent(
        sha="headsha",
        state=state,
        repository=REPO,
        branches=(Branch(name="feature", sha=branch_sha),),
    )


def test_merge_command_merges_ready_pr() -> None:
    github = FakeGitHub()

    response = _coordinator(github).handle_merge_command(_comment(7))

    assert response == SuccessResponse("Successfully merged PR owner/repo#7")
    assert github.calls == [
        ("add_label", REPO, 7, "merging"),
        ("get", REPO, 7),
        ("combined_status", REPO, "headsha"),
        ("merge", REPO, 7),
        ("remove_label", REPO, 7, "merging"),
    ]


def test_merge_command_on_unmergeable_pr_only_adds_label() -> None:
    github = FakeGitHub()
    github.pr = _pr(9, mergeable=False)

    response = _coordinator(github).handle_merge_command(_comment(9))

    assert response == SuccessResponse()
    assert github.calls == [("add_label", REPO, 9, "merging"), ("get", REPO, 9)]


def test_merge_command_with_unknown_mergeability_evaluates_statuses() -> None:
    github = FakeGitHub()
    github.pr = _pr(7, mergeable=None)

    response = _coordinator(github).handle_merge_command(_comment(7))

    assert response == SuccessResponse("Successfully merged PR owner/repo#7")
    assert "merge" in github.call_names()


def test_merge_command_on_merged_pr_is_idempotent() -> None:
    github = FakeGitHub()
    github.pr = _pr(7, merged=True)
    coordinator = _coordinator(github)

    first = coordinator.handle_merge_command(_comment(7))
    second = coordinator.handle_merge_command(_comment(7))

    assert first == SuccessResponse()
    assert second == SuccessResponse()
    assert github.call_names() == ["add_label", "get", "remove_label"] * 2


def test_merge_command_on_merged_pr_reports_label_removal_failure() -> None:
    github = FakeGitHub()
    github.pr = _pr(7, merged=True)
    github.remove_label_error = RuntimeError("nope")

    response = _coordinator(github).handle_merge_command(_comment(7))

    assert isinstance(response, ErrorResponse)
    assert response.status_code == 502
    assert response.message == "Failed to remove the 'merging' label from PR owner/repo#7"


def test_merge_command_aborts_when_label_cannot_be_added() -> None:
    github = FakeGitHub()
    github.add_label_error = RuntimeError("down")

    response = _coordinator(github).handle_merge_command(_comment(7))

    assert isinstance(response, ErrorResponse)
    assert response.status_code == 502
    assert response.message == "Failed to add the 'merging' label to PR owner/repo#7"
    assert github.call_names() == ["add_label"]


def test_merge_command_reports_pr_fetch_failure() -> None:
    github = FakeGitHub()
    github.get_error = RuntimeError("down")

    response = _coordinator(github).handle_merge_command(_comment(7))

    assert isinstance(response, ErrorResponse)
    assert response.status_code == 502
    assert response.message == "Getting PR owner/repo#7 failed"
    assert github.call_names() == ["add_label", "get"]


def test_merge_command_reports_status_fetch_failure() -> None:
    github = FakeGitHub()
    github.status_error = RuntimeError("down")

    response = _coordinator(github).handle_merge_command(_comment(7))

    assert isinstance(response, ErrorResponse)
    assert response.status_code == 502
    assert "merge" not in github.call_names()


@pytest.mark.parametrize("state", ["pending", "failure", "error"])
def test_merge_command_waits_for_successful_statuses(state: str) -> None:
    github = FakeGitHub()
    github.state = state
    github.statuses = (RepoStatus(context="ci/build", state=state),)
    git_repos = FakeGitRepos()

    response = _coordinator(github, git_repos).handle_merge_command(_comment(7))

    assert response == SuccessResponse()
    assert github.call_names() == ["add_label", "get", "combined_status"]
    assert git_repos.squashed == []


def test_merge_command_squashes_when_squash_status_is_pending() -> None:
    github = FakeGitHub()
    github.state = "pending"
    github.statuses = (
        RepoStatus(context="ci/build", state="success"),
        RepoStatus(context="review/squash", state="pending"),
    )
    git_repos = FakeGitRepos()

    response = _coordinator(github, git_repos).handle_merge_command(_comment(7))

    assert response == SuccessResponse("Squashed PR owner/repo#7")
    assert git_repos.squashed == [(REPO, github.pr)]
    assert "merge" not in github.call_names()


def test_squash_context_only_matters_while_combined_state_is_pending() -> None:
    github = FakeGitHub()
    github.state = "failure"
    github.statuses = (RepoStatus(context="review/squash", state="pending"),)
    git_repos = FakeGitRepos()

    response = _coordinator(github, git_repos).handle_merge_command(_comment(7))

    assert response == SuccessResponse()
    assert git_repos.squashed == []


def test_failed_squash_sets_failure_status() -> None:
    github = FakeGitHub()
    github.state = "pending"
    github.statuses = (RepoStatus(context="review/squash", state="pending"),)
    git_repos = FakeGitRepos()
    git_repos.error = RuntimeError("rebase conflict")

    response = _coordinator(github, git_repos).handle_merge_command(_comment(7))

    assert isinstance(response, ErrorResponse)
    assert response.status_code == 502
    assert response.message == "Failed to squash PR owner/repo#7"
    assert github.calls[-1] == (
        "create_status",
        REPO,
        "headsha",
        "failure",
        "review/squash",
        SQUASH_FAILURE_DESCRIPTION,
    )


def test_failed_squash_status_update_failure_is_reported() -> None:
    github = FakeGitHub()
    github.state = "pending"
    github.statuses = (RepoStatus(context="review/squash", state="pending"),)
    github.create_status_error = RuntimeError("down")
    git_repos = FakeGitRepos()
    git_repos.error = RuntimeError("rebase conflict")

    response = _coordinator(github, git_repos).handle_merge_command(_comment(7))

    assert isinstance(response, ErrorResponse)
    assert response.message == "Failed to set the 'review/squash' status on commit headsha"
    assert str(response.error) == "down"


def test_merge_failure_keeps_label() -> None:
    github = FakeGitHub()
    github.merge_errors[7] = RuntimeError("server error")

    response = _coordinator(github).handle_merge_command(_comment(7))

    assert isinstance(response, ErrorResponse)
    assert response.status_code == 502
    assert response.message == "Failed to merge PR owner/repo#7"
    assert "remove_label" not in github.call_names()


def test_label_removal_failure_after_merge_is_an_error() -> None:
    github = FakeGitHub()
    github.remove_label_error = RuntimeError("down")

    response = _coordinator(github).handle_merge_command(_comment(7))

    assert isinstance(response, ErrorResponse)
    assert response.message == "Failed to remove the 'merging' label from PR owner/repo#7"
    assert "merge" in github.call_names()


def test_merge_conflict_removes_label_and_notifies_author() -> None:
    github = FakeGitHub()
    github.merge_errors[7] = MergeConflictError("conflict")

    response = _coordinator(github).handle_merge_command(_comment(7, login="alice"))

    assert isinstance(response, SuccessResponse)
    assert github.calls[-2:] == [
        ("remove_label", REPO, 7, "merging"),
        (
            "comment",
            REPO,
            7,
            "I'm unable to merge this PR because of a merge conflict. "
            "@alice, can you please take a look?",
        ),
    ]


def test_merge_conflict_still_notifies_when_label_removal_fails() -> None:
    github = FakeGitHub()
    github.merge_errors[7] = MergeConflictError("conflict")
    github.remove_label_error = RuntimeError("label down")

    response = _coordinator(github).handle_merge_command(_comment(7))

    comments = [call for call in github.calls if call[0] == "comment"]
    assert len(comments) == 1
    assert "@alice" in str(comments[0][3])
    assert isinstance(response, ErrorResponse)
    assert response.message == "Failed to remove the 'merging' label from PR owner/repo#7"


def test_merge_conflict_comment_failure_takes_priority() -> None:
    github = FakeGitHub()
    github.merge_errors[7] = MergeConflictError("conflict")
    github.remove_label_error = RuntimeError("label down")
    github.comment_error = RuntimeError("comment down")

    response = _coordinator(github).handle_merge_command(_comment(7))

    assert isinstance(response, ErrorResponse)
    assert response.status_code == 502
    assert response.message == (
        "Failed to notify the author of PR owner/repo#7 about the merge conflict"
    )
    assert str(response.error) == "comment down"


def test_custom_merging_label_is_used_throughout() -> None:
    github = FakeGitHub()

    _coordinator(github, merging_label="automerge").handle_merge_command(_comment(7))

    labels = {call[3] for call in github.calls if call[0] in {"add_label", "remove_label"}}
    assert labels == {"automerge"}


@pytest.mark.parametrize(
    ("state", "branch_sha"),
    [("pending", "headsha"), ("failure", "headsha"), ("success", "othersha")],
)
def test_status_event_without_new_candidates_makes_no_calls(state: str, branch_sha: str) -> None:
    github = FakeGitHub()

    response = _coordinator(github).handle_status_event(
        _status_event(state=state, branch_sha=branch_sha)
    )

    assert response == SuccessResponse()
    assert github.calls == []


def test_status_event_merges_every_candidate() -> None:
    github = FakeGitHub()
    github.search_results = (
        IssueSearchResult(number=3, user_login="alice"),
        IssueSearchResult(number=5, user_login="bob"),
    )

    response = _coordinator(github).handle_status_event(_status_event())

    assert response == SuccessResponse("Successfully merged 2 PRs")
    assert github.calls == [
        ("search", 'headsha label:"merging" is:open repo:owner/repo status:success'),
        ("merge", REPO, 3),
        ("remove_label", REPO, 3, "merging"),
        ("merge", REPO, 5),
        ("remove_label", REPO, 5, "merging"),
    ]


def test_status_event_without_candidates_succeeds() -> None:
    github = FakeGitHub()

    response = _coordinator(github).handle_status_event(_status_event())

    assert response == SuccessResponse("Successfully merged 0 PRs")


def test_status_event_search_failure_is_bad_gateway() -> None:
    github = FakeGitHub()
    github.search_error = RuntimeError("down")

    response = _coordinator(github).handle_status_event(_status_event())

    assert isinstance(response, ErrorResponse)
    assert response.status_code == 502
    assert response.message == (
        "Searching for issues with query "
        "'headsha label:\"merging\" is:open repo:owner/repo status:success' failed"
    )


def test_status_event_returns_last_error_and_logs_all(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose=True)
    github = FakeGitHub()
    github.search_results = tuple(
        IssueSearchResult(number=number, user_login="alice") for number in (1, 2, 3, 4, 5)
    )
    github.merge_errors[2] = RuntimeError("error two")
    github.merge_errors[4] = RuntimeError("error four")

    response = _coordinator(github).handle_status_event(_status_event())

    assert isinstance(response, ErrorResponse)
    assert response.message == "Failed to merge PR owner/repo#4"
    assert str(response.error) == "error four"
    assert [call[2] for call in github.calls if call[0] == "merge"] == [1, 2, 3, 4, 5]
    stderr = capsys.readouterr().err
    assert "error two" in stderr
    assert "error four" in stderr
    assert "event=merge_error_superseded" in stderr


def test_status_event_handles_conflicts_per_candidate() -> None:
    github = FakeGitHub()
    github.search_results = (
        IssueSearchResult(number=3, user_login="alice"),
        IssueSearchResult(number=5, user_login="bob"),
    )
    github.merge_errors[3] = MergeConflictError("conflict")

    response = _coordinator(github).handle_status_event(_status_event())

    assert response == SuccessResponse("Successfully merged 2 PRs")
    comments = [call for call in github.calls if call[0] == "comment"]
    assert len(comments) == 1
    assert comments[0][2] == 3
    assert "@alice" in str(comments[0][3])
    assert ("merge", REPO, 5) in github.calls
