from __future__ import annotations

from abc import ABC, abstractmethod

from mergebot.models import (
    CommitState,
    IssueSearchResult,
    PullRequestSnapshot,
    RepoStatus,
    Repository,
)


class MergeConflictError(RuntimeError):
    """The platform refused a merge because the branch cannot be merged cleanly."""


class Issues(ABC):
    @abstractmethod
    def add_label(self, repository: Repository, issue_number: int, label: str) -> None:
        """Attach a label to an issue or pull request."""

    @abstractmethod
    def remove_label(self, repository: Repository, issue_number: int, label: str) -> None:
        """Detach a label from an issue or pull request."""

    @abstractmethod
    def comment(self, message: str, repository: Repository, issue_number: int) -> None:
        """Post a comment on the issue thread."""


class PullRequests(ABC):
    @abstractmethod
    def get(self, repository: Repository, pr_number: int) -> PullRequestSnapshot:
        """Fetch the current state of a pull request."""

    @abstractmethod
    def merge(self, repository: Repository, pr_number: int) -> None:
        """Merge a pull request. Raises MergeConflictError for conflicts."""


class Repositories(ABC):
    @abstractmethod
    def combined_status(
        self, repository: Repository, sha: str
    ) -> tuple[str, tuple[RepoStatus, ...]]:
        """Return the combined state and the individual statuses of a commit."""

    @abstractmethod
    def create_status(
        self,
        repository: Repository,
        sha: str,
        *,
        state: CommitState,
        context: str,
        description: str,
    ) -> None:
        """Set a commit status for one context."""


class Search(ABC):
    @abstractmethod
    def issues(self, query: str) -> tuple[IssueSearchResult, ...]:
        """Run an issue search query and return every match."""


class GitRepos(ABC):
    @abstractmethod
    def squash(self, repository: Repository, pr: PullRequestSnapshot) -> None:
        """Autosquash fixup!/squash! commits on the PR branch and push the result."""
