from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


CommitState = Literal["success", "pending", "failure", "error"]


@dataclass(frozen=True)
class Repository:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class User:
    login: str


@dataclass(frozen=True)
class Issue:
    number: int
    repository: Repository
    user: User

    @property
    def full_name(self) -> str:
        return f"{self.repository.full_name}#{self.number}"


@dataclass(frozen=True)
class IssueComment:
    issue: Issue
    body: str


@dataclass(frozen=True)
class Branch:
    name: str
    sha: str


@dataclass(frozen=True)
class StatusEvent:
    sha: str
    state: CommitState
    repository: Repository
    branches: tuple[Branch, ...]


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    merged: bool
    # None until GitHub has finished computing mergeability.
    mergeable: bool | None
    head_sha: str
    head_ref: str
    base_ref: str
    head_clone_url: str | None = None
    base_clone_url: str | None = None


@dataclass(frozen=True)
class RepoStatus:
    context: str
    state: str


@dataclass(frozen=True)
class IssueSearchResult:
    number: int
    user_login: str
