from __future__ import annotations

from pathlib import Path
import logging

from mergebot.collaborators import GitRepos
from mergebot.models import PullRequestSnapshot, Repository
from mergebot.observability import log_event
from mergebot.shell import CommandError, execute, run


LOGGER = logging.getLogger("mergebot.git_ops")
_NON_INTERACTIVE_GIT_ENV = {"GIT_EDITOR": "true", "GIT_SEQUENCE_EDITOR": "true"}


class SquashError(RuntimeError):
    pass


class GitRepoManager(GitRepos):
    """Keeps one working checkout per repository and rewrites PR branches in it."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir

    def checkout_path(self, repository: Repository) -> Path:
        return self.base_dir / "checkouts" / repository.owner / repository.name

    def squash(self, repository: Repository, pr: PullRequestSnapshot) -> None:
        if not pr.head_ref or not pr.base_ref:
            raise SquashError(f"PR {repository.full_name}#{pr.number} has no head or base ref")
        remote_url = pr.head_clone_url or _default_remote_url(repository)
        checkout_path = self.ensure_checkout(repository, remote_url)
        log_event(
            LOGGER,
            "git_squash_started",
            checkout_path=str(checkout_path),
            head_ref=pr.head_ref,
            base_ref=pr.base_ref,
            head_sha=pr.head_sha,
        )

        run(["git", "-C", str(checkout_path), "fetch", "origin", "--prune"])
        # The base branch may live in another repository when the PR comes from a fork.
        run(
            [
                "git",
                "-C",
                str(checkout_path),
                "fetch",
                pr.base_clone_url or _default_remote_url(repository),
                f"+refs/heads/{pr.base_ref}:refs/remotes/base/{pr.base_ref}",
            ]
        )
        run(
            [
                "git",
                "-C",
                str(checkout_path),
                "checkout",
                "-B",
                pr.head_ref,
                f"origin/{pr.head_ref}",
            ]
        )
        current_sha = run(["git", "-C", str(checkout_path), "rev-parse", "HEAD"]).strip()
        if current_sha != pr.head_sha:
            raise SquashError(
                f"Branch {pr.head_ref} moved to {current_sha}; expected {pr.head_sha}"
            )

        self._autosquash(checkout_path, base_ref=pr.base_ref)
        try:
            run(
                [
                    "git",
                    "-C",
                    str(checkout_path),
                    "push",
                    f"--force-with-lease={pr.head_ref}:{pr.head_sha}",
                    "origin",
                    pr.head_ref,
                ]
            )
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_push_failed",
                level=logging.ERROR,
                checkout_path=str(checkout_path),
                branch=pr.head_ref,
            )
            raise SquashError(f"Failed to push squashed branch {pr.head_ref}") from exc
        log_event(
            LOGGER,
            "git_squash_pushed",
            checkout_path=str(checkout_path),
            branch=pr.head_ref,
        )

    def ensure_checkout(self, repository: Repository, remote_url: str) -> Path:
        checkout_path = self.checkout_path(repository)
        if not checkout_path.exists():
            checkout_path.parent.mkdir(parents=True, exist_ok=True)
            log_event(LOGGER, "git_checkout_cloned", checkout_path=str(checkout_path))
            run(["git", "clone", remote_url, str(checkout_path)])
        else:
            run(["git", "-C", str(checkout_path), "remote", "set-url", "origin", remote_url])
        return checkout_path

    def _autosquash(self, checkout_path: Path, *, base_ref: str) -> None:
        result = execute(
            [
                "git",
                "-C",
                str(checkout_path),
                "-c",
                "sequence.editor=true",
                "-c",
                "core.editor=true",
                "rebase",
                "--interactive",
                "--autosquash",
                f"base/{base_ref}",
            ],
            # squash! commits open an editor for the combined message.
            env=_NON_INTERACTIVE_GIT_ENV,
        )
        if result.ok:
            return
        log_event(
            LOGGER,
            "git_autosquash_failed",
            level=logging.WARNING,
            checkout_path=str(checkout_path),
            base_ref=base_ref,
            exit_code=result.returncode,
        )
        execute(["git", "-C", str(checkout_path), "rebase", "--abort"])
        raise SquashError(f"Autosquash rebase onto base/{base_ref} failed: {result.stderr}")


def _default_remote_url(repository: Repository) -> str:
    return f"git@github.com:{repository.full_name}.git"
