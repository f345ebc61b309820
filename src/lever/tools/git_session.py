"""Per-run git transaction.

A session isolates one task run on ``run/<task_id>``:

* pending local edits are stashed (untracked files included) under a unique
  message and remembered by reference;
* the run branch is checked out from the base branch;
* progress commits land on the run branch, and a successful run is squashed
  into a single commit and fast-forwarded onto the base branch;
* on exit the stash is re-applied on the caller's original branch unless the
  run touched one of the stashed paths, in which case it is left in place.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Set

from ..tasks.schema import utc_now
from ..utils.text import commit_subject
from .vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_BRANCH = "main"
BRANCH_PREFIX = "run/"
STASH_MESSAGE_PREFIX = "ralph(task-agent): auto-stash"


def resolve_base_branch(configured: str | None = None) -> str:
    """Return the configured base branch, else ``$BASE_BRANCH``, else ``main``."""
    if configured and configured.strip():
        return configured.strip()
    return os.environ.get("BASE_BRANCH", "").strip() or DEFAULT_BASE_BRANCH


def run_branch(task_id: str) -> str:
    return f"{BRANCH_PREFIX}{task_id}"


@dataclass(slots=True)
class GitSession:
    """Branch-per-run transaction; use as a context manager."""

    repo: GitRepository
    task_id: str
    base_branch: str = DEFAULT_BASE_BRANCH
    original_branch: str | None = None
    original_head: str = ""
    dirty_paths: Set[str] = field(default_factory=set)
    stash_ref: str | None = None
    active: bool = False

    @property
    def branch(self) -> str:
        return run_branch(self.task_id)

    # ----------------------------------------------------------------- setup
    def begin(self) -> "GitSession":
        """Stash local edits and switch to the run branch; raise :class:`GitError` on failure."""
        self.original_branch = self.repo.current_branch()
        self.original_head = self.repo.head()

        if not self.repo.is_clean():
            self.dirty_paths = self.repo.dirty_paths()
            stamp = utc_now().strftime("%Y%m%dT%H%M%SZ")
            message = f"{STASH_MESSAGE_PREFIX} {stamp}-{os.getpid()}"
            self.stash_ref = self.repo.stash_push(message=message, include_untracked=True)
            if self.stash_ref:
                LOGGER.info("Stashed local changes as %s.", self.stash_ref)
            else:
                LOGGER.warning("Auto-stash created but ref not found; check git stash list.")

        self.active = True
        self.repo.checkout(self.base_branch)
        if self.repo.branch_exists(self.branch):
            self.repo.checkout(self.branch)
        else:
            self.repo.checkout(self.branch, create=True)
        LOGGER.debug("Checked out %s from %s", self.branch, self.base_branch)
        return self

    def __enter__(self) -> "GitSession":
        return self.begin()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.restore()

    # --------------------------------------------------------------- commits
    def commit_progress(self, title: str | None) -> str | None:
        """Commit every pending change on the current branch."""
        if self.repo.is_clean():
            return None
        return self.repo.commit_all(commit_subject(title, task_id=self.task_id))

    def finalize(self, title: str | None) -> None:
        """Squash the run branch onto the base branch and delete it."""
        message = commit_subject(title, task_id=self.task_id)
        self.repo.checkout(self.branch)
        if not self.repo.rebase(self.base_branch):
            LOGGER.warning("Rebase of %s onto %s failed; squashing without rebase.", self.branch, self.base_branch)
        self.repo.reset_soft(self.base_branch)
        self.repo.commit_all(message)
        self.repo.checkout(self.base_branch)
        self.repo.merge_ff_only(self.branch)
        self.repo.delete_branch(self.branch)
        LOGGER.info("Merged %s into %s", self.branch, self.base_branch)

    # --------------------------------------------------------------- restore
    def restore(self) -> None:
        """Return to the original checkout and re-apply the auto-stash.

        Every failure here is only a warning: the run's own outcome stands.
        """
        if not self.active:
            return
        self.active = False

        overlap: list[str] = []
        if self.stash_ref:
            try:
                touched = self.repo.changed_between(self.original_head, "HEAD")
            except GitError as error:
                LOGGER.warning("Unable to compute run changes (%s); leaving %s for manual apply.", error, self.stash_ref)
                return
            overlap = sorted(self.dirty_paths & touched)

        try:
            if self.original_branch is None:
                self.repo.checkout(self.original_head, detach=True)
            elif self.repo.current_branch() != self.original_branch:
                self.repo.checkout(self.original_branch)
        except GitError as error:
            LOGGER.warning("Unable to return to original checkout: %s", error)
            if self.stash_ref:
                LOGGER.warning("Leaving %s for manual apply.", self.stash_ref)
            return

        if not self.stash_ref:
            return
        if overlap:
            LOGGER.warning("Stash %s overlaps run changes; apply manually. paths=%s", self.stash_ref, ",".join(overlap))
            return

        try:
            self.repo.stash_apply(self.stash_ref)
        except GitError as error:
            LOGGER.warning(
                "Stash %s could not be applied cleanly (%s); leaving stash for manual apply.",
                self.stash_ref,
                error,
            )
            return
        try:
            self.repo.stash_drop(self.stash_ref)
        except GitError as error:
            LOGGER.warning("Applied %s but could not drop it: %s", self.stash_ref, error)


__all__ = [
    "BRANCH_PREFIX",
    "DEFAULT_BASE_BRANCH",
    "GitSession",
    "STASH_MESSAGE_PREFIX",
    "resolve_base_branch",
    "run_branch",
]
