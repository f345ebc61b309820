"""Thin git wrapper used by the run transaction.

Every command is executed with ``git`` relative to the repository root.  Output
is decoded leniently so that odd filenames never crash the orchestrator.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Sequence, Set

import subprocess


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        probe = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        if probe.returncode != 0 or probe.stdout.strip() != "true":
            raise GitError(f"Not a git repository: {self.root}")

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        process = subprocess.run(
            command,
            cwd=self.root,
            capture_output=True,
            text=False,
            check=False,
        )
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def head(self) -> str:
        """Return the commit hash of ``HEAD``; raise when the repo has no commits."""

        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        head = result.stdout.strip()
        if result.returncode != 0 or not head:
            raise GitError(f"Repository has no HEAD commit: {self.root}")
        return head

    def short_head(self, length: int = 12) -> str | None:
        result = self._run_git(["rev-parse", f"--short={length}", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def branch_exists(self, name: str) -> bool:
        result = self._run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        return result.returncode == 0

    def checkout(self, ref: str, *, create: bool = False, detach: bool = False) -> None:
        args: List[str] = ["checkout"]
        if detach:
            args.append("--detach")
        if create:
            args.append("-b")
        args.append(ref)
        self._run_git(args, check=True)

    def delete_branch(self, name: str) -> None:
        self._run_git(["branch", "-D", name], check=True)

    def merge_ff_only(self, branch: str) -> None:
        self._run_git(["merge", "--ff-only", branch], check=True)

    def rebase(self, onto: str) -> bool:
        """Rebase the current branch onto ``onto``; abort and return ``False`` on conflict."""

        result = self._run_git(["rebase", onto], check=False)
        if result.returncode == 0:
            return True
        self._run_git(["rebase", "--abort"], check=False)
        return False

    def reset_soft(self, ref: str) -> None:
        self._run_git(["reset", "--soft", ref], check=True)

    # ------------------------------------------------------------------- stash
    def stash_push(
        self,
        *,
        message: str | None = None,
        include_untracked: bool = False,
    ) -> str | None:
        """Stash pending changes and return the created reference.

        When ``message`` is supplied the reference is resolved by searching the
        stash list for it, so a concurrent stash cannot be mistaken for ours.
        """

        args: List[str] = ["stash", "push"]
        if include_untracked:
            args.append("-u")
        if message:
            args.extend(["-m", message])
        result = self._run_git(args, check=False)
        combined = f"{result.stdout}\n{result.stderr}".strip()
        if result.returncode != 0:
            if "No local changes to save" in combined:
                return None
            message_text = combined or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message_text}")
        if "No local changes to save" in combined:
            return None
        if message:
            return self.find_stash(message) or "stash@{0}"
        return "stash@{0}"

    def find_stash(self, message: str) -> str | None:
        """Return the ``stash@{n}`` reference whose subject contains ``message``."""

        result = self._run_git(["stash", "list", "--format=%gd %gs"], check=False)
        if result.returncode != 0:
            return None
        for line in result.stdout.splitlines():
            ref, _, subject = line.partition(" ")
            if message in subject:
                return ref
        return None

    def stash_apply(self, ref: str) -> None:
        """Apply ``ref`` and keep the entry; a conflicting apply raises."""

        self._run_git(["stash", "apply", ref])

    def stash_drop(self, ref: str) -> None:
        self._run_git(["stash", "drop", ref])

    # ------------------------------------------------------------- repo status
    def _name_only(self, args: Sequence[str]) -> Set[str]:
        result = self._run_git(args, check=True)
        return {line.strip() for line in result.stdout.splitlines() if line.strip()}

    def dirty_paths(self) -> Set[str]:
        """Return modified, staged and untracked paths relative to the root."""

        paths: Set[str] = set()
        paths |= self._name_only(["diff", "--name-only"])
        paths |= self._name_only(["diff", "--name-only", "--cached"])
        paths |= self._name_only(["ls-files", "--others", "--exclude-standard"])
        return paths

    def changed_between(self, base: str, target: str = "HEAD") -> Set[str]:
        return self._name_only(["diff", "--name-only", base, target])

    def is_clean(self) -> bool:
        """Return ``True`` when ``git status --porcelain`` reports nothing."""

        result = self._run_git(["status", "--porcelain"], check=True)
        return not result.stdout.strip()

    def commit_all(self, message: str) -> str | None:
        """Stage everything and commit; ``None`` when the index has nothing new."""

        self._run_git(["add", "--all"])
        staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
        if staged.returncode == 0:
            return None
        self._run_git(["commit", "-m", message])
        return self.head()


__all__ = ["GitError", "GitRepository"]
