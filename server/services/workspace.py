"""
Git Workspace
=============

Per-epic isolated working directories backed by ``git worktree``.

Each epic gets a branch ``feature/epic-<id8>-<slug>`` checked out in a
worktree under ``<repo>/../.buildforge-worktrees/``. Creating a worktree
that already exists returns it unchanged, so story sessions of one epic
share the epic's worktree.
"""

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

WORKTREES_DIRNAME = ".buildforge-worktrees"


class WorkspaceError(Exception):
    """A git command needed to prepare a workspace failed."""


@dataclass
class WorktreeInfo:
    worktree_path: Path
    branch_name: str


def slugify(title: str, max_length: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "work"


def epic_branch_name(epic_id: str, title: str) -> str:
    return f"feature/epic-{epic_id[:8]}-{slugify(title)}"


class GitWorkspace:
    """Thin wrapper over the ``git`` executable."""

    def __init__(self, git_binary: str = "git", timeout: float = 60.0):
        self.git_binary = git_binary
        self.timeout = timeout

    def _git(self, repo_path: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                [self.git_binary, *args],
                cwd=str(repo_path),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise WorkspaceError(f"git {' '.join(args)} failed: {e}") from e
        if check and result.returncode != 0:
            raise WorkspaceError(
                f"git {' '.join(args)} failed: {result.stderr.strip() or result.returncode}"
            )
        return result

    def is_git_repo(self, path: str | Path) -> bool:
        path = Path(path)
        if not path.is_dir():
            return False
        try:
            result = self._git(path, "rev-parse", "--is-inside-work-tree", check=False)
        except WorkspaceError:
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def branch_exists(self, repo_path: Path, branch_name: str) -> bool:
        result = self._git(
            repo_path, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}", check=False
        )
        return result.returncode == 0

    def create_worktree(self, repo_path: str | Path, ticket_id: str, title: str) -> WorktreeInfo:
        """Create (or reuse) the worktree and branch for a ticket.

        Raises:
            WorkspaceError: git failed.
        """
        repo_path = Path(repo_path).resolve()
        branch_name = epic_branch_name(ticket_id, title)
        worktree_path = repo_path.parent / WORKTREES_DIRNAME / branch_name.replace("/", "-")

        if worktree_path.exists():
            return WorktreeInfo(worktree_path=worktree_path, branch_name=branch_name)

        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        self._git(repo_path, "worktree", "prune", check=False)

        if self.branch_exists(repo_path, branch_name):
            self._git(repo_path, "worktree", "add", str(worktree_path), branch_name)
        else:
            self._git(repo_path, "worktree", "add", "-b", branch_name, str(worktree_path))

        logger.info("Created worktree %s on branch %s", worktree_path, branch_name)
        return WorktreeInfo(worktree_path=worktree_path, branch_name=branch_name)
