"""Per-notebook worktrees branched off the shared clone."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path

from pydantic import BaseModel

from trybook.config import clone_dir, worktree_dir
from trybook.core import Result
from trybook.git.repo import current_branch_and_commit, run_git

logger = logging.getLogger("trybook.git")


def generate_worktree_id() -> str:
    """Generate a worktree ID: 'nb-' + 8 hex chars from uuid4."""
    return "nb-" + uuid.uuid4().hex[:8]


class Worktree(BaseModel):
    worktree_id: str
    branch: str
    commit: str
    path: Path


async def allocate(org: str, repo: str) -> Result[Worktree]:
    """Create a fresh worktree of the cached clone on a new branch.

    The branch is named after the worktree id. Branch and commit are read
    back from the new checkout rather than assumed.
    """
    result: Result[Worktree] = Result()
    source = clone_dir(org, repo)
    wt_id = generate_worktree_id()
    path = worktree_dir(org, repo, wt_id)
    path.parent.mkdir(parents=True, exist_ok=True)

    out = await run_git("-C", str(source), "worktree", "add", "-b", wt_id, str(path))
    if not out.ok:
        logger.error("worktree add failed for %s/%s: %s", org, repo, out.combined.strip())
        result.error("WORKTREE_FAILED", f"create worktree: exit status {out.returncode}\n{out.combined.strip()}")
        return result

    head = await current_branch_and_commit(path)
    if not head.ok or head.data is None:
        result.error("WORKTREE_FAILED", head.message)
        return result

    branch, commit = head.data
    logger.info("allocated worktree %s on %s@%s", path, branch, commit[:7])
    result.data = Worktree(worktree_id=wt_id, branch=branch, commit=commit, path=path)
    return result
