"""Open a repository as a new notebook: clone, worktree, then the notebook row."""

from __future__ import annotations

import asyncio
import logging

from trybook.config import TrybookConfig, clone_dir
from trybook.core import Result
from trybook.git.repo import current_branch_and_commit, ensure_cloned
from trybook.git.worktree import allocate
from trybook.notebook.notebook import Notebook
from trybook.notebook.store import NotebookStore

logger = logging.getLogger("trybook.workspace")


async def record_clone(store: NotebookStore, org: str, repo: str) -> bool:
    """Upsert the clone's current branch and commit. Failures are only logged."""
    head = await current_branch_and_commit(clone_dir(org, repo))
    if not head.ok or head.data is None:
        logger.warning("record_clone: %s", head.message)
        return False
    branch, commit = head.data
    try:
        await asyncio.to_thread(store.upsert_clone, org, repo, branch, commit)
    except Exception:
        logger.exception("record_clone: store write failed for %s/%s", org, repo)
        return False
    return True


async def open_notebook(config: TrybookConfig, store: NotebookStore, org: str, repo: str) -> Result[Notebook]:
    """Create a notebook backed by a fresh worktree of ``org/repo``.

    Clone and worktree creation share one ``git.timeout_seconds`` ceiling.
    The notebook row is written only after the worktree exists.
    """
    result: Result[Notebook] = Result()
    try:
        async with asyncio.timeout(config.git.timeout_seconds):
            cloned = await ensure_cloned(config, org, repo)
            if not cloned.ok:
                result.extend(cloned)
                return result
            await record_clone(store, org, repo)
            allocated = await allocate(org, repo)
    except TimeoutError:
        logger.error("open_notebook: timed out after %ds for %s/%s", config.git.timeout_seconds, org, repo)
        result.error(
            "GIT_TIMEOUT",
            f"git did not finish within {config.git.timeout_seconds}s",
            hint="Retry, or check network access to the remote",
        )
        return result

    if not allocated.ok or allocated.data is None:
        result.extend(allocated)
        return result

    wt = allocated.data
    nb_id = await asyncio.to_thread(store.create_notebook, org, repo, wt.branch, wt.worktree_id, wt.commit)
    notebook = await asyncio.to_thread(store.get_notebook, nb_id)
    if notebook is None:
        result.error("NOT_FOUND", f"Notebook {nb_id} vanished after creation")
        return result
    result.data = notebook
    return result
