"""Shallow clone cache: one local clone per (org, repo), created on demand."""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

from trybook.config import TrybookConfig, clone_dir
from trybook.core import Result

logger = logging.getLogger("trybook.git")

# Clone attempts in order; None means the remote's default branch.
CLONE_BRANCHES: tuple[str | None, ...] = ("main", "master", None)


@dataclass
class GitOutput:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def combined(self) -> str:
        return self.stdout + self.stderr


async def run_git(*args: str, cwd: Path | None = None) -> GitOutput:
    """Run ``git`` with ``args`` and capture its output.

    The child is killed if the awaiting task is cancelled, so callers can
    bound a sequence of git commands with ``asyncio.timeout``.
    """
    argv = ["git", *args]
    start = time.monotonic()
    logger.info("START %s", " ".join(argv))
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        # git missing from PATH, or cwd removed underneath us
        logger.error("FAIL  %s: %s", " ".join(argv), e)
        return GitOutput(returncode=-1, stdout="", stderr=str(e))
    try:
        out, err = await proc.communicate()
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        logger.warning("KILL  %s (%.3fs)", " ".join(argv), time.monotonic() - start)
        raise
    status = "ok" if proc.returncode == 0 else "error"
    logger.info("END   %s (%.3fs) status=%s", " ".join(argv), time.monotonic() - start, status)
    return GitOutput(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
    )


def is_cloned(path: Path) -> bool:
    """A clone is complete once its ``.git`` entry exists."""
    return (path / ".git").exists()


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists() or path.is_symlink():
        path.unlink()


def clone_attempts(remote: str, dest: Path) -> list[list[str]]:
    """Build the git clone argument lists, most specific branch first."""
    attempts: list[list[str]] = []
    for branch in CLONE_BRANCHES:
        args = ["clone", "--depth", "1", "--single-branch"]
        if branch is not None:
            args += ["--branch", branch]
        attempts.append([*args, remote, str(dest)])
    return attempts


async def ensure_cloned(config: TrybookConfig, org: str, repo: str) -> Result[Path]:
    """Make sure a shallow clone of ``org/repo`` exists locally.

    A complete clone is left untouched. Anything else at the destination is
    removed and the clone is attempted on ``main``, then ``master``, then the
    default branch.
    """
    result: Result[Path] = Result()
    dest = clone_dir(org, repo)
    logger.info("ensure_cloned: org=%s repo=%s dest=%s", org, repo, dest)
    dest.parent.mkdir(parents=True, exist_ok=True)

    if is_cloned(dest):
        logger.info("ensure_cloned: already cloned: %s", dest)
        result.data = dest
        return result
    if dest.exists() or dest.is_symlink():
        logger.warning("ensure_cloned: removing incomplete clone at %s", dest)
        _remove(dest)

    remote = f"{config.git.remote_base.rstrip('/')}/{org}/{repo}.git"
    attempts = clone_attempts(remote, dest)
    last = GitOutput(returncode=-1, stdout="", stderr="no clone attempted")
    for i, args in enumerate(attempts, start=1):
        logger.info("clone attempt %d/%d for %s/%s", i, len(attempts), org, repo)
        try:
            last = await run_git(*args)
        except BaseException:
            # git writes .git before fetching; a killed clone must not look complete
            _remove(dest)
            raise
        if last.ok:
            logger.info("cloned %s/%s to %s", org, repo, dest)
            result.data = dest
            return result
        _remove(dest)

    logger.error("all clone attempts failed for %s/%s", org, repo)
    result.error(
        "CLONE_FAILED",
        f"git clone failed: exit status {last.returncode}\n{last.combined.strip()}",
        hint="Check that the repository exists and is public",
    )
    return result


async def current_branch_and_commit(path: Path) -> Result[tuple[str, str]]:
    """Read the checked-out branch name and full head commit of ``path``."""
    result: Result[tuple[str, str]] = Result()
    branch = await run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=path)
    if not branch.ok:
        result.error("GIT_ERROR", f"get branch: {branch.combined.strip()}")
        return result
    commit = await run_git("rev-parse", "HEAD", cwd=path)
    if not commit.ok:
        result.error("GIT_ERROR", f"get commit: {commit.combined.strip()}")
        return result
    result.data = (branch.stdout.strip(), commit.stdout.strip())
    return result


async def short_head(path: Path) -> str | None:
    """Return the 7-character head commit of ``path``, or None on failure."""
    out = await run_git("rev-parse", "--short=7", "HEAD", cwd=path)
    if not out.ok:
        return None
    return out.stdout.strip()
