"""Validation of repository coordinates, notebook ids and prompts.

Everything here is pure: inputs are checked before any clone, worktree or
store write happens.
"""

from __future__ import annotations

import re
from urllib.parse import urlparse

from trybook.core import Result

_SAFE_TOKEN = re.compile(r"[A-Za-z0-9._-]+")


def is_safe_token(value: str) -> bool:
    """True if ``value`` is non-empty and uses only letters, digits, ``.``, ``_`` and ``-``.

    Tokens become path segments, so ``.`` and ``..`` are refused as well.
    """
    if not value or _SAFE_TOKEN.fullmatch(value) is None:
        return False
    return value.strip(".") != ""


def parse_repo_input(text: str) -> Result[tuple[str, str]]:
    """Parse ``org/repo`` or a github.com URL into an (org, repo) pair."""
    result: Result[tuple[str, str]] = Result()
    s = text.strip()
    if not s:
        result.error("INVALID_REPO", "empty input")
        return result

    if s.startswith(("http://", "https://")):
        try:
            url = urlparse(s)
        except ValueError:
            result.error("INVALID_REPO", "invalid URL")
            return result
        if (url.hostname or "").lower() != "github.com":
            result.error("INVALID_REPO", "only github.com is supported")
            return result
        parts = url.path.strip("/").split("/")
        if len(parts) < 2:
            result.error("INVALID_REPO", "URL must be like https://github.com/org/repo")
            return result
        org = parts[0]
        repo = parts[1].removesuffix(".git")
    else:
        parts = s.split("/")
        if len(parts) != 2:
            result.error(
                "INVALID_REPO",
                "input must be org/repo or a full GitHub URL",
                hint="e.g. acme/widgets or https://github.com/acme/widgets",
            )
            return result
        org, repo = parts[0].strip(), parts[1].strip()

    if not is_safe_token(org) or not is_safe_token(repo):
        result.error("INVALID_REPO", "invalid org or repo")
        return result

    result.data = (org, repo)
    return result


def validate_notebook_id(notebook_id: str) -> Result[str]:
    result: Result[str] = Result()
    nb_id = notebook_id.strip()
    if not is_safe_token(nb_id):
        result.error("INVALID_ID", f"invalid notebook id: {notebook_id!r}")
        return result
    result.data = nb_id
    return result


def validate_prompt(prompt: str) -> Result[str]:
    result: Result[str] = Result()
    text = prompt.strip()
    if not text:
        result.error("EMPTY_PROMPT", "Please enter a prompt.")
        return result
    result.data = text
    return result
