"""SQLite store for clones, notebooks and notebook entries. Lives at <base>/trybook.db."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from pathlib import Path

from trybook.config import db_path
from trybook.core import Result
from trybook.notebook.notebook import (
    Clone,
    Entry,
    Notebook,
    NotebookSummary,
    generate_notebook_id,
    normalize_intent,
)

logger = logging.getLogger("trybook.store")

_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ','now')"

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS clones (
    org        TEXT NOT NULL,
    repo       TEXT NOT NULL,
    branch     TEXT NOT NULL,
    commit_sha TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT ({_NOW}),
    updated_at TEXT NOT NULL DEFAULT ({_NOW}),
    PRIMARY KEY (org, repo)
);
CREATE TABLE IF NOT EXISTS notebooks (
    id         TEXT PRIMARY KEY,
    org        TEXT NOT NULL,
    repo       TEXT NOT NULL,
    branch     TEXT NOT NULL,
    worktree   TEXT NOT NULL,
    commit_sha TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT ({_NOW})
);
CREATE TABLE IF NOT EXISTS notebook_entries (
    notebook_id   TEXT NOT NULL,
    idx           INTEGER NOT NULL,
    prompt        TEXT NOT NULL,
    output        TEXT NOT NULL DEFAULT '',
    output_claude TEXT NOT NULL DEFAULT '',
    intent        TEXT NOT NULL DEFAULT '',
    created_at    TEXT NOT NULL DEFAULT ({_NOW}),
    updated_at    TEXT NOT NULL DEFAULT ({_NOW}),
    PRIMARY KEY (notebook_id, idx),
    FOREIGN KEY (notebook_id) REFERENCES notebooks(id) ON DELETE CASCADE
);
"""

# Output column written for each agent model. The router has none.
OUTPUT_COLUMNS: dict[str, str] = {
    "gemini": "output",
    "aider": "output",
    "claude": "output_claude",
}


def _entry(row: sqlite3.Row) -> Entry:
    return Entry(
        index=row["idx"],
        prompt=row["prompt"],
        output=row["output"],
        output_claude=row["output_claude"],
        intent=normalize_intent(row["intent"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _notebook(row: sqlite3.Row) -> Notebook:
    return Notebook(
        id=row["id"],
        org=row["org"],
        repo=row["repo"],
        branch=row["branch"],
        worktree=row["worktree"],
        commit=row["commit_sha"],
        created_at=row["created_at"],
    )


class NotebookStore:
    """Durable notebook state.

    Every operation opens its own connection and runs as one statement or
    one transaction, so the store can be shared by concurrent requests
    (via ``asyncio.to_thread``) without extra locking.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_schema(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA)

    # Clones

    def upsert_clone(self, org: str, repo: str, branch: str, commit: str) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                f"""
                INSERT INTO clones(org, repo, branch, commit_sha)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(org, repo) DO UPDATE SET
                    branch = excluded.branch,
                    commit_sha = excluded.commit_sha,
                    updated_at = {_NOW}
                """,
                (org, repo, branch, commit),
            )
        logger.info("Recorded clone %s/%s at %s@%s", org, repo, branch, commit[:7])

    def get_clone(self, org: str, repo: str) -> Clone | None:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT org, repo, branch, commit_sha, created_at, updated_at FROM clones WHERE org = ? AND repo = ?",
                (org, repo),
            ).fetchone()
        if row is None:
            return None
        return Clone(
            org=row["org"],
            repo=row["repo"],
            branch=row["branch"],
            commit=row["commit_sha"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # Notebooks

    def create_notebook(self, org: str, repo: str, branch: str, worktree_id: str, commit: str) -> str:
        """Insert a notebook row for an already-created worktree and return its id."""
        nb_id = generate_notebook_id()
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                INSERT INTO notebooks(id, org, repo, branch, worktree, commit_sha)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (nb_id, org, repo, branch, worktree_id, commit),
            )
        logger.info("Created notebook %s for %s/%s (worktree %s)", nb_id, org, repo, worktree_id)
        return nb_id

    def list_notebooks(self, limit: int = 100) -> list[NotebookSummary]:
        """Most recently created notebooks first."""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT id, org, repo, branch, commit_sha, created_at
                FROM notebooks
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            NotebookSummary(
                id=r["id"],
                org=r["org"],
                repo=r["repo"],
                branch=r["branch"],
                commit_short=r["commit_sha"][:7],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def get_notebook(self, notebook_id: str) -> Notebook | None:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT id, org, repo, branch, worktree, commit_sha, created_at FROM notebooks WHERE id = ?",
                (notebook_id,),
            ).fetchone()
        return _notebook(row) if row else None

    def load_notebook(self, notebook_id: str) -> Result[tuple[Notebook, list[Entry]]]:
        """Load a notebook and its entries ordered by index."""
        result: Result[tuple[Notebook, list[Entry]]] = Result()
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT id, org, repo, branch, worktree, commit_sha, created_at FROM notebooks WHERE id = ?",
                (notebook_id,),
            ).fetchone()
            if row is None:
                result.error("NOT_FOUND", f"Notebook {notebook_id} not found")
                return result
            entries = conn.execute(
                """
                SELECT idx, prompt, output, output_claude, intent, created_at, updated_at
                FROM notebook_entries
                WHERE notebook_id = ?
                ORDER BY idx ASC
                """,
                (notebook_id,),
            ).fetchall()
        result.data = (_notebook(row), [_entry(e) for e in entries])
        return result

    # Entries

    def get_entry(self, notebook_id: str, index: int) -> Entry | None:
        with closing(self._connect()) as conn:
            row = conn.execute(
                """
                SELECT idx, prompt, output, output_claude, intent, created_at, updated_at
                FROM notebook_entries WHERE notebook_id = ? AND idx = ?
                """,
                (notebook_id, index),
            ).fetchone()
        return _entry(row) if row else None

    def append_entry(self, notebook_id: str, prompt: str) -> int:
        """Append a prompt and return its zero-based index.

        The next index is computed inside the INSERT itself, so two appends
        to the same notebook can never receive the same index.
        """
        with closing(self._connect()) as conn, conn:
            rows = conn.execute(
                """
                INSERT INTO notebook_entries(notebook_id, idx, prompt)
                SELECT ?, COALESCE(MAX(idx), -1) + 1, ?
                FROM notebook_entries WHERE notebook_id = ?
                RETURNING idx
                """,
                (notebook_id, prompt, notebook_id),
            ).fetchall()
        index = int(rows[0]["idx"])
        logger.info("Appended entry %d to notebook %s", index, notebook_id)
        return index

    def set_entry_output(self, notebook_id: str, index: int, model: str, text: str) -> bool:
        """Store one model's output for an entry. Returns False if the entry is missing."""
        column = OUTPUT_COLUMNS.get(model.lower())
        if column is None:
            raise ValueError(f"model {model!r} has no output column")
        with closing(self._connect()) as conn, conn:
            cur = conn.execute(
                f"UPDATE notebook_entries SET {column} = ?, updated_at = {_NOW} WHERE notebook_id = ? AND idx = ?",
                (text, notebook_id, index),
            )
        logger.info("Saved %s output for %s[%d] (%d chars)", model, notebook_id, index, len(text))
        return cur.rowcount > 0

    def set_entry_intent(self, notebook_id: str, index: int, intent: str) -> bool:
        """Store the router's classification, normalised to edit, question or empty."""
        value = normalize_intent(intent)
        with closing(self._connect()) as conn, conn:
            cur = conn.execute(
                f"UPDATE notebook_entries SET intent = ?, updated_at = {_NOW} WHERE notebook_id = ? AND idx = ?",
                (value.value, notebook_id, index),
            )
        logger.info("Set intent %r for %s[%d]", value.value, notebook_id, index)
        return cur.rowcount > 0


_store: NotebookStore | None = None


def get_store(path: Path | None = None) -> NotebookStore:
    """Get the module-level singleton store."""
    global _store  # noqa: PLW0603
    if _store is None:
        _store = NotebookStore(path or db_path())
    return _store


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _store  # noqa: PLW0603
    _store = None
