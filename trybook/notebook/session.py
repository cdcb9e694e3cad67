"""Ephemeral per-browser-session notebooks, keyed by session token and repository."""

from __future__ import annotations

import threading

from trybook.notebook.notebook import Entry


def repo_key(org: str, repo: str) -> str:
    return f"{org}/{repo}"


class SessionNotes:
    """In-memory entries per (session, org/repo). Nothing here survives a restart."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._notes: dict[str, dict[str, list[Entry]]] = {}

    def get_entries(self, session: str, org: str, repo: str) -> list[Entry]:
        """Return copies of the entries so callers cannot mutate shared state."""
        with self._lock:
            entries = self._notes.get(session, {}).get(repo_key(org, repo), [])
            return [e.model_copy() for e in entries]

    def append_entry(self, session: str, org: str, repo: str, prompt: str) -> int:
        with self._lock:
            entries = self._notes.setdefault(session, {}).setdefault(repo_key(org, repo), [])
            entries.append(Entry(index=len(entries), prompt=prompt))
            return len(entries) - 1
