"""Notebook, entry and clone records as read back from the store."""

from __future__ import annotations

import uuid
from enum import StrEnum

from pydantic import BaseModel


def generate_notebook_id() -> str:
    """Generate a notebook ID: 24 hex chars from uuid4."""
    return uuid.uuid4().hex[:24]


class Intent(StrEnum):
    EDIT = "edit"
    QUESTION = "question"
    UNSET = ""


def normalize_intent(value: str) -> Intent:
    """Map free text onto an Intent; anything unrecognised is UNSET."""
    v = value.strip().lower()
    if v == Intent.EDIT:
        return Intent.EDIT
    if v == Intent.QUESTION:
        return Intent.QUESTION
    return Intent.UNSET


class Clone(BaseModel):
    org: str
    repo: str
    branch: str
    commit: str
    created_at: str = ""
    updated_at: str = ""


class Notebook(BaseModel):
    id: str
    org: str
    repo: str
    branch: str
    worktree: str
    commit: str
    created_at: str = ""

    @property
    def commit_short(self) -> str:
        return self.commit[:7]


class NotebookSummary(BaseModel):
    id: str
    org: str
    repo: str
    branch: str
    commit_short: str
    created_at: str


class Entry(BaseModel):
    index: int
    prompt: str
    output: str = ""
    output_claude: str = ""
    intent: Intent = Intent.UNSET
    created_at: str = ""
    updated_at: str = ""
