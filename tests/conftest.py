"""Shared test fixtures for trybook tests."""

from __future__ import annotations

import sys
from collections.abc import Generator
from pathlib import Path

import pytest

from trybook.agent.models import DEFAULT_SPECS, PROMPT, Model, ModelSpec, PromptDelivery
from trybook.config import worktree_dir
from trybook.notebook.notebook import Notebook
from trybook.notebook.store import NotebookStore, reset_store

TEST_CREDENTIAL = "TRYBOOK_TEST_AGENT_KEY"


@pytest.fixture
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point TRYBOOK_DIR at a temp directory."""
    base = tmp_path / "trybook"
    monkeypatch.setenv("TRYBOOK_DIR", str(base))
    return base


@pytest.fixture
def store(base_dir: Path) -> Generator[NotebookStore]:
    yield NotebookStore(base_dir / "trybook.db")
    reset_store()


def make_notebook(store: NotebookStore, org: str = "acme", repo: str = "widgets", worktree: str = "nb-0001") -> Notebook:
    """Insert a notebook row and create its worktree directory on disk."""
    worktree_dir(org, repo, worktree).mkdir(parents=True, exist_ok=True)
    nb_id = store.create_notebook(org, repo, worktree, worktree, "0123456789abcdef0123456789abcdef01234567")
    nb = store.get_notebook(nb_id)
    assert nb is not None
    return nb


def python_agent(code: str, *, stdin: bool = False) -> ModelSpec:
    """A stand-in agent that runs ``code`` with the current interpreter.

    With argument delivery the prompt arrives as ``sys.argv[1]``.
    """
    if stdin:
        return ModelSpec(
            executable=sys.executable,
            args=("-u", "-c", code),
            delivery=PromptDelivery.STDIN,
            credential_env=TEST_CREDENTIAL,
        )
    return ModelSpec(executable=sys.executable, args=("-u", "-c", code, PROMPT), credential_env=TEST_CREDENTIAL)


def agent_specs(**overrides: ModelSpec) -> dict[Model, ModelSpec]:
    specs = dict(DEFAULT_SPECS)
    for name, spec in overrides.items():
        specs[Model(name)] = spec
    return specs
