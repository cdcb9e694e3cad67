"""Configuration and on-disk layout for Trybook."""

import json
import os
from pathlib import Path

from pydantic import BaseModel


def _default_port() -> int:
    try:
        return int(os.environ.get("PORT", "8080"))
    except ValueError:
        return 8080


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = _default_port()


class GitConfig(BaseModel):
    remote_base: str = "https://github.com"
    timeout_seconds: int = 120


class NotebooksConfig(BaseModel):
    list_limit: int = 100


class AgentOverride(BaseModel):
    """Per-model replacement for the built-in executable or credential variable."""

    executable: str | None = None
    credential_env: str | None = None


class TrybookConfig(BaseModel):
    server: ServerConfig = ServerConfig()
    git: GitConfig = GitConfig()
    notebooks: NotebooksConfig = NotebooksConfig()
    agents: dict[str, AgentOverride] = {}


def _config_dir() -> Path:
    override = os.environ.get("TRYBOOK_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".trybook"


def _config_path() -> Path:
    return _config_dir() / "config.json"


def base_dir() -> Path:
    """Return the Trybook data directory."""
    return _config_dir()


def clone_root() -> Path:
    return _config_dir() / "clone"


def worktree_root() -> Path:
    return _config_dir() / "worktree"


def clone_dir(org: str, repo: str) -> Path:
    """Return the shared shallow-clone directory for a repository."""
    return clone_root() / org / repo


def worktree_dir(org: str, repo: str, worktree_id: str) -> Path:
    """Return the directory of one notebook's worktree."""
    return worktree_root() / org / repo / worktree_id


def db_path() -> Path:
    return _config_dir() / "trybook.db"


def ensure_dirs() -> None:
    """Create the base, clone and worktree directories."""
    _config_dir().mkdir(parents=True, exist_ok=True)
    clone_root().mkdir(exist_ok=True)
    worktree_root().mkdir(exist_ok=True)


def load_config() -> TrybookConfig:
    """Load config from <base>/config.json, returning defaults if missing."""
    path = _config_path()
    if not path.exists():
        return TrybookConfig()
    return TrybookConfig.model_validate_json(path.read_text())


def save_config(config: TrybookConfig) -> None:
    ensure_dirs()
    _config_path().write_text(json.dumps(config.model_dump(), indent=2) + "\n")
