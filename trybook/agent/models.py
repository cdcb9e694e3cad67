"""The closed set of agent models and how each one is invoked."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum

from pydantic import BaseModel

from trybook.config import TrybookConfig

PROMPT = "{prompt}"


class Model(StrEnum):
    GEMINI = "gemini"
    CLAUDE = "claude"
    AIDER = "aider"
    ROUTER = "router"


class PromptDelivery(StrEnum):
    ARGUMENT = "argument"
    STDIN = "stdin"


class ModelSpec(BaseModel):
    """How to start one agent.

    ``args`` may contain the ``{prompt}`` placeholder, which is replaced by
    the prompt when ``delivery`` is ARGUMENT. With STDIN the prompt is piped
    to the process instead.
    """

    executable: str
    args: tuple[str, ...] = ()
    delivery: PromptDelivery = PromptDelivery.ARGUMENT
    credential_env: str

    model_config = {"frozen": True}

    def argv(self, prompt: str) -> list[str]:
        if self.delivery == PromptDelivery.STDIN:
            return [self.executable, *self.args]
        return [self.executable, *(prompt if a == PROMPT else a for a in self.args)]

    def stdin(self, prompt: str) -> bytes | None:
        if self.delivery == PromptDelivery.STDIN:
            return prompt.encode("utf-8")
        return None


DEFAULT_SPECS: dict[Model, ModelSpec] = {
    Model.GEMINI: ModelSpec(
        executable="gemini",
        args=("--prompt", PROMPT),
        credential_env="GEMINI_API_KEY",
    ),
    Model.CLAUDE: ModelSpec(
        executable="claude",
        args=("--print",),
        delivery=PromptDelivery.STDIN,
        credential_env="ANTHROPIC_API_KEY",
    ),
    Model.AIDER: ModelSpec(
        executable="aider",
        args=(
            "--model",
            "openai/gpt-5",
            "--architect",
            "--yes-always",
            "--auto-commit",
            "--auto-accept-architect",
            "--message",
            PROMPT,
        ),
        credential_env="OPENAI_API_KEY",
    ),
    Model.ROUTER: ModelSpec(
        executable="llm",
        args=("--model", "gpt-5-nano", PROMPT),
        credential_env="OPENAI_API_KEY",
    ),
}


def resolve_specs(config: TrybookConfig, base: Mapping[Model, ModelSpec] | None = None) -> dict[Model, ModelSpec]:
    """Apply ``config.agents`` overrides to the built-in specs."""
    specs = dict(base or DEFAULT_SPECS)
    for name, override in config.agents.items():
        try:
            model = Model(name)
        except ValueError:
            continue
        update: dict[str, str] = {}
        if override.executable:
            update["executable"] = override.executable
        if override.credential_env:
            update["credential_env"] = override.credential_env
        if update:
            specs[model] = specs[model].model_copy(update=update)
    return specs
