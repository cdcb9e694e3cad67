"""Classify a prompt as an edit or a question before the real agents run."""

from __future__ import annotations

from trybook.agent.models import Model
from trybook.notebook.notebook import Intent

ROUTER_INSTRUCTION = (
    "Is the following prompt asking an informational question or requesting edits to the code? "
    "Please respond 'question' or 'edit' and nothing else: "
)


def build_router_prompt(prompt: str) -> str:
    return ROUTER_INSTRUCTION + prompt


def classify_intent(output: str) -> Intent:
    """Read the router's answer: a leading 'edit' or 'question', any case.

    Anything else leaves the intent unset.
    """
    s = output.strip().lower()
    if s.startswith("edit"):
        return Intent.EDIT
    if s.startswith("question"):
        return Intent.QUESTION
    return Intent.UNSET


def models_for_intent(intent: Intent | str) -> list[Model]:
    """Edits go to the code-editing agent; everything else to both explainers."""
    if intent == Intent.EDIT:
        return [Model.AIDER]
    return [Model.CLAUDE, Model.GEMINI]
