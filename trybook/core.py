"""Result and diagnostic types shared by the git, store and agent layers."""

from enum import StrEnum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


class Diag(BaseModel):
    """One coded problem, with an optional hint for the person fixing it."""

    severity: Severity
    code: str
    message: str
    hint: str | None = None


class Result(BaseModel, Generic[T]):  # noqa: UP046 pydantic generic models subclass Generic[T]
    """Output paired with diagnostics.

    Expected failures (bad input, a failed clone, a missing notebook) are
    reported through diagnostics rather than raised. ``data`` stays None
    whenever an error is present.
    """

    data: T | None = None
    diagnostics: list[Diag] = Field(default_factory=list)

    @property
    def first_error(self) -> Diag | None:
        return next((d for d in self.diagnostics if d.severity == Severity.ERROR), None)

    @property
    def ok(self) -> bool:
        return self.first_error is None

    @property
    def code(self) -> str | None:
        err = self.first_error
        return err.code if err else None

    @property
    def message(self) -> str:
        err = self.first_error
        return err.message if err else ""

    def error(self, code: str, message: str, *, hint: str | None = None) -> None:
        self.diagnostics.append(Diag(severity=Severity.ERROR, code=code, message=message, hint=hint))

    def warning(self, code: str, message: str, *, hint: str | None = None) -> None:
        self.diagnostics.append(Diag(severity=Severity.WARNING, code=code, message=message, hint=hint))

    def extend(self, other: "Result[Any]") -> None:
        """Carry another result's diagnostics over, e.g. from a failed sub-step."""
        self.diagnostics.extend(other.diagnostics)
