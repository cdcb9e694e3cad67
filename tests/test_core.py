"""Tests for Result[T] and Diag."""

from trybook.core import Diag, Result, Severity


def test_diag_defaults() -> None:
    d = Diag(severity=Severity.ERROR, code="CLONE_FAILED", message="git clone failed")
    assert d.hint is None
    assert d.severity == "error"


def test_result_empty_is_ok() -> None:
    r: Result[str] = Result()
    assert r.ok is True
    assert r.first_error is None
    assert r.code is None
    assert r.message == ""


def test_first_error_wins() -> None:
    r: Result[str] = Result()
    r.warning("MISSING_KEY", "OPENAI_API_KEY not set")
    r.error("NOT_FOUND", "Notebook abc not found")
    r.error("SECOND", "ignored for message")
    assert r.ok is False
    assert r.code == "NOT_FOUND"
    assert r.message == "Notebook abc not found"


def test_warning_does_not_fail_result() -> None:
    r: Result[int] = Result(data=1)
    r.warning("MISSING_KEY", "OPENAI_API_KEY not set", hint="export it")
    assert r.ok is True
    assert r.diagnostics[0].hint == "export it"


def test_extend_carries_diagnostics() -> None:
    inner: Result[str] = Result()
    inner.error("CLONE_FAILED", "git clone failed: exit status 128", hint="check the name")
    outer: Result[int] = Result()
    outer.extend(inner)
    assert outer.code == "CLONE_FAILED"
    assert outer.diagnostics[0].hint == "check the name"


def test_result_serialization() -> None:
    r: Result[tuple[str, str]] = Result(data=("acme", "widgets"))
    r.warning("W", "warn")
    d = r.model_dump()
    assert d["data"] == ("acme", "widgets")
    assert d["diagnostics"][0]["severity"] == "warning"
