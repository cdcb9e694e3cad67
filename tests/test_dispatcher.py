"""Tests for the run dispatcher, using the current interpreter as a stand-in agent."""

from __future__ import annotations

import asyncio
import logging

import pytest

from conftest import TEST_CREDENTIAL, agent_specs, make_notebook, python_agent
from trybook.agent.dispatcher import OutputTee, RunDispatcher, RunEvent, RunState
from trybook.agent.models import Model
from trybook.notebook.notebook import Intent
from trybook.notebook.store import NotebookStore

ECHO = "import sys; print('you said: ' + sys.argv[1])"
ECHO_STDIN = "import sys; print('stdin: ' + sys.stdin.read())"
PARTIAL_FAIL = "import sys; print('partial work'); sys.exit(3)"
SLOW = "import time\nprint('tick', flush=True)\nwhile True:\n    time.sleep(0.1)"


async def _collect(events) -> list[RunEvent]:  # type: ignore[no-untyped-def]
    return [e async for e in events]


def _kinds(events: list[RunEvent]) -> list[str]:
    return [e.event for e in events]


def _text(events: list[RunEvent]) -> str:
    return "".join(e.text for e in events if e.event == "chunk")


def test_output_tee_decodes_split_utf8() -> None:
    tee = OutputTee()
    data = "héllo ✓".encode()
    forwarded = [tee.write(data[i : i + 1]) for i in range(len(data))]
    forwarded.append(tee.close())
    assert "".join(forwarded) == "héllo ✓"
    assert tee.text == "héllo ✓"


def test_run_event_rendering() -> None:
    assert RunEvent("chunk", "abc").render() == "abc"
    assert RunEvent("done").render() == "\n[done]\n"
    assert RunEvent("error", "gemini exited with error: exit status 1").render() == (
        "\n[gemini exited with error: exit status 1]\n"
    )
    assert RunEvent("error", "boom", "EXIT_STATUS").to_dict() == {
        "event": "error",
        "data": {"text": "boom", "code": "EXIT_STATUS"},
    }


async def test_successful_run_streams_and_persists(store: NotebookStore) -> None:
    nb = make_notebook(store)
    store.append_entry(nb.id, "explain the build")
    dispatcher = RunDispatcher(store, agent_specs(gemini=python_agent(ECHO)))

    events = await _collect(dispatcher.run(nb.id, 0, Model.GEMINI))

    assert _kinds(events)[0] == "stage"
    assert events[0].text == "Starting gemini...\n\n"
    assert _kinds(events)[-1] == "done"
    assert _text(events).strip() == "you said: explain the build"
    assert dispatcher.state == RunState.COMPLETED
    assert dispatcher.returncode == 0

    entry = store.get_entry(nb.id, 0)
    assert entry is not None
    assert entry.output.strip() == "you said: explain the build"
    assert entry.output_claude == ""
    assert entry.intent == Intent.UNSET


async def test_stdin_delivery_and_claude_column(store: NotebookStore) -> None:
    nb = make_notebook(store)
    store.append_entry(nb.id, "what does main do?")
    dispatcher = RunDispatcher(store, agent_specs(claude=python_agent(ECHO_STDIN, stdin=True)))

    events = await _collect(dispatcher.run(nb.id, 0, "claude"))

    assert _kinds(events)[-1] == "done"
    entry = store.get_entry(nb.id, 0)
    assert entry is not None
    assert entry.output_claude.strip() == "stdin: what does main do?"
    assert entry.output == ""


async def test_agent_runs_inside_worktree(store: NotebookStore) -> None:
    nb = make_notebook(store)
    store.append_entry(nb.id, "pwd")
    code = "import os; open('touched.txt', 'w').write('x'); print(os.getcwd())"
    dispatcher = RunDispatcher(store, agent_specs(aider=python_agent(code)))

    plan = await dispatcher.prepare(nb.id, 0, Model.AIDER)
    assert plan.data is not None
    await _collect(dispatcher.stream(plan.data))

    assert (plan.data.cwd / "touched.txt").exists()
    assert dispatcher.state == RunState.COMPLETED


async def test_failed_run_keeps_partial_output(store: NotebookStore) -> None:
    nb = make_notebook(store)
    store.append_entry(nb.id, "explain")
    dispatcher = RunDispatcher(store, agent_specs(gemini=python_agent(PARTIAL_FAIL)))

    events = await _collect(dispatcher.run(nb.id, 0, Model.GEMINI))

    assert "done" not in _kinds(events)
    assert events[-1].event == "error"
    assert events[-1].text == "gemini exited with error: exit status 3"
    assert "partial work" in _text(events)
    assert dispatcher.state == RunState.FAILED
    entry = store.get_entry(nb.id, 0)
    assert entry is not None
    assert entry.output.strip() == "partial work"


async def test_stderr_is_merged_into_output(store: NotebookStore) -> None:
    nb = make_notebook(store)
    store.append_entry(nb.id, "x")
    code = "import sys; sys.stderr.write('warn\\n'); sys.stderr.flush(); print('out')"
    dispatcher = RunDispatcher(store, agent_specs(gemini=python_agent(code)))

    await _collect(dispatcher.run(nb.id, 0, Model.GEMINI))

    entry = store.get_entry(nb.id, 0)
    assert entry is not None
    assert "warn" in entry.output
    assert "out" in entry.output


async def test_missing_binary_is_reported(store: NotebookStore) -> None:
    nb = make_notebook(store)
    store.append_entry(nb.id, "x")
    broken = python_agent(ECHO).model_copy(update={"executable": "/nonexistent/agent-binary"})
    dispatcher = RunDispatcher(store, agent_specs(gemini=broken))

    events = await _collect(dispatcher.run(nb.id, 0, Model.GEMINI))

    assert events[-1].event == "error"
    assert events[-1].code == "START_FAILED"
    assert "failed to start gemini" in events[-1].text
    assert dispatcher.state == RunState.FAILED


async def test_missing_credential_warns_but_runs(
    store: NotebookStore, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    monkeypatch.delenv(TEST_CREDENTIAL, raising=False)
    nb = make_notebook(store)
    store.append_entry(nb.id, "hi")
    dispatcher = RunDispatcher(store, agent_specs(gemini=python_agent(ECHO)))

    with caplog.at_level(logging.WARNING, logger="trybook.dispatcher"):
        events = await _collect(dispatcher.run(nb.id, 0, Model.GEMINI))

    assert events[-1].event == "done"
    assert f"{TEST_CREDENTIAL} not set" in caplog.text


async def test_credential_is_forwarded(store: NotebookStore, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(TEST_CREDENTIAL, "sk-test")
    nb = make_notebook(store)
    store.append_entry(nb.id, "hi")
    code = f"import os; print(os.environ['{TEST_CREDENTIAL}'])"
    dispatcher = RunDispatcher(store, agent_specs(gemini=python_agent(code)))

    await _collect(dispatcher.run(nb.id, 0, Model.GEMINI))

    entry = store.get_entry(nb.id, 0)
    assert entry is not None
    assert entry.output.strip() == "sk-test"


@pytest.mark.parametrize(
    ("router_output", "intent"),
    [("question", Intent.QUESTION), ("Edit please", Intent.EDIT), ("no idea", Intent.UNSET)],
)
async def test_router_sets_intent_only(store: NotebookStore, router_output: str, intent: Intent) -> None:
    nb = make_notebook(store)
    store.append_entry(nb.id, "add input validation")
    dispatcher = RunDispatcher(store, agent_specs(router=python_agent(f"print({router_output!r})")))

    events = await _collect(dispatcher.run(nb.id, 0, Model.ROUTER))

    assert events[-1].event == "done"
    entry = store.get_entry(nb.id, 0)
    assert entry is not None
    assert entry.intent == intent
    assert entry.output == ""
    assert entry.output_claude == ""


async def test_router_receives_wrapped_prompt(store: NotebookStore) -> None:
    nb = make_notebook(store)
    store.append_entry(nb.id, "explain the build")
    code = "import sys; print('question' if sys.argv[1].endswith('explain the build') and 'edit' in sys.argv[1] else 'edit')"
    dispatcher = RunDispatcher(store, agent_specs(router=python_agent(code)))

    await _collect(dispatcher.run(nb.id, 0, Model.ROUTER))

    entry = store.get_entry(nb.id, 0)
    assert entry is not None
    assert entry.intent == Intent.QUESTION


async def test_router_failure_persists_nothing(store: NotebookStore) -> None:
    nb = make_notebook(store)
    store.append_entry(nb.id, "x")
    dispatcher = RunDispatcher(store, agent_specs(router=python_agent("import sys; print('edit'); sys.exit(1)")))

    events = await _collect(dispatcher.run(nb.id, 0, Model.ROUTER))

    assert events[-1].event == "error"
    entry = store.get_entry(nb.id, 0)
    assert entry is not None
    assert entry.intent == Intent.UNSET
    assert entry.output == ""


async def test_cancel_event_terminates_without_persisting(store: NotebookStore) -> None:
    nb = make_notebook(store)
    store.append_entry(nb.id, "x")
    dispatcher = RunDispatcher(store, agent_specs(gemini=python_agent(SLOW)), terminate_grace=2.0)
    cancel = asyncio.Event()

    events: list[RunEvent] = []
    async for event in dispatcher.run(nb.id, 0, Model.GEMINI, cancel):
        events.append(event)
        if event.event == "chunk":
            cancel.set()

    assert "tick" in _text(events)
    assert "done" not in _kinds(events)
    assert "error" not in _kinds(events)
    assert dispatcher.state == RunState.CANCELLED
    entry = store.get_entry(nb.id, 0)
    assert entry is not None
    assert entry.output == ""


async def test_closing_the_stream_terminates_the_process(store: NotebookStore) -> None:
    nb = make_notebook(store)
    store.append_entry(nb.id, "x")
    dispatcher = RunDispatcher(store, agent_specs(gemini=python_agent(SLOW)), terminate_grace=2.0)

    stream = dispatcher.run(nb.id, 0, Model.GEMINI)
    async for event in stream:
        if event.event == "chunk":
            break
    await stream.aclose()

    assert dispatcher.state == RunState.CANCELLED
    entry = store.get_entry(nb.id, 0)
    assert entry is not None
    assert entry.output == ""


async def test_task_cancellation_terminates_the_process(store: NotebookStore) -> None:
    nb = make_notebook(store)
    store.append_entry(nb.id, "x")
    dispatcher = RunDispatcher(store, agent_specs(gemini=python_agent(SLOW)), terminate_grace=2.0)
    started = asyncio.Event()

    async def consume() -> None:
        async for event in dispatcher.run(nb.id, 0, Model.GEMINI):
            if event.event == "chunk":
                started.set()

    task = asyncio.create_task(consume())
    await asyncio.wait_for(started.wait(), timeout=10)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert dispatcher.state == RunState.CANCELLED
    entry = store.get_entry(nb.id, 0)
    assert entry is not None
    assert entry.output == ""


async def test_unknown_notebook_or_entry(store: NotebookStore) -> None:
    nb = make_notebook(store)
    dispatcher = RunDispatcher(store)

    missing_nb = await dispatcher.prepare("doesnotexist", 0, Model.GEMINI)
    assert missing_nb.code == "NOT_FOUND"

    missing_entry = await dispatcher.prepare(nb.id, 4, Model.GEMINI)
    assert missing_entry.code == "NOT_FOUND"

    bad_id = await dispatcher.prepare("../etc", 0, Model.GEMINI)
    assert bad_id.code == "INVALID_ID"

    bad_model = await dispatcher.prepare(nb.id, 0, "gpt")
    assert bad_model.code == "INVALID_MODEL"

    events = await _collect(dispatcher.run("doesnotexist", 0, Model.GEMINI))
    assert [e.event for e in events] == ["error"]
    assert dispatcher.state == RunState.FAILED


async def test_question_flow_fills_both_columns(store: NotebookStore) -> None:
    nb = make_notebook(store)
    index = store.append_entry(nb.id, "explain the build")
    assert index == 0
    specs = agent_specs(
        router=python_agent("print('question')"),
        claude=python_agent("import sys; print('claude: ' + sys.stdin.read())", stdin=True),
        gemini=python_agent("import sys; print('gemini: ' + sys.argv[1])"),
    )

    await _collect(RunDispatcher(store, specs).run(nb.id, 0, Model.ROUTER))
    entry = store.get_entry(nb.id, 0)
    assert entry is not None
    assert entry.intent == Intent.QUESTION

    await asyncio.gather(
        _collect(RunDispatcher(store, specs).run(nb.id, 0, Model.CLAUDE)),
        _collect(RunDispatcher(store, specs).run(nb.id, 0, Model.GEMINI)),
    )
    entry = store.get_entry(nb.id, 0)
    assert entry is not None
    assert entry.output.strip() == "gemini: explain the build"
    assert entry.output_claude.strip() == "claude: explain the build"
    assert entry.intent == Intent.QUESTION
