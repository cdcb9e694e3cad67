"""Run one agent process against a notebook's worktree and stream its output.

Flow of a single run:
1. ``prepare`` resolves the notebook's worktree and the entry's prompt
2. The agent is started in the worktree with stdout and stderr merged
3. Each chunk goes through one ``OutputTee``: accumulated for persistence,
   and yielded to the caller straight away
4. On exit the accumulated output is saved (also on failure) and a terminal
   ``done`` or ``error`` event is yielded
5. On cancellation the process is terminated, nothing is saved and no
   terminal event is yielded
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import time
from collections.abc import AsyncGenerator, Awaitable, Mapping
from contextlib import aclosing
from enum import StrEnum
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel

from trybook.agent.models import DEFAULT_SPECS, Model, ModelSpec
from trybook.agent.router import build_router_prompt, classify_intent
from trybook.config import worktree_dir
from trybook.core import Result
from trybook.notebook.store import NotebookStore
from trybook.validate import validate_notebook_id

logger = logging.getLogger("trybook.dispatcher")

T = TypeVar("T")

CHUNK_SIZE = 4096
TERMINATE_GRACE_SECONDS = 5.0


class RunState(StrEnum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunEvent:
    """One item of a run's output stream."""

    def __init__(self, event: str, text: str = "", code: str | None = None) -> None:
        self.event = event
        self.text = text
        self.code = code

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"text": self.text}
        if self.code:
            data["code"] = self.code
        return {"event": self.event, "data": data}

    def render(self) -> str:
        """Plain-text form written to a streaming HTTP body."""
        if self.event == "done":
            return "\n[done]\n"
        if self.event == "error":
            return f"\n[{self.text}]\n"
        return self.text


def stage_event(text: str) -> RunEvent:
    return RunEvent("stage", text)


def chunk_event(text: str) -> RunEvent:
    return RunEvent("chunk", text)


def done_event() -> RunEvent:
    return RunEvent("done")


def error_event(message: str, code: str = "RUN_FAILED") -> RunEvent:
    return RunEvent("error", message, code)


class RunPlan(BaseModel):
    notebook_id: str
    index: int
    model: Model
    prompt: str
    cwd: Path


class OutputTee:
    """Single sink for process output.

    ``write`` records a chunk for persistence and returns the text to forward
    to the client. UTF-8 sequences split across chunks are decoded once
    complete.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: list[str] = []

    def write(self, data: bytes) -> str:
        text = self._decoder.decode(data)
        if text:
            self._parts.append(text)
        return text

    def close(self) -> str:
        text = self._decoder.decode(b"", final=True)
        if text:
            self._parts.append(text)
        return text

    @property
    def text(self) -> str:
        return "".join(self._parts)


class RunCancelled(Exception):
    """The caller's cancel event fired before the process finished."""


class RunDispatcher:
    """Drives one agent run from start to a terminal state.

    Create one dispatcher per run; ``state`` reports where it got to.
    """

    def __init__(
        self,
        store: NotebookStore,
        specs: Mapping[Model, ModelSpec] | None = None,
        *,
        chunk_size: int = CHUNK_SIZE,
        terminate_grace: float = TERMINATE_GRACE_SECONDS,
    ) -> None:
        self._store = store
        self._specs = dict(specs or DEFAULT_SPECS)
        self._chunk_size = chunk_size
        self._terminate_grace = terminate_grace
        self.state = RunState.IDLE
        self.returncode: int | None = None

    async def prepare(self, notebook_id: str, index: int, model: Model | str) -> Result[RunPlan]:
        """Resolve the worktree and prompt for a run. Unknown ids are reported, not raised."""
        result: Result[RunPlan] = Result()
        checked = validate_notebook_id(notebook_id)
        if not checked.ok or checked.data is None:
            result.extend(checked)
            return result
        try:
            m = Model(model)
        except ValueError:
            result.error("INVALID_MODEL", f"unknown model: {model!r}")
            return result

        notebook = await asyncio.to_thread(self._store.get_notebook, checked.data)
        if notebook is None:
            result.error("NOT_FOUND", f"Notebook {checked.data} not found")
            return result
        entry = await asyncio.to_thread(self._store.get_entry, checked.data, index)
        if entry is None:
            result.error("NOT_FOUND", f"Entry {index} not found in notebook {checked.data}")
            return result

        result.data = RunPlan(
            notebook_id=notebook.id,
            index=index,
            model=m,
            prompt=entry.prompt,
            cwd=worktree_dir(notebook.org, notebook.repo, notebook.worktree),
        )
        return result

    async def run(
        self, notebook_id: str, index: int, model: Model | str, cancel: asyncio.Event | None = None
    ) -> AsyncGenerator[RunEvent]:
        """``prepare`` followed by ``stream``."""
        plan = await self.prepare(notebook_id, index, model)
        if not plan.ok or plan.data is None:
            self.state = RunState.FAILED
            yield error_event(plan.message, plan.code or "RUN_FAILED")
            return
        async with aclosing(self.stream(plan.data, cancel)) as events:
            async for event in events:
                yield event

    def _build_env(self, spec: ModelSpec) -> dict[str, str]:
        env = dict(os.environ)
        if not env.get(spec.credential_env):
            logger.warning("%s not set; starting %s anyway", spec.credential_env, spec.executable)
        return env

    async def stream(self, plan: RunPlan, cancel: asyncio.Event | None = None) -> AsyncGenerator[RunEvent]:
        """Start the agent for ``plan`` and yield its output as it arrives."""
        spec = self._specs[plan.model]
        prompt = build_router_prompt(plan.prompt) if plan.model == Model.ROUTER else plan.prompt
        argv = spec.argv(prompt)
        stdin_data = spec.stdin(prompt)

        self.state = RunState.STARTING
        yield stage_event(f"Starting {plan.model}...\n\n")

        logger.info("running model=%s in %s", plan.model, plan.cwd)
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(plan.cwd),
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self._build_env(spec),
            )
        except OSError as e:
            self.state = RunState.FAILED
            logger.error("%s start error: %s", plan.model, e)
            yield error_event(f"error: failed to start {plan.model}: {e}", "START_FAILED")
            return

        stdout, stdin = proc.stdout, proc.stdin
        if stdout is None or (stdin_data is not None and stdin is None):
            await self._terminate(proc)
            raise RuntimeError(f"{plan.model}: process pipes were not opened")
        feeder = None
        if stdin is not None and stdin_data is not None:
            feeder = asyncio.create_task(self._feed_stdin(stdin, stdin_data))
        tee = OutputTee()
        finished = False
        self.state = RunState.STREAMING
        try:
            while True:
                chunk = await self._until_cancelled(stdout.read(self._chunk_size), cancel)
                if not chunk:
                    break
                text = tee.write(chunk)
                if text:
                    yield chunk_event(text)
            tail = tee.close()
            if tail:
                yield chunk_event(tail)
            self.returncode = await self._until_cancelled(proc.wait(), cancel)
            finished = True
        except RunCancelled:
            pass
        finally:
            if feeder is not None and not feeder.done():
                feeder.cancel()
            if not finished:
                self.state = RunState.CANCELLED
                await self._terminate(proc)
                logger.info("%s cancelled after %.3fs; output not saved", plan.model, time.monotonic() - start)

        if not finished:
            return

        elapsed = time.monotonic() - start
        output = tee.text
        if self.returncode != 0:
            logger.warning("%s exited with status %s (%.3fs)", plan.model, self.returncode, elapsed)
            self.state = RunState.FAILED
            if plan.model != Model.ROUTER and not await self._save(plan, output):
                yield error_event(f"{plan.model}: failed to save output", "STORE_ERROR")
                return
            yield error_event(f"{plan.model} exited with error: exit status {self.returncode}", "EXIT_STATUS")
            return

        logger.info("%s complete (%.3fs, %d chars)", plan.model, elapsed, len(output))
        if not await self._save(plan, output):
            self.state = RunState.FAILED
            yield error_event(f"{plan.model}: failed to save output", "STORE_ERROR")
            return
        self.state = RunState.COMPLETED
        yield done_event()

    async def _save(self, plan: RunPlan, output: str) -> bool:
        """Persist a finished run: the intent for the router, the output otherwise."""
        try:
            if plan.model == Model.ROUTER:
                intent = classify_intent(output)
                await asyncio.to_thread(self._store.set_entry_intent, plan.notebook_id, plan.index, intent)
            else:
                await asyncio.to_thread(
                    self._store.set_entry_output, plan.notebook_id, plan.index, plan.model.value, output
                )
        except Exception:
            logger.exception("saving %s result for %s[%d] failed", plan.model, plan.notebook_id, plan.index)
            return False
        return True

    async def _until_cancelled(self, aw: Awaitable[T], cancel: asyncio.Event | None) -> T:
        """Await ``aw`` unless ``cancel`` is set first, in which case raise RunCancelled."""
        if cancel is None:
            return await aw
        if cancel.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            raise RunCancelled
        work = asyncio.ensure_future(aw)
        stop = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not work.done():
                work.cancel()
        if work.done() and not work.cancelled():
            return work.result()
        raise RunCancelled

    async def _feed_stdin(self, stdin: asyncio.StreamWriter, data: bytes) -> None:
        try:
            stdin.write(data)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("agent closed stdin early")
        finally:
            stdin.close()

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._terminate_grace)
        except TimeoutError:
            proc.kill()
            await proc.wait()
        except asyncio.CancelledError:
            # Cancelled again while waiting out the grace period
            if proc.returncode is None:
                proc.kill()
            raise
