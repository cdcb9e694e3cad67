"""FastAPI server for Trybook."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections.abc import AsyncGenerator
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from trybook.agent.dispatcher import RunDispatcher
from trybook.agent.models import Model, resolve_specs
from trybook.agent.router import models_for_intent
from trybook.config import db_path, ensure_dirs, load_config, worktree_dir
from trybook.core import Result
from trybook.git.repo import short_head
from trybook.notebook.session import SessionNotes
from trybook.notebook.store import get_store
from trybook.notebook.workspace import open_notebook
from trybook.validate import is_safe_token, parse_repo_input, validate_notebook_id, validate_prompt

logger = logging.getLogger("trybook.server")

app = FastAPI(title="Trybook", version="0.1.0")

SESSION_COOKIE = "tb"
SESSION_MAX_AGE = 86400 * 7

_STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
    "X-Content-Type-Options": "nosniff",
}

_OPEN_STATUS = {"INVALID_REPO": 400, "GIT_TIMEOUT": 504}

# Ephemeral per-browser notebooks, keyed by the session cookie
_session_notes = SessionNotes()


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})


def _result_error(result: Result[Any], status_code: int) -> JSONResponse:
    return _error(status_code, result.code or "ERROR", result.message)


def _session_id(request: Request) -> tuple[str, bool]:
    """Return the caller's session token and whether it was just issued."""
    sid = request.cookies.get(SESSION_COOKIE, "")
    if sid:
        return sid, False
    return secrets.token_hex(16), True


def _set_session_cookie(response: Response, sid: str) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        sid,
        path="/",
        httponly=True,
        samesite="lax",
        max_age=SESSION_MAX_AGE,
    )


@app.on_event("startup")
async def _startup() -> None:
    ensure_dirs()
    store = get_store(db_path())
    logger.info("Trybook store at %s", store.path)


@app.get("/healthz")
async def healthz() -> PlainTextResponse:
    return PlainTextResponse("ok")


@app.get("/api/health")
async def health() -> dict[str, Any]:
    store = get_store(db_path())
    return {"ok": True, "db": str(store.path)}


@app.get("/api/notebooks")
async def list_notebooks() -> list[dict[str, Any]]:
    config = load_config()
    store = get_store(db_path())
    summaries = await asyncio.to_thread(store.list_notebooks, config.notebooks.list_limit)
    return [s.model_dump() for s in summaries]


class OpenRequest(BaseModel):
    repo: str


@app.post("/api/notebooks")
async def create_notebook(request: OpenRequest) -> Any:
    logger.info("POST /api/notebooks repo=%r", request.repo)
    parsed = parse_repo_input(request.repo)
    if not parsed.ok or parsed.data is None:
        return _result_error(parsed, 400)
    org, repo = parsed.data

    config = load_config()
    ensure_dirs()
    store = get_store(db_path())
    opened = await open_notebook(config, store, org, repo)
    if not opened.ok or opened.data is None:
        logger.warning("open_notebook failed for %s/%s: %s", org, repo, opened.message)
        return _result_error(opened, _OPEN_STATUS.get(opened.code or "", 502))
    return JSONResponse(status_code=201, content=opened.data.model_dump())


@app.get("/api/notebooks/{notebook_id}")
async def get_notebook(notebook_id: str) -> Any:
    checked = validate_notebook_id(notebook_id)
    if not checked.ok or checked.data is None:
        return _result_error(checked, 400)
    store = get_store(db_path())
    loaded = await asyncio.to_thread(store.load_notebook, checked.data)
    if not loaded.ok or loaded.data is None:
        return _result_error(loaded, 404)
    notebook, entries = loaded.data
    return {
        "notebook": {**notebook.model_dump(), "commit_short": notebook.commit_short},
        "entries": [e.model_dump() for e in entries],
    }


class PromptRequest(BaseModel):
    prompt: str


@app.post("/api/notebooks/{notebook_id}/entries")
async def add_entry(notebook_id: str, request: PromptRequest) -> Any:
    checked = validate_notebook_id(notebook_id)
    if not checked.ok or checked.data is None:
        return _result_error(checked, 400)
    prompt = validate_prompt(request.prompt)
    if not prompt.ok or prompt.data is None:
        return _result_error(prompt, 400)

    store = get_store(db_path())
    notebook = await asyncio.to_thread(store.get_notebook, checked.data)
    if notebook is None:
        return _error(404, "NOT_FOUND", f"Notebook {checked.data} not found")
    index = await asyncio.to_thread(store.append_entry, checked.data, prompt.data)
    return JSONResponse(status_code=201, content={"notebook_id": checked.data, "index": index})


@app.get("/api/notebooks/{notebook_id}/entries/{index}/route")
async def route_entry(notebook_id: str, index: int) -> Any:
    """Tell the caller which agents to dispatch once the router has run."""
    checked = validate_notebook_id(notebook_id)
    if not checked.ok or checked.data is None:
        return _result_error(checked, 400)
    store = get_store(db_path())
    entry = await asyncio.to_thread(store.get_entry, checked.data, index)
    if entry is None:
        return _error(404, "NOT_FOUND", f"Entry {index} not found in notebook {checked.data}")
    return {"intent": entry.intent.value, "models": [m.value for m in models_for_intent(entry.intent)]}


class RunRequest(BaseModel):
    notebook_id: str
    index: int
    model: Model = Model.GEMINI


async def _prepare_run(request: RunRequest) -> tuple[RunDispatcher, Any]:
    config = load_config()
    store = get_store(db_path())
    dispatcher = RunDispatcher(store, resolve_specs(config))
    plan = await dispatcher.prepare(request.notebook_id, request.index, request.model)
    return dispatcher, plan


@app.post("/run")
async def run(request: RunRequest) -> Any:
    """Stream one agent run as plain text, flushed chunk by chunk."""
    logger.info("POST /run nb=%s idx=%d model=%s", request.notebook_id, request.index, request.model)
    dispatcher, plan = await _prepare_run(request)
    if not plan.ok or plan.data is None:
        return _result_error(plan, 404 if plan.code == "NOT_FOUND" else 400)

    async def _body() -> AsyncGenerator[bytes]:
        async for event in dispatcher.stream(plan.data):
            yield event.render().encode("utf-8")
        logger.info("/run %s finished: %s", request.model, dispatcher.state)

    return StreamingResponse(_body(), media_type="text/plain; charset=utf-8", headers=_STREAM_HEADERS)


@app.post("/api/run")
async def run_events(request: RunRequest) -> Any:
    """Stream one agent run as server-sent events."""
    logger.info("POST /api/run nb=%s idx=%d model=%s", request.notebook_id, request.index, request.model)
    dispatcher, plan = await _prepare_run(request)
    if not plan.ok or plan.data is None:
        return _result_error(plan, 404 if plan.code == "NOT_FOUND" else 400)

    async def _event_stream() -> AsyncGenerator[dict[str, str]]:
        async for event in dispatcher.stream(plan.data):
            event_dict = event.to_dict()
            yield {"event": event_dict["event"], "data": json.dumps(event_dict["data"])}
        logger.info("SSE run %s finished: %s", request.model, dispatcher.state)

    return EventSourceResponse(_event_stream())


@app.get("/api/head")
async def head(nb: str = "") -> Any:
    """Short head commit of a notebook's worktree."""
    checked = validate_notebook_id(nb)
    if not checked.ok or checked.data is None:
        return _result_error(checked, 400)
    store = get_store(db_path())
    notebook = await asyncio.to_thread(store.get_notebook, checked.data)
    if notebook is None:
        return _error(404, "NOT_FOUND", f"Notebook {checked.data} not found")
    sha = await short_head(worktree_dir(notebook.org, notebook.repo, notebook.worktree))
    if sha is None:
        return _error(502, "GIT_ERROR", "could not read head commit")
    return PlainTextResponse(sha)


@app.get("/api/r/{org}/{repo}")
async def session_entries(org: str, repo: str, request: Request) -> Any:
    if not is_safe_token(org) or not is_safe_token(repo):
        return _error(400, "INVALID_REPO", "invalid org or repo")
    sid, issued = _session_id(request)
    entries = _session_notes.get_entries(sid, org, repo)
    response = JSONResponse(content={"org": org, "repo": repo, "entries": [e.model_dump() for e in entries]})
    if issued:
        _set_session_cookie(response, sid)
    return response


@app.post("/api/r/{org}/{repo}")
async def session_append(org: str, repo: str, body: PromptRequest, request: Request) -> Any:
    if not is_safe_token(org) or not is_safe_token(repo):
        return _error(400, "INVALID_REPO", "invalid org or repo")
    prompt = validate_prompt(body.prompt)
    if not prompt.ok or prompt.data is None:
        return _result_error(prompt, 400)
    sid, issued = _session_id(request)
    index = _session_notes.append_entry(sid, org, repo, prompt.data)
    response = JSONResponse(status_code=201, content={"index": index})
    if issued:
        _set_session_cookie(response, sid)
    return response
