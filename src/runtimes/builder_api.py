from __future__ import annotations

import logging
import os
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.builder.errors import BuilderError, ErrorKind
from src.builder.preview_logs import build_preview_fix_prompt
from src.builder.service import BuilderService

load_dotenv()

app = FastAPI()

_service: BuilderService | None = None
logger = logging.getLogger(__name__)

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.TIMEOUT: 503,
    ErrorKind.PROCESS_FAILURE: 502,
    ErrorKind.EMPTY_SNAPSHOT: 500,
    ErrorKind.UNKNOWN: 500,
}


def _csv_env(name: str) -> list[str]:
    raw = (os.environ.get(name) or "").strip()
    return [p.strip() for p in raw.split(",") if p.strip()]


_cors_origins = _csv_env("CORS_ALLOW_ORIGINS")
if _cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _get_service() -> BuilderService:
    global _service
    if _service is None:
        _service = BuilderService.from_env()
    return _service


def status_for(err: BuilderError) -> int:
    if err.retryable:
        return 503
    return _STATUS_BY_KIND.get(err.kind, 500)


@app.exception_handler(BuilderError)
async def _builder_error_handler(_request: Request, exc: BuilderError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=status_for(exc))


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        body = {}
    return body if isinstance(body, dict) else {}


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/projects/{project_id}/scaffold")
async def api_scaffold(project_id: str) -> JSONResponse:
    result = await _get_service().scaffold(project_id)
    return JSONResponse({"success": True, **result.to_dict()}, status_code=200)


@app.post("/api/projects/{project_id}/preview")
async def api_start_preview(project_id: str) -> JSONResponse:
    result = await _get_service().start_preview(project_id)
    return JSONResponse(result.to_dict(), status_code=200)


@app.get("/api/projects/{project_id}/preview/errors")
async def api_preview_errors(project_id: str) -> JSONResponse:
    svc = _get_service()
    tail = await svc.get_preview_error_tail(project_id)
    if tail is None:
        return JSONResponse({"output": "", "hasErrors": False}, status_code=200)
    payload = tail.to_dict()
    if tail.has_errors:
        project = await svc.projects.get_project(project_id)
        payload["fixPrompt"] = build_preview_fix_prompt(
            tail, framework=project.framework if project else ""
        )
    return JSONResponse(payload, status_code=200)


@app.post("/api/projects/{project_id}/commands")
async def api_run_command(project_id: str, request: Request) -> JSONResponse:
    body = await _json_body(request)
    command = str(body.get("command") or "")
    result = await _get_service().run_command(project_id, command)
    return JSONResponse(result.to_dict(), status_code=200)


@app.get("/api/projects/{project_id}/files")
async def api_list_files(project_id: str) -> JSONResponse:
    files = await _get_service().list_files(project_id)
    return JSONResponse({"files": [f.to_dict() for f in files]}, status_code=200)


@app.get("/api/projects/{project_id}/files/content")
async def api_read_file(project_id: str, path: str) -> JSONResponse:
    f = await _get_service().read_file(project_id, path)
    return JSONResponse({"path": f.path, "content": f.content}, status_code=200)


@app.post("/api/projects/{project_id}/files")
async def api_file_action(project_id: str, request: Request) -> JSONResponse:
    body = await _json_body(request)
    content = body.get("content")
    result = await _get_service().apply_file_action(
        project_id,
        str(body.get("action") or ""),
        str(body.get("path") or ""),
        str(content) if isinstance(content, str) else None,
    )
    return JSONResponse(result.to_dict(), status_code=200)


@app.post("/api/projects/{project_id}/sandbox/pause")
async def api_pause_sandbox(project_id: str) -> JSONResponse:
    outcome = await _get_service().pause_sandbox(project_id)
    return JSONResponse({"ok": outcome.ok}, status_code=200)


@app.delete("/api/projects/{project_id}/sandbox")
async def api_teardown(project_id: str, delete_files: bool = False) -> JSONResponse:
    outcome = await _get_service().teardown(project_id, delete_files=delete_files)
    return JSONResponse({"ok": outcome.ok}, status_code=200)
