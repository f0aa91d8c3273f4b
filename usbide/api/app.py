from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Iterator

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from usbide.api.auth import AuthConfig, require_api_auth
from usbide.core.errors import (
    ArgvError,
    AuthError,
    InvocationBusyError,
    ResolutionError,
    UsbideError,
)
from usbide.core.log_setup import setup_logger
from usbide.core.paths import WorkspacePaths
from usbide.diagnostics.classifier import diagnostic_for_error
from usbide.incidents.log import IncidentLog
from usbide.runner.runner import SubprocessRunner
from usbide.session.session import CodexSession


def _http_status_for(exc: UsbideError) -> int:
    if isinstance(exc, ArgvError):
        return 400
    if isinstance(exc, AuthError):
        return 401
    if isinstance(exc, ResolutionError):
        return 404
    if isinstance(exc, InvocationBusyError):
        return 409
    return 500


def create_app(*, root: Path, session: CodexSession | None = None, auth: AuthConfig | None = None) -> Any:
    """
    FastAPI façade over one CodexSession for a local editor front-end.

    Importing this module requires the `api` extra; the CLI only imports it
    for `serve`.
    """
    root = root.resolve()
    if session is None:
        paths = WorkspacePaths(root=root)
        setup_logger(paths.log_path())
        session = CodexSession(root, SubprocessRunner(), incidents=IncidentLog(paths.incident_log_path()))
    auth = auth or AuthConfig.from_env(os.environ)

    app = FastAPI(title="usbide assistant API", version="0.1.0")

    def _enforce(request: Request) -> None:
        try:
            require_api_auth(
                auth,
                client_host=getattr(getattr(request, "client", None), "host", None),
                authorization=request.headers.get("authorization"),
            )
        except PermissionError as e:
            raise HTTPException(status_code=403, detail=str(e))

    def _fail(exc: UsbideError) -> Any:
        diag = diagnostic_for_error(exc)
        return JSONResponse({"ok": False, "error": str(exc), "diagnostic": diag.to_json_obj()}, status_code=_http_status_for(exc))

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "root": str(root)}

    @app.get("/tool")
    def tool(request: Request, reload: bool = False) -> Any:
        _enforce(request)
        try:
            cand = session.reload() if reload else session.candidate()
        except UsbideError as e:
            return _fail(e)
        return JSONResponse({"ok": True, "candidate": cand.to_json_obj()})

    @app.post("/status")
    def status(request: Request) -> Any:
        _enforce(request)
        try:
            return JSONResponse(session.status().to_json_obj())
        except UsbideError as e:
            return _fail(e)

    @app.post("/login")
    def login(request: Request, device_auth: bool | None = None) -> Any:
        _enforce(request)
        try:
            return JSONResponse(session.login(device_auth=device_auth).to_json_obj())
        except UsbideError as e:
            return _fail(e)

    @app.post("/exec")
    def exec_prompt(request: Request, body: dict[str, Any] = Body(...)) -> Any:
        _enforce(request)
        prompt = body.get("prompt")
        if not isinstance(prompt, str):
            raise HTTPException(status_code=400, detail="body.prompt must be a string")
        try:
            inv = session.start_exec(prompt)
        except UsbideError as e:
            return _fail(e)

        def gen() -> Iterator[str]:
            try:
                for ev in inv.stream():
                    yield json.dumps({"event": ev.to_json_obj()}, ensure_ascii=False) + "\n"
                yield json.dumps({"result": inv.result().to_json_obj()}, ensure_ascii=False) + "\n"
            finally:
                # Client went away mid-stream: do not leave the child running.
                if not inv.done:
                    inv.cancel()
                    inv.result()

        return StreamingResponse(gen(), media_type="application/x-ndjson")

    @app.post("/cancel")
    def cancel(request: Request) -> Any:
        _enforce(request)
        return JSONResponse({"ok": True, "cancelled": session.cancel()})

    @app.post("/install")
    def install(request: Request, force: bool = False) -> Any:
        _enforce(request)
        try:
            return JSONResponse(session.install(force=force).to_json_obj())
        except UsbideError as e:
            return _fail(e)

    return app
