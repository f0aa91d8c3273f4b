from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from usbide.codex.environment import build_environment, redacted_view
from usbide.codex.invocation import Operation, build_command, format_argv
from usbide.core.errors import UsbideError
from usbide.core.log_setup import setup_logger
from usbide.core.paths import WorkspacePaths, ensure_portable_dirs
from usbide.diagnostics.classifier import diagnostic_for_error
from usbide.incidents.log import IncidentLog
from usbide.protocol.records import DisplayEvent
from usbide.runner.runner import SubprocessRunner, spawn_argv
from usbide.session.session import CodexSession, InvocationResult


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="usbide")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_res = sub.add_parser("resolve", help="Show which Codex executable would run, and how")
    p_res.add_argument("--root", default=str(Path.cwd()), help="Workspace root (default: cwd)")
    p_res.add_argument("--json", action="store_true", help="Emit JSON to stdout")
    p_res.add_argument("--show-env", action="store_true", help="List child environment variable names (values masked)")

    p_status = sub.add_parser("status", help="Run `codex login status`")
    p_status.add_argument("--root", default=str(Path.cwd()), help="Workspace root (default: cwd)")
    p_status.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    p_login = sub.add_parser("login", help="Run `codex login` with the workspace CODEX_HOME")
    p_login.add_argument("--root", default=str(Path.cwd()), help="Workspace root (default: cwd)")
    p_login.add_argument(
        "--device-auth",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Use the device-code flow (default: USBIDE_CODEX_DEVICE_AUTH).",
    )
    p_login.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    p_exec = sub.add_parser("exec", help="Send one prompt to `codex exec --json` and stream the transcript")
    p_exec.add_argument("prompt", help="Prompt text (one argument)")
    p_exec.add_argument("--root", default=str(Path.cwd()), help="Workspace root (default: cwd)")
    p_exec.add_argument("--json", action="store_true", help="Emit NDJSON display events, then the result")

    p_inst = sub.add_parser("install", help="Install Codex under <root>/.usbide/codex with the portable npm")
    p_inst.add_argument("--root", default=str(Path.cwd()), help="Workspace root (default: cwd)")
    p_inst.add_argument("--force", action="store_true", help="Reinstall even when already present")
    p_inst.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    p_serve = sub.add_parser("serve", help="Run the local HTTP API (FastAPI; optional dependency)")
    p_serve.add_argument("--root", default=str(Path.cwd()), help="Workspace root (default: cwd)")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8765)

    return parser.parse_args(argv)


def _session(root: Path) -> CodexSession:
    paths = WorkspacePaths(root=root)
    setup_logger(paths.log_path())
    ensure_portable_dirs(paths)
    return CodexSession(root, SubprocessRunner(), incidents=IncidentLog(paths.incident_log_path()))


def _print_event(ev: DisplayEvent) -> None:
    print(f"{ev.label}: {ev.text}", flush=True)


def _report(res: InvocationResult, as_json: bool) -> int:
    if as_json:
        print(json.dumps(res.to_json_obj(), ensure_ascii=False))
    else:
        for ev in res.events:
            _print_event(ev)
        if res.diagnostic is not None and not res.ok:
            print(res.diagnostic.guidance, file=sys.stderr)
    return 0 if res.ok else 1


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    args = _parse_args(argv)
    root = Path(args.root).resolve()

    if args.cmd == "serve":
        from usbide.api.server import run_api_server

        run_api_server(root=root, host=str(args.host), port=int(args.port))
        return 0

    try:
        session = _session(root)

        if args.cmd == "resolve":
            cand = session.candidate()
            env = build_environment(session.paths, session.overrides, os.environ.copy(), cand, is_windows=session.resolver.is_windows)
            spec = build_command(Operation.STATUS)
            out = {
                "ok": True,
                "candidate": cand.to_json_obj(),
                "status_command": format_argv(spawn_argv(cand, cand.strategy, spec.argv, env)),
                "overrides": session.overrides.to_json_obj(),
            }
            if args.show_env:
                out["env"] = redacted_view(env)
            if args.json:
                print(json.dumps(out, ensure_ascii=False, indent=2))
            else:
                print(f"{cand.origin.value}: {cand.executable_path}")
                if cand.entrypoint_path is not None:
                    print(f"entrypoint: {cand.entrypoint_path}")
                print(f"strategy: {cand.strategy.value}")
                print(f"status command: {out['status_command']}")
                for k, v in sorted(out.get("env", {}).items()):
                    print(f"  {k}={v}")
            return 0

        if args.cmd == "status":
            return _report(session.status(), args.json)

        if args.cmd == "login":
            return _report(session.login(device_auth=args.device_auth), args.json)

        if args.cmd == "install":
            return _report(session.install(force=args.force), args.json)

        if args.cmd == "exec":
            inv = session.start_exec(args.prompt)
            try:
                for ev in inv.stream():
                    if args.json:
                        print(json.dumps({"event": ev.to_json_obj()}, ensure_ascii=False), flush=True)
                    else:
                        _print_event(ev)
            except KeyboardInterrupt:
                inv.cancel()
            res = inv.result()
            if args.json:
                print(json.dumps({"result": res.to_json_obj()}, ensure_ascii=False))
            elif res.diagnostic is not None and not res.ok:
                print(res.diagnostic.guidance, file=sys.stderr)
            return 0 if res.ok else 1

    except UsbideError as e:
        diag = diagnostic_for_error(e)
        if getattr(args, "json", False):
            print(json.dumps({"ok": False, "error": str(e), "diagnostic": diag.to_json_obj()}, ensure_ascii=False))
        else:
            print(diag.guidance, file=sys.stderr)
        return 2
    except ValueError as e:
        # Rejected override values (e.g. secrets in USBIDE_CODEX_EXTRA_ARGS).
        print(str(e), file=sys.stderr)
        return 2

    raise SystemExit(f"unknown command: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
