"""HTTP surface for the script panel.

Exposes run/stop/status over a Flask blueprint, a server-sent event stream
of status changes, and a WebSocket that attaches a browser terminal to a
session. Responses use the ``{"ok": bool, "data"|"error": ...}`` envelope.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Dict, Optional

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from .config import RunMateConfig, config_path, config_stamp, load_config, save_config
from .errors import ErrorCode
from .lifecycle import ExecutionLifecycle, RunResult, StopMode, normalize_identity
from .pool import CapacityAction
from .scanner import ScriptScanner, has_parameters

logger = logging.getLogger(__name__)

runmate_bp = Blueprint("runmate", __name__)

DEFAULT_STATE_FILE = Path(os.path.expanduser("~/.cache/runmate/state_store.json"))
EVENT_KEEPALIVE_SECONDS = 25
STATE_STORE_LOCK = threading.RLock()
_WIRING_LOCK = threading.RLock()

_STATUS_CODES = {
    ErrorCode.ALREADY_RUNNING: 409,
    ErrorCode.NOT_RUNNING: 409,
    ErrorCode.START_CANCELLED: 409,
    ErrorCode.SECURITY_DENIED: 403,
    ErrorCode.SECURITY_DECLINED: 403,
    ErrorCode.PERMISSION_GRANT_FAILED: 500,
    ErrorCode.SCRIPT_UNREADABLE: 500,
    ErrorCode.SESSION_ACQUISITION_FAILED: 500,
}


# ----------------------------------------------------------------------
# Wiring helpers


def _config() -> RunMateConfig:
    """Live config; re-read when ``run-mate.json`` changes, appears or goes away."""
    with _WIRING_LOCK:
        root = current_app.config.get("RUNMATE_WORKSPACE")
        stamp = config_stamp(root)
        config = current_app.config.get("RUNMATE_CONFIG")
        if not isinstance(config, RunMateConfig):
            config = load_config(root)
            current_app.config["RUNMATE_CONFIG"] = config
        elif stamp != current_app.config.get("RUNMATE_CONFIG_STAMP"):
            _apply_config(load_config(root))
            logger.info("RunMate configuration reloaded from %s", config_path(root))
        current_app.config["RUNMATE_CONFIG_STAMP"] = stamp
        return config


def _apply_config(fresh: RunMateConfig) -> None:
    lifecycle = current_app.config.get("RUNMATE_LIFECYCLE")
    if isinstance(lifecycle, ExecutionLifecycle):
        lifecycle.apply_config(fresh)
    else:
        current_app.config["RUNMATE_CONFIG"].update_from(fresh)


def _capacity_policy(total: int, ceiling: int) -> Optional[CapacityAction]:
    logger.warning("Terminal limit exceeded (%d/%d)", total, ceiling)
    return None


def _lifecycle() -> ExecutionLifecycle:
    with _WIRING_LOCK:
        config = _config()
        lifecycle = current_app.config.get("RUNMATE_LIFECYCLE")
        if not isinstance(lifecycle, ExecutionLifecycle):
            lifecycle = ExecutionLifecycle(config, on_capacity_exceeded=_capacity_policy)
            current_app.config["RUNMATE_LIFECYCLE"] = lifecycle
        return lifecycle


def _scanner() -> ScriptScanner:
    config = _config()
    return ScriptScanner(
        config.workspace_root,
        ignore_directories=config.ignore_directories,
        custom_sort=config.custom_sort,
    )


def _state_file() -> Path:
    configured = current_app.config.get("RUNMATE_STATE_FILE")
    return Path(configured) if configured else DEFAULT_STATE_FILE


def _load_state_store() -> Dict[str, Any]:
    path = _state_file()
    with STATE_STORE_LOCK:
        try:
            if path.is_file():
                with path.open("r", encoding="utf-8") as fh:
                    data = json.load(fh)
                    if isinstance(data, dict):
                        return data
        except (OSError, ValueError) as exc:
            logger.error("Failed to load state store: %s", exc)
        return {}


def _save_state_store(store: Dict[str, Any]) -> None:
    path = _state_file()
    with STATE_STORE_LOCK:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(store, fh, indent=2, ensure_ascii=False)
        tmp_path.replace(path)


def _remember_parameters(identity: str, parameters: str) -> None:
    with STATE_STORE_LOCK:
        store = _load_state_store()
        params = dict(store.get("parameters") or {})
        params[identity] = parameters
        store["parameters"] = params
        _save_state_store(store)


def _result_response(result: RunResult, *, ok_status: int = 200):
    payload = result.to_payload()
    if result.ok:
        return jsonify({"ok": True, "data": payload}), ok_status
    status = _STATUS_CODES.get(result.code, 500) if result.code else 500
    return jsonify({"ok": False, "error": result.message, "data": payload}), status


def _script_arg(payload: Dict[str, Any]) -> Optional[str]:
    script = payload.get("script") or payload.get("path")
    if not isinstance(script, str) or not script.strip():
        return None
    return script


# ----------------------------------------------------------------------
# Scripts and runs


@runmate_bp.route("/scripts", methods=["GET"])
def list_scripts() -> Any:
    lifecycle = _lifecycle()
    groups = {}
    for group, scripts in _scanner().scan().items():
        entries = []
        for script in scripts:
            entry = script.to_payload()
            entry["status"] = lifecycle.get_status(script.path).value
            entry["has_parameters"] = has_parameters(script.path)
            entries.append(entry)
        groups[group] = entries
    return jsonify({"ok": True, "data": groups})


@runmate_bp.route("/runs", methods=["GET"])
def list_runs() -> Any:
    lifecycle = _lifecycle()
    return jsonify({"ok": True, "data": {"runs": lifecycle.list_runs(), "counts": lifecycle.get_pool_counts()}})


@runmate_bp.route("/runs/status", methods=["GET"])
def run_status() -> Any:
    script = request.args.get("script")
    if not script:
        return jsonify({"ok": False, "error": 'query parameter "script" is required'}), 400
    identity = normalize_identity(script)
    return jsonify({"ok": True, "data": {"script": identity, "status": _lifecycle().get_status(identity).value}})


@runmate_bp.route("/runs", methods=["POST"])
def start_run() -> Any:
    payload = request.get_json(silent=True) or {}
    script = _script_arg(payload)
    if not script:
        return jsonify({"ok": False, "error": "script is required"}), 400
    parameters = payload.get("parameters") or ""
    if not isinstance(parameters, str):
        return jsonify({"ok": False, "error": "parameters must be a string"}), 400
    confirmed = payload.get("confirmed") is True

    lifecycle = _lifecycle()
    found = _scanner().find(script)
    if found is None:
        return jsonify({"ok": False, "error": f"Script not found in workspace: {script}"}), 404
    result = lifecycle.request(found.path, parameters, confirm=lambda _verdict: confirmed)
    if result.ok and parameters and lifecycle.config.remember_last_parameters:
        try:
            _remember_parameters(result.identity, parameters)
        except OSError as exc:
            logger.warning("Failed to remember parameters for %s: %s", result.identity, exc)
    return _result_response(result, ok_status=202)


@runmate_bp.route("/runs/stop", methods=["POST"])
def stop_run() -> Any:
    payload = request.get_json(silent=True) or {}
    script = _script_arg(payload)
    if not script:
        return jsonify({"ok": False, "error": "script is required"}), 400
    try:
        mode = StopMode(str(payload.get("mode") or StopMode.GRACEFUL.value).lower())
    except ValueError:
        return jsonify({"ok": False, "error": f"Unsupported stop mode '{payload.get('mode')}'"}), 400
    return _result_response(_lifecycle().stop(script, mode))


@runmate_bp.route("/parameters", methods=["GET"])
def get_parameters() -> Any:
    script = request.args.get("script")
    if not script:
        return jsonify({"ok": False, "error": 'query parameter "script" is required'}), 400
    if not _config().remember_last_parameters:
        return jsonify({"ok": True, "data": {"script": script, "parameters": None}})
    identity = normalize_identity(script)
    params = (_load_state_store().get("parameters") or {}).get(identity)
    return jsonify({"ok": True, "data": {"script": identity, "parameters": params}})


@runmate_bp.route("/parameters", methods=["PUT"])
def put_parameters() -> Any:
    payload = request.get_json(silent=True) or {}
    script = _script_arg(payload)
    parameters = payload.get("parameters")
    if not script or not isinstance(parameters, str):
        return jsonify({"ok": False, "error": "script and parameters are required"}), 400
    identity = normalize_identity(script)
    try:
        _remember_parameters(identity, parameters)
    except OSError as exc:
        return jsonify({"ok": False, "error": f"Failed to persist state: {exc}"}), 500
    return jsonify({"ok": True, "data": {"script": identity, "parameters": parameters}})


# ----------------------------------------------------------------------
# Configuration


@runmate_bp.route("/config", methods=["GET"])
def get_config() -> Any:
    return jsonify({"ok": True, "data": _config().to_payload()})


@runmate_bp.route("/config", methods=["PUT"])
def put_config() -> Any:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or not payload:
        return jsonify({"ok": False, "error": "settings object is required"}), 400
    root = _config().workspace_root
    with _WIRING_LOCK:
        try:
            fresh = save_config(payload, root)
        except (TypeError, ValueError) as exc:
            return jsonify({"ok": False, "error": f"Invalid setting: {exc}"}), 400
        except OSError as exc:
            return jsonify({"ok": False, "error": f"Failed to save configuration: {exc}"}), 500
        _apply_config(fresh)
        current_app.config["RUNMATE_CONFIG_STAMP"] = config_stamp(root)
    logger.info("RunMate configuration updated: %s", ", ".join(sorted(payload)))
    return jsonify({"ok": True, "data": _config().to_payload()})


# ----------------------------------------------------------------------
# Sessions


@runmate_bp.route("/sessions", methods=["GET"])
def list_sessions() -> Any:
    pool = _lifecycle().pool
    return jsonify({"ok": True, "data": [pool.describe(session) for session in pool.list_sessions()]})


@runmate_bp.route("/sessions/counts", methods=["GET"])
def session_counts() -> Any:
    lifecycle = _lifecycle()
    counts = lifecycle.get_pool_counts()
    ceiling = lifecycle.pool.ceiling
    data = dict(counts, limit=ceiling, over_limit=bool(ceiling) and counts["total"] > ceiling)
    return jsonify({"ok": True, "data": data})


@runmate_bp.route("/sessions/close", methods=["POST"])
def close_sessions() -> Any:
    payload = request.get_json(silent=True) or {}
    scope = str(payload.get("scope") or "settled").lower()
    pool = _lifecycle().pool
    if scope == "settled":
        closed = pool.close_settled()
    elif scope == "all":
        closed = pool.close_all()
    else:
        return jsonify({"ok": False, "error": f"Unsupported scope '{scope}'"}), 400
    return jsonify({"ok": True, "data": {"closed": closed}})


@runmate_bp.route("/sessions/<handle>/input", methods=["POST"])
def session_input(handle: str) -> Any:
    session = _lifecycle().pool.get(handle)
    if not session:
        return jsonify({"ok": False, "error": "Session not found"}), 404
    write = getattr(session.surface, "write", None)
    if write is None:
        return jsonify({"ok": False, "error": "Session does not accept input"}), 400
    payload = request.get_json(silent=True) or {}
    data = payload.get("data")
    if data is None:
        return jsonify({"ok": False, "error": "data is required"}), 400
    text = str(data)
    if payload.get("newline", True):
        text += "\n"
    try:
        write(text)
    except OSError as exc:
        return jsonify({"ok": False, "error": f"Failed to write to session: {exc}"}), 500
    return jsonify({"ok": True, "data": {"handle": handle}})


@runmate_bp.route("/sessions/<handle>/resize", methods=["POST"])
def session_resize(handle: str) -> Any:
    session = _lifecycle().pool.get(handle)
    if not session:
        return jsonify({"ok": False, "error": "Session not found"}), 404
    resize = getattr(session.surface, "resize", None)
    if resize is None:
        return jsonify({"ok": False, "error": "Session cannot be resized"}), 400
    payload = request.get_json(silent=True) or {}
    try:
        cols = int(payload.get("cols") or 80)
        rows = int(payload.get("rows") or 24)
    except (TypeError, ValueError):
        return jsonify({"ok": False, "error": "cols and rows must be integers"}), 400
    resize(cols, rows)
    return jsonify({"ok": True, "data": {"handle": handle, "cols": cols, "rows": rows}})


# ----------------------------------------------------------------------
# Status events


@runmate_bp.route("/events", methods=["GET"])
def status_events() -> Any:
    script = request.args.get("script")
    lifecycle = _lifecycle()
    queue: "Queue[Dict[str, Any]]" = Queue(maxsize=1000)
    listener = lifecycle.add_listener(queue, [script] if script else None)

    def generate():
        try:
            while True:
                try:
                    payload = queue.get(timeout=EVENT_KEEPALIVE_SECONDS)
                except Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield f"data: {json.dumps(payload)}\n\n"
        finally:
            lifecycle.remove_listener(listener)

    response = Response(stream_with_context(generate()), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


# WebSocket wiring for attaching a browser terminal to a session.
# Registers with the app-level Sock instance exposed via app.config["SOCK"].


def register_ws_routes(app) -> None:
    sock = app.config.get("SOCK")
    if not sock:
        return

    @sock.route("/api/sessions/ws/<handle>")
    def session_ws(ws, handle: str):  # type: ignore[no-redef]
        session = _lifecycle().pool.get(handle)
        surface = session.surface if session else None
        subscribe = getattr(surface, "subscribe_output", None)
        if subscribe is None:
            ws.close()
            return
        q = subscribe()
        stop = threading.Event()

        def sender() -> None:
            while not stop.is_set():
                try:
                    chunk = q.get(timeout=0.5)
                except Empty:
                    continue
                try:
                    ws.send(chunk)
                except Exception:  # pylint: disable=broad-except
                    stop.set()
                    break

        thread = threading.Thread(target=sender, daemon=True)
        thread.start()
        try:
            while not stop.is_set():
                msg = ws.receive()
                if msg is None:
                    break
                try:
                    surface.write(msg)
                except OSError:
                    break
        finally:
            stop.set()
            thread.join(timeout=1.0)
            surface.unsubscribe_output(q)
