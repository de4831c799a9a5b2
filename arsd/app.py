"""Read-only HTTP status pages for the daemon.

Disabled unless ARS_STATUS_BIND is set. Exposes no way to change state;
reload/update stay on the Unix socket.
"""
from __future__ import annotations

import logging
import os
import threading
from typing import Any, Dict, List, Tuple

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.serving import make_server

from arsd.services import registry_store
from arsd.services.engine_store import EngineController
from arsd.services.errors import FetchError, StartupFatalError, public_error_message


logger = logging.getLogger(__name__)


def _list_rows(controller: EngineController) -> List[Dict[str, Any]]:
    s = controller.settings
    out: List[Dict[str, Any]] = []
    for entry in registry_store.read_entries(s.urls_file):
        try:
            name = registry_store.list_filename(entry.url)
        except FetchError:
            name = ""
        path = os.path.join(s.lists_dir, name) if name else ""
        exists = bool(path) and os.path.isfile(path)
        out.append(
            {
                "url": entry.url,
                "expires_at": entry.expires_at,
                "file": name,
                "exists": exists,
                "bytes": os.path.getsize(path) if exists else 0,
            }
        )
    return out


def create_app(controller: EngineController) -> Flask:
    app = Flask(__name__)

    @app.after_request
    def _security_headers(resp):
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.errorhandler(Exception)
    def _error(e: Exception):
        if isinstance(e, HTTPException):
            return e
        logger.exception("Status request failed")
        return jsonify({"error": public_error_message(e)}), 500

    @app.route("/health")
    def health():
        return jsonify({"ok": True})

    @app.route("/api/engine")
    def engine():
        snap = controller.handle.current
        return jsonify(
            {
                "generation": controller.handle.generation,
                "network_rules": snap.network_rule_count,
                "cosmetic_rules": snap.cosmetic_rule_count,
                "built_at": snap.built_at,
                "source": snap.source,
            }
        )

    @app.route("/api/lists")
    def lists():
        return jsonify({"lists": _list_rows(controller)})

    return app


def start_status_server(controller: EngineController, address: Tuple[str, int]):
    host, port = address
    try:
        srv = make_server(host, port, create_app(controller), threaded=True)
    except OSError as e:
        raise StartupFatalError(f"Can't bind status server to {host}:{port}: {e}") from e
    t = threading.Thread(target=srv.serve_forever, name="arsd-status", daemon=True)
    t.start()
    logger.info("Status server listening on http://%s:%d", host, port)
    return srv
