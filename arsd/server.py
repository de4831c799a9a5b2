"""Unix-socket front end.

One thread per connection. Every request is a single text line:

    n <request-url> <source-url> <request-type>   -> "1" blocked / "0" allowed (no newline)
    c <page-url> <ids\\t...> <classes\\t...>       -> CSS rule or "", newline-terminated
    r                                              -> reload lists, "0"
    u                                              -> force-update lists, "0"

Anything else answers "Unknown code supplied". A malformed request closes
the connection; a failed reload/update answers "1" and closes it.
"""
from __future__ import annotations

import logging
import os
import socket
import socketserver
import stat
import sys
from typing import List

from arsd.services.config import get_settings
from arsd.services.engine import format_style
from arsd.services.engine_store import EngineController
from arsd.services.errors import ArsError, ProtocolError, StartupFatalError
from arsd.services.logutil import log_exception_throttled


logger = logging.getLogger(__name__)

UNKNOWN_CODE = "Unknown code supplied"
COMMAND_OK = "0"
COMMAND_FAILED = "1"

MAX_LINE_BYTES = 1024 * 1024


def _fields(parts: List[str], count: int, code: str) -> List[str]:
    if len(parts) < count + 1:
        raise ProtocolError(f"'{code}' request needs {count} fields, got {len(parts) - 1}")
    return parts[1 : count + 1]


def _tab_list(field: str) -> List[str]:
    return [x for x in field.split("\t") if x]


def respond(line: str, controller: EngineController) -> str:
    """Answer one request line.

    Raises ProtocolError for malformed requests. Reload/update failures
    propagate as ArsError/OSError with the shared engine left untouched.
    """
    parts = line.split(" ")
    code = parts[0]

    if code == "n":
        req_url, source, req_type = _fields(parts, 3, code)
        snap = controller.handle.current
        try:
            matched = snap.check_network_request(req_url, source, req_type)
        except ValueError as e:
            raise ProtocolError(str(e)) from e
        return "1" if matched else "0"

    if code == "c":
        url, ids_field, classes_field = _fields(parts, 3, code)
        snap = controller.handle.current
        resources = snap.url_cosmetic_resources(url)
        selectors = snap.hidden_class_id_selectors(
            _tab_list(classes_field),
            _tab_list(ids_field),
            resources.exceptions,
        )
        selectors.extend(resources.hide_selectors)
        return format_style(selectors)

    if code == "r":
        controller.reload()
        return COMMAND_OK

    if code == "u":
        controller.update()
        return COMMAND_OK

    return UNKNOWN_CODE


class SessionHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        controller: EngineController = self.server.controller  # type: ignore[attr-defined]
        while True:
            try:
                raw = self.rfile.readline(MAX_LINE_BYTES + 1)
            except OSError:
                return
            if not raw:
                return
            if len(raw) > MAX_LINE_BYTES and not raw.endswith(b"\n"):
                logger.debug("Closing session: request line too long")
                return

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            try:
                resp = respond(line, controller)
            except ProtocolError as e:
                logger.debug("Closing session on malformed request %r: %s", line[:200], e)
                return
            except (ArsError, OSError) as e:
                logger.error("Command %r failed, engine unchanged: %s", line[:20], e)
                self._send(COMMAND_FAILED)
                return

            if not self._send(resp):
                return

    def _send(self, resp: str) -> bool:
        try:
            self.wfile.write(resp.encode("utf-8"))
            return True
        except OSError:
            logger.debug("Client went away before the response was written")
            return False


class FilterServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True
    block_on_close = False
    request_queue_size = socket.SOMAXCONN

    def __init__(self, socket_path: str, handler_class, controller: EngineController):
        _remove_stale_socket(socket_path)
        try:
            super().__init__(socket_path, handler_class)
        except OSError as e:
            raise StartupFatalError(f"Can't bind to socket {socket_path}: {e}") from e
        self.controller = controller

    def handle_error(self, request, client_address) -> None:
        log_exception_throttled(
            logger,
            "server.handle_error",
            interval_seconds=60.0,
            message="Unhandled error in session thread",
        )


def _remove_stale_socket(path: str) -> None:
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return
    except OSError as e:
        raise StartupFatalError(f"Can't inspect socket path {path}: {e}") from e
    if stat.S_ISDIR(st.st_mode):
        raise StartupFatalError(f"Socket path {path} is a directory")
    try:
        os.unlink(path)
    except OSError as e:
        raise StartupFatalError(f"Can't remove Unix domain socket file {path}: {e}") from e


def main() -> None:
    try:
        settings = get_settings()
    except StartupFatalError as e:
        print(f"arsd: {e}", file=sys.stderr, flush=True)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Config dir %s, socket %s", settings.config_dir, settings.socket_path)

    controller = EngineController(settings)
    status_srv = None
    try:
        status_addr = settings.status_address()
        controller.start()
        srv = FilterServer(settings.socket_path, SessionHandler, controller)
        if status_addr is not None:
            from arsd.app import start_status_server

            status_srv = start_status_server(controller, status_addr)
    except (ArsError, OSError) as e:
        logger.error("Startup failed: %s", e)
        sys.exit(1)

    print("init-done", flush=True)

    try:
        with srv:
            srv.serve_forever(poll_interval=0.5)
    except KeyboardInterrupt:
        pass
    finally:
        if status_srv is not None:
            status_srv.shutdown()
        try:
            os.unlink(settings.socket_path)
        except OSError:
            pass


if __name__ == "__main__":
    main()
