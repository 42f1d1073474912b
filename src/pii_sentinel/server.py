"""Loopback analysis process (Layer 3).

Spawned and supervised by ``pii_sentinel.bridge``; not meant to be run
by hand, although it can be:

    python -m pii_sentinel.server --port 0 --profile lite

Binds 127.0.0.1 only.  With ``--port 0`` the OS picks a free port; the
bound address is announced as the first stdout line.  Presidio loads in
the background, so ``/health`` answers 503 until the engine is ready.

Endpoints:
    GET  /health     — 200 when ready, 503 while loading, 500 if loading failed
    POST /analyze    — {"text", "language", "entities", "score_threshold"}
                       → {"entities": [{"type", "text", "start", "end", "score"}],
                          "processing_time_ms"}
    POST /shutdown   — stop serving
"""

from __future__ import annotations
import argparse
import json
import logging
import os
import sys
import threading
import time
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Any, Callable

from . import presidio_layer

logger = logging.getLogger(__name__)

READY_LINE = "pii-sentinel analysis service listening on http://127.0.0.1:{port}"
DEFAULT_PROFILE = os.environ.get("PII_SENTINEL_PROFILE", "lite")
PARENT_POLL_INTERVAL = 1.0


class AnalysisService:
    """Engine state shared by all request handlers."""

    def __init__(
        self,
        profile: str = DEFAULT_PROFILE,
        language: str = "en",
        *,
        analyzer: Callable[..., list[dict[str, Any]]] | None = None,
        loader: Callable[[str, str], Any] | None = None,
    ) -> None:
        self.profile = profile
        self.language = language
        self._analyze = analyzer or presidio_layer.analyze
        self._loader = loader or presidio_layer.get_engine
        self.ready = threading.Event()
        self.error: str | None = None

    def warm_up(self) -> None:
        """Load the engine; /health turns 200 (or 500) afterwards."""
        started = time.monotonic()
        try:
            self._loader(self.language, self.profile)
        except Exception as e:
            self.error = str(e)
            logger.exception("Presidio engine failed to load (profile=%s)", self.profile)
            return
        self.ready.set()
        logger.info(
            "Presidio engine ready (profile=%s, %.1fs)", self.profile, time.monotonic() - started,
        )

    def health(self) -> tuple[int, dict[str, Any]]:
        if self.error is not None:
            return 500, {"status": "error", "error": self.error}
        if not self.ready.is_set():
            return 503, {"status": "loading", "profile": self.profile}
        return 200, {"status": "ok", "profile": self.profile}

    def handle_analyze(self, body: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        if not self.ready.is_set():
            return 503, {"error": "engine not ready"}
        text = body.get("text")
        if not isinstance(text, str):
            return 400, {"error": "'text' must be a string"}
        entities = body.get("entities") or None
        if entities is not None and not isinstance(entities, list):
            return 400, {"error": "'entities' must be a list"}
        try:
            score_threshold = float(body.get("score_threshold", 0.0))
        except (TypeError, ValueError):
            return 400, {"error": "'score_threshold' must be a number"}

        started = time.monotonic()
        found = self._analyze(
            text,
            language=body.get("language") or self.language,
            profile=self.profile,
            entities=entities,
            score_threshold=score_threshold,
        )
        return 200, {
            "entities": found,
            "processing_time_ms": int((time.monotonic() - started) * 1000),
        }


class AnalysisHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the analysis service."""

    service: AnalysisService

    def _read_json(self) -> dict[str, Any]:
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length).decode("utf-8")
        data = json.loads(body) if body else {}
        if not isinstance(data, dict):
            raise ValueError("request body must be a JSON object")
        return data

    def _respond(self, status: int, data: Any) -> None:
        body = json.dumps(data, ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)

    def do_GET(self) -> None:
        if self.path == "/health":
            self._respond(*self.service.health())
        else:
            self._respond(404, {"error": "not found"})

    def do_POST(self) -> None:
        if self.path == "/shutdown":
            self._respond(200, {"status": "shutting down"})
            threading.Thread(target=self.server.shutdown, daemon=True).start()
            return
        if self.path != "/analyze":
            self._respond(404, {"error": "not found"})
            return
        try:
            body = self._read_json()
        except (ValueError, UnicodeDecodeError) as e:
            self._respond(400, {"error": f"invalid JSON: {e}"})
            return
        try:
            self._respond(*self.service.handle_analyze(body))
        except Exception as e:
            logger.exception("analyze failed")
            self._respond(500, {"error": str(e)})


def make_server(service: AnalysisService, port: int = 0) -> HTTPServer:
    """Bind the service to 127.0.0.1:*port* (0 = ephemeral)."""
    handler = type("BoundAnalysisHandler", (AnalysisHandler,), {"service": service})
    return HTTPServer(("127.0.0.1", port), handler)


def _watch_parent(server: HTTPServer, parent_pid: int) -> None:
    """Stop serving once the supervising process is gone."""
    while True:
        time.sleep(PARENT_POLL_INTERVAL)
        if os.getppid() != parent_pid:
            logger.warning("Parent process %d exited; shutting down.", parent_pid)
            server.shutdown()
            return


def serve(
    port: int = 0,
    profile: str = DEFAULT_PROFILE,
    language: str = "en",
    parent_pid: int | None = None,
) -> None:
    """Start the analysis service and block until shutdown."""
    service = AnalysisService(profile, language)
    server = make_server(service, port)
    bound_port = server.server_address[1]
    print(READY_LINE.format(port=bound_port), flush=True)

    threading.Thread(target=service.warm_up, name="presidio-warmup", daemon=True).start()
    if parent_pid is not None:
        threading.Thread(
            target=_watch_parent, args=(server, parent_pid), name="parent-watch", daemon=True,
        ).start()
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
        logger.info("Analysis service on port %d stopped.", bound_port)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="pii-sentinel loopback analysis service")
    parser.add_argument("--port", type=int, default=0, help="0 = pick a free port")
    parser.add_argument("--profile", choices=sorted(presidio_layer.PROFILES), default=DEFAULT_PROFILE)
    parser.add_argument("--language", default="en")
    parser.add_argument("--parent-pid", type=int, default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(
        stream=sys.stderr,
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    serve(port=args.port, profile=args.profile, language=args.language, parent_pid=args.parent_pid)


if __name__ == "__main__":
    main()
