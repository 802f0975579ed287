"""Prometheus exposition of the discovered chart updates."""

from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterable

from .releaseutils import DiscoveredChartRelease

METRIC_NAME = "chartherd_charts"
METRIC_HELP = "The Helm chart in the Kubernetes cluster that has an update available"
RESTART_DELAY_SECONDS = 30
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def parse_bind_address(bind_to: str) -> tuple[str, int]:
    """Split a [HOST]:PORT address into host and port."""
    host, sep, port_text = bind_to.rpartition(":")
    if not sep or not port_text.isdigit():
        raise ValueError(f"invalid bind address '{bind_to}', expected [HOST]:PORT")
    port = int(port_text)
    if port > 65535:
        raise ValueError(f"invalid port in bind address '{bind_to}'")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, port


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _labels(release: DiscoveredChartRelease) -> dict[str, str]:
    return {
        "chart_name": release.chart_name,
        "chart_repo": release.chart_repo,
        "release_name": release.release_name,
        "release_namespace": release.release_namespace,
        "current_version": release.installed_chart_version.original(),
        "available_version": release.available_chart_version.original(),
        "discovery_method": release.discovery_method,
    }


class MetricsExporter:
    """Serves a gauge per discovered chart release over HTTP."""

    def __init__(self, logger: logging.Logger | None, bind_to: str, route: str) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.host, self.port = parse_bind_address(bind_to)
        self.route = route
        self._series: list[dict[str, str]] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def update(self, releases: Iterable[DiscoveredChartRelease]) -> None:
        """Replace all series with those of the given releases."""
        series = [_labels(r) for r in releases]
        with self._lock:
            self._series = series

    def render(self) -> str:
        """Return the metrics in the Prometheus text format."""
        lines = [f"# HELP {METRIC_NAME} {METRIC_HELP}", f"# TYPE {METRIC_NAME} gauge"]
        with self._lock:
            series = list(self._series)
        for labels in series:
            body = ",".join(f'{k}="{_escape(labels[k])}"' for k in sorted(labels))
            lines.append(f"{METRIC_NAME}{{{body}}} 1")
        return "\n".join(lines) + "\n"

    def _handler(self) -> type[BaseHTTPRequestHandler]:
        exporter = self

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                if self.path.split("?", 1)[0] != exporter.route:
                    self.send_error(404)
                    return
                payload = exporter.render().encode()
                self.send_response(200)
                self.send_header("Content-Type", CONTENT_TYPE)
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)

            def log_message(self, format: str, *args: object) -> None:
                exporter.logger.debug(format, *args)

        return Handler

    def _serve(self) -> None:
        while not self._stop.is_set():
            self.logger.info("starting metrics listener at %s:%d, route %s", self.host, self.port, self.route)
            try:
                server = ThreadingHTTPServer((self.host, self.port), self._handler())
            except OSError as exc:
                self.logger.error(
                    "metrics listener has died, restarting in %d seconds: %s", RESTART_DELAY_SECONDS, exc
                )
                self._stop.wait(RESTART_DELAY_SECONDS)
                continue
            with self._lock:
                self._server = server
            if self._stop.is_set():
                server.server_close()
                return
            server.serve_forever()
            server.server_close()

    def run(self) -> None:
        """Start serving metrics in a background thread."""
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._serve, name="metrics", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Shut the listener down and wait for it to finish."""
        self._stop.set()
        with self._lock:
            server = self._server
        if server is not None:
            server.shutdown()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self._server = None