"""Prometheus metrics of the master and an HTTP server exposing them."""

from __future__ import annotations

import logging
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

log = logging.getLogger(__name__)

BUILD_INFO_QUERY = "nfd_master_build_info"
UPDATED_NODES_QUERY = "nfd_updated_nodes"
CRD_PROCESSING_TIME_QUERY = "nfd_crd_processing_time"


def _escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_value(value: float) -> str:
    if float(value).is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help: str, const_labels: dict[str, str] | None = None):
        self.name = name
        self.help = help
        self.const_labels = dict(const_labels or {})
        self.value = 0.0
        self._lock = threading.Lock()

    def _render(self) -> str:
        labels = ""
        if self.const_labels:
            inner = ",".join(
                f'{key}="{_escape_label_value(val)}"'
                for key, val in sorted(self.const_labels.items())
            )
            labels = "{" + inner + "}"
        with self._lock:
            value = self.value
        return (
            f"# HELP {self.name} {self.help}\n"
            f"# TYPE {self.name} {self.kind}\n"
            f"{self.name}{labels} {_format_value(value)}\n"
        )


class Gauge(_Metric):
    """A metric whose value can be set freely."""

    kind = "gauge"

    def set(self, value: float) -> None:
        with self._lock:
            self.value = float(value)

    def set_to_current_time(self) -> None:
        self.set(time.time())


class Counter(_Metric):
    """A metric that only goes up."""

    kind = "counter"

    def inc(self) -> None:
        with self._lock:
            self.value += 1


class MasterMetrics:
    """The metrics registry of the master."""

    def __init__(self, version: str = ""):
        self.build_info = Gauge(
            BUILD_INFO_QUERY,
            "Version from which Node Feature Discovery was built.",
            {"version": version},
        )
        self.updated_nodes = Counter(
            UPDATED_NODES_QUERY, "Number of nodes updated by the master."
        )
        self.crd_processing_time = Gauge(
            CRD_PROCESSING_TIME_QUERY, "Time spent processing the NodeFeatureRule CRD."
        )

    def register_version(self, version: str) -> None:
        """Expose the build version by stamping the build info gauge."""
        self.build_info.set_to_current_time()

    def render(self) -> str:
        """Return all metrics in the Prometheus text exposition format."""
        return "".join(
            metric._render()
            for metric in (self.build_info, self.updated_nodes, self.crd_processing_time)
        )


class MetricsServer:
    """Serves the metrics at /metrics over HTTP in a background thread."""

    def __init__(self, port: int, metrics: MasterMetrics, host: str = ""):
        self.host = host
        self.port = port
        self.metrics = metrics
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def _handler(self) -> type[BaseHTTPRequestHandler]:
        metrics = self.metrics

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                if self.path.split("?", 1)[0] != "/metrics":
                    self.send_error(404)
                    return
                body = metrics.render().encode()
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args) -> None:
                log.debug(format, *args)

        return Handler

    def start(self) -> None:
        """Bind the port and start serving; the bound port is stored in port."""
        if self._server is not None:
            return
        self._server = ThreadingHTTPServer((self.host, self.port), self._handler())
        self.port = self._server.server_address[1]
        log.info("metrics server starting on port %d", self.port)
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        server = self._server
        if server is not None:
            server.serve_forever()
        log.info("metrics server stopped")

    def stop(self) -> None:
        """Stop the server if it is running."""
        if self._server is None:
            return
        log.info("stopping metrics server on port %d", self.port)
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join()
        self._server = None
        self._thread = None