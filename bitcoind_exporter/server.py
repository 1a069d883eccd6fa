"""HTTP exposition server for the exporter's metrics registry."""

import logging
import re
import socket
import threading
from socketserver import ThreadingMixIn
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import make_wsgi_app

logger = logging.getLogger("bitcoind_exporter.http")

LISTEN_PATTERN = re.compile(r"^(?:\[(?P<v6>[^\]]*)\]|(?P<host>[^:]*)):(?P<port>\d+)$")


def parse_listen(addr):
    """Split a ``host:port`` bind address. An empty host binds all interfaces."""
    match = LISTEN_PATTERN.match(addr)
    if match is None:
        raise ValueError(f"invalid listen address {addr!r}, expected host:port")
    host = match.group("v6") if match.group("v6") is not None else match.group("host")
    port = int(match.group("port"))
    if port > 65535:
        raise ValueError(f"invalid listen port {port}")
    return host or "0.0.0.0", port


class _RequestHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        logger.debug("%s %s", self.address_string(), format % args)


class ExporterServer(ThreadingMixIn, WSGIServer):
    """Threaded WSGI server that can wait for its in-flight requests."""

    daemon_threads = True

    def __init__(self, *args, **kwargs):
        self._inflight = 0
        self._idle = threading.Condition()
        super().__init__(*args, **kwargs)

    def process_request(self, request, client_address):
        with self._idle:
            self._inflight += 1
        super().process_request(request, client_address)

    def process_request_thread(self, request, client_address):
        try:
            super().process_request_thread(request, client_address)
        finally:
            with self._idle:
                self._inflight -= 1
                self._idle.notify_all()

    @property
    def inflight(self):
        with self._idle:
            return self._inflight

    def drain(self, timeout=None):
        """Wait up to ``timeout`` seconds for in-flight requests. True when none remain."""
        with self._idle:
            return self._idle.wait_for(lambda: self._inflight == 0, timeout)

    def handle_error(self, request, client_address):
        logger.exception("Error handling request from %s", client_address[0])


def make_app(registry, export_path):
    metrics = make_wsgi_app(registry)

    def app(environ, start_response):
        if environ.get("PATH_INFO") != export_path:
            start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
            return [b"404 page not found\n"]
        return metrics(environ, start_response)

    return app


def create_server(listen, export_path, registry):
    """Bind the exposition listener. Raises OSError or ValueError when it cannot."""
    host, port = parse_listen(listen)
    family = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)[0][0]

    class Server(ExporterServer):
        address_family = family

    logger.info("Creating listener addr=%s", listen, extra={"addr": listen})
    return make_server(host, port, make_app(registry, export_path), Server, _RequestHandler)
