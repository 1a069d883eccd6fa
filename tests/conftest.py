"""
Shared fixtures: canned daemon responses, a fake RPC client and an
in-process fake bitcoind JSON-RPC server.
"""

import contextlib
import json
import socket
import socketserver
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from bitcoind_exporter.models import BlockchainInfo, MempoolInfo, PeerInfo
from bitcoind_exporter.rpc import RPCConnectionError

BLOCKCHAIN_RESULT = {
    "chain": "main",
    "blocks": 800000,
    "headers": 800000,
    "difficulty": 5.2e13,
    "mediantime": 1700000000,
    "verificationprogress": 0.9999,
    "initialblockdownload": False,
    "size_on_disk": 600000000000,
    "pruned": False,
    "pruneheight": 0,
}

MEMPOOL_RESULT = {
    "loaded": True,
    "size": 4200,
    "bytes": 2100000,
    "usage": 9000000,
    "total_fee": 0.25,
    "maxmempool": 300000000,
    "mempoolminfee": 0.00001,
    "minrelaytxfee": 0.00001,
    "incrementalrelayfee": 0.00001,
    "unbroadcastcount": 2,
    "fullrbf": True,
}

PEER_RESULT = [
    {
        "id": 7,
        "addr": "1.2.3.4:8333",
        "subver": "/Satoshi:24.0/",
        "network": "ipv4",
        "bytessent_per_msg": {"inv": 1000},
    }
]

INDEX_RESULT = {
    "txindex": {"synced": True, "best_block_height": 800000},
    "coinstatsindex": {"synced": False, "best_block_height": 799000},
}


class FakeClient:
    """Stands in for RPCClient, serving canned results per RPC method."""

    def __init__(self, results=None, failures=()):
        self.results = {
            "getblockchaininfo": BLOCKCHAIN_RESULT,
            "getmempoolinfo": MEMPOOL_RESULT,
            "getpeerinfo": PEER_RESULT,
            "getindexinfo": INDEX_RESULT,
        }
        self.results.update(results or {})
        self.failures = set(failures)
        self.calls = []

    def call(self, method, *params):
        self.calls.append(method)
        if method in self.failures:
            raise RPCConnectionError(method, "connection refused")
        return self.results[method]

    def get_blockchain_info(self):
        return BlockchainInfo.from_result(self.call("getblockchaininfo"))

    def get_mempool_info(self):
        return MempoolInfo.from_result(self.call("getmempoolinfo"))

    def get_peer_info(self):
        return PeerInfo.from_result(self.call("getpeerinfo"))

    def close(self):
        pass


@pytest.fixture
def fake_client():
    return FakeClient()


class FakeDaemon:
    """A minimal bitcoind JSON-RPC endpoint on an ephemeral port."""

    def __init__(self):
        self.results = {"ping": None, "getblockchaininfo": BLOCKCHAIN_RESULT}
        self.errors = {}
        self.requests = []
        self.auth = None
        self.status = None
        self.body = None
        self.close_after_reply = False

        daemon = self

        class Handler(BaseHTTPRequestHandler):
            protocol_version = "HTTP/1.1"

            def do_POST(self):
                length = int(self.headers.get("Content-Length", 0))
                request = json.loads(self.rfile.read(length))
                daemon.requests.append((request, self.headers.get("Authorization")))

                if daemon.auth is not None and self.headers.get("Authorization") != daemon.auth:
                    self._reply(401, b"")
                    return
                if daemon.status is not None:
                    self._reply(daemon.status, daemon.body)
                    return

                method = request["method"]
                if method in daemon.errors:
                    code, message = daemon.errors[method]
                    reply = {"result": None, "error": {"code": code, "message": message}, "id": request["id"]}
                    self._reply(500, json.dumps(reply).encode())
                elif method in daemon.results:
                    reply = {"result": daemon.results[method], "error": None, "id": request["id"]}
                    self._reply(200, json.dumps(reply).encode())
                else:
                    reply = {"result": None, "error": {"code": -32601, "message": "Method not found"}, "id": request["id"]}
                    self._reply(404, json.dumps(reply).encode())

            def _reply(self, status, body):
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                if daemon.close_after_reply:
                    self.send_header("Connection", "close")
                    self.close_connection = True
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format, *args):
                pass

        self.server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.server.daemon_threads = True
        self.host = f"127.0.0.1:{self.server.server_address[1]}"
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    def methods(self):
        return [request["method"] for request, _ in self.requests]


@pytest.fixture
def fake_daemon():
    daemon = FakeDaemon()
    daemon.thread.start()
    yield daemon
    daemon.server.shutdown()
    daemon.server.server_close()


def read_request(rfile):
    """Read one HTTP request from ``rfile`` and return its JSON body, or None at EOF."""
    if not rfile.readline():
        return None
    length = 0
    while True:
        header = rfile.readline()
        if header in (b"\r\n", b"\n", b""):
            break
        name, _, value = header.decode("latin-1").partition(":")
        if name.strip().lower() == "content-length":
            length = int(value)
    return json.loads(rfile.read(length))


def json_reply(request, result=None):
    body = json.dumps({"result": result, "error": None, "id": request["id"]}).encode()
    head = f"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\nContent-Length: {len(body)}\r\n\r\n"
    return head.encode() + body


class RawDaemon:
    """TCP endpoint that answers each request from a script of raw replies.

    Each script entry is ``(reply, keep_open)``. ``reply`` is the bytes to
    send, a callable taking the request, or None to hang up without
    answering. The last entry repeats once the script runs out.
    """

    def __init__(self, script):
        self.script = list(script)
        self.requests = []
        self.hung_up = threading.Event()

        daemon = self

        class Handler(socketserver.StreamRequestHandler):
            def handle(self):
                while True:
                    request = read_request(self.rfile)
                    if request is None:
                        return
                    daemon.requests.append(request)
                    reply, keep_open = daemon.script[min(len(daemon.requests), len(daemon.script)) - 1]
                    if callable(reply):
                        reply = reply(request)
                    if reply is not None:
                        self.wfile.write(reply)
                    if reply is None or not keep_open:
                        break
                with contextlib.suppress(OSError):
                    self.request.shutdown(socket.SHUT_RDWR)
                daemon.hung_up.set()

        self.server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), Handler)
        self.server.daemon_threads = True
        self.host = f"127.0.0.1:{self.server.server_address[1]}"
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    def methods(self):
        return [request["method"] for request in self.requests]


@pytest.fixture
def raw_daemon():
    daemons = []

    def start(script):
        daemon = RawDaemon(script)
        daemon.thread.start()
        daemons.append(daemon)
        return daemon

    yield start
    for daemon in daemons:
        daemon.server.shutdown()
        daemon.server.server_close()
