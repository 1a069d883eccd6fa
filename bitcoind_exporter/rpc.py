"""JSON-RPC client for bitcoind.

One client handle is shared by every collector and every concurrent scrape.
Calls are never retried; failures are raised to the caller.
"""

import base64
import http.client
import itertools
import json
import logging
import select
import ssl
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass

from .models import BlockchainInfo, MempoolInfo, PeerInfo

logger = logging.getLogger("bitcoind_exporter.rpc")

AUTH_COOKIE = "cookie"
AUTH_USERPASS = "userpass"
AUTH_NONE = "none"


class RPCError(Exception):
    """An RPC call failed."""

    def __init__(self, method, message):
        super().__init__(message)
        self.method = method


class RPCConnectionError(RPCError):
    """The daemon could not be reached."""


class RPCResponseError(RPCError):
    """The daemon answered with a JSON-RPC error object."""

    def __init__(self, method, code, message):
        super().__init__(method, f"{message} (code {code})")
        self.code = code


@dataclass(frozen=True)
class ConnConfig:
    host: str = "127.0.0.1:8332"
    disable_tls: bool = False
    http_post_mode: bool = False
    user: str = ""
    password: str = ""
    cookie_path: str = ""

    @property
    def auth_mode(self):
        # A cookie file takes precedence over user/password
        if self.cookie_path:
            return AUTH_COOKIE
        if self.user or self.password:
            return AUTH_USERPASS
        return AUTH_NONE

    @property
    def url(self):
        scheme = "http" if self.disable_tls else "https"
        return f"{scheme}://{self.host}/"


def read_cookie(path):
    with open(path) as f:
        return base64.b64encode(f.read().strip().encode()).decode()


class RPCClient:
    def __init__(self, config):
        self.config = config
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._conn = None

    @classmethod
    def connect(cls, config):
        """Create a client and check that the daemon answers with our credentials."""
        client = cls(config)
        try:
            client.ping()
        except RPCError:
            client.close()
            raise
        return client

    def _headers(self, method):
        headers = {"Content-Type": "application/json"}
        mode = self.config.auth_mode
        if mode == AUTH_COOKIE:
            try:
                auth = read_cookie(self.config.cookie_path)
            except OSError as e:
                raise RPCError(method, f"unable to read cookie file {self.config.cookie_path}: {e}") from e
        elif mode == AUTH_USERPASS:
            auth = base64.b64encode(f"{self.config.user}:{self.config.password}".encode()).decode()
        else:
            return headers
        headers["Authorization"] = f"Basic {auth}"
        return headers

    def _post(self, method, payload, headers):
        req = urllib.request.Request(self.config.url, data=payload, headers=headers)
        context = None if self.config.disable_tls else ssl.create_default_context()
        try:
            with urllib.request.urlopen(req, context=context) as resp:
                return resp.status, resp.read()
        except urllib.error.HTTPError as e:
            return e.code, e.read()
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            reason = getattr(e, "reason", e)
            raise RPCConnectionError(method, f"unable to reach {self.config.host}: {reason}") from e

    def _open(self):
        if self.config.disable_tls:
            return http.client.HTTPConnection(self.config.host)
        return http.client.HTTPSConnection(self.config.host, context=ssl.create_default_context())

    def _dropped(self):
        sock = self._conn.sock
        if sock is None:
            return False
        # An idle keep-alive socket only turns readable when the daemon closed it
        readable, _, _ = select.select([sock], [], [], 0)
        return bool(readable)

    def _send(self, method, payload, headers):
        with self._lock:
            if self._conn is not None and self._dropped():
                logger.debug(
                    "Reopening idle RPC connection addr=%s", self.config.host, extra={"addr": self.config.host}
                )
                self._reset()
            if self._conn is None:
                self._conn = self._open()
            try:
                return self._roundtrip(payload, headers)
            except (http.client.HTTPException, OSError) as e:
                self._reset()
                raise RPCConnectionError(method, f"unable to reach {self.config.host}: {e}") from e

    def _roundtrip(self, payload, headers):
        self._conn.request("POST", "/", body=payload, headers=headers)
        resp = self._conn.getresponse()
        body = resp.read()
        if resp.will_close:
            self._reset()
        return resp.status, body

    def _reset(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def call(self, method, *params):
        """Send a raw command and return its decoded JSON result."""
        payload = json.dumps(
            {"jsonrpc": "1.0", "id": next(self._ids), "method": method, "params": list(params)}
        ).encode()
        headers = self._headers(method)

        logger.debug("RPC call method=%s", method, extra={"method": method})
        if self.config.http_post_mode:
            status, body = self._post(method, payload, headers)
        else:
            status, body = self._send(method, payload, headers)

        if status in (401, 403):
            raise RPCError(method, f"authentication rejected (HTTP {status})")

        try:
            reply = json.loads(body)
        except ValueError as e:
            raise RPCError(method, f"non-JSON response (HTTP {status})") from e
        if not isinstance(reply, dict):
            raise RPCError(method, f"malformed response (HTTP {status})")

        error = reply.get("error")
        if error:
            if isinstance(error, dict):
                raise RPCResponseError(method, error.get("code"), error.get("message", ""))
            raise RPCError(method, str(error))
        if status != 200:
            raise RPCError(method, f"unexpected HTTP status {status}")

        return reply.get("result")

    def ping(self):
        self.call("ping")

    def get_blockchain_info(self):
        return BlockchainInfo.from_result(self.call("getblockchaininfo"))

    def get_mempool_info(self):
        return MempoolInfo.from_result(self.call("getmempoolinfo"))

    def get_peer_info(self):
        return PeerInfo.from_result(self.call("getpeerinfo"))

    def close(self):
        with self._lock:
            self._reset()
