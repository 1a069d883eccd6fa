"""Command-line flags and logging setup for the exporter.

Every flag can also be given through a ``BITCOIND_EXPORTER_*`` environment
variable, e.g. ``BITCOIND_EXPORTER_RPC_PASS`` for ``--rpc-pass``. Flags given
on the command line win.
"""

import argparse
import logging
import os
import re
import sys
import time

from .rpc import ConnConfig

ENV_PREFIX = "BITCOIND_EXPORTER_"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ms|s|m|h)")


def parse_duration(value):
    """Parse a duration like ``15s``, ``1m30s`` or ``500ms`` into seconds.

    A bare number is taken as seconds.
    """
    text = value.strip()
    try:
        seconds = float(text)
    except ValueError:
        pos, seconds = 0, 0.0
        for match in DURATION_PART.finditer(text):
            if match.start() != pos:
                break
            seconds += float(match.group(1)) * DURATION_UNITS[match.group(2)]
            pos = match.end()
        if pos == 0 or pos != len(text):
            raise argparse.ArgumentTypeError(f"invalid duration {value!r}") from None

    if seconds < 0:
        raise argparse.ArgumentTypeError(f"invalid duration {value!r}")
    return seconds


def _env(name, default=""):
    return os.environ.get(ENV_PREFIX + name, default)


def _env_flag(name):
    return _env(name).strip().lower() in ("1", "true", "yes", "on")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="bitcoind-exporter",
        description="Prometheus exporter for bitcoind JSON-RPC state",
    )
    parser.add_argument(
        "--listen",
        default=_env("LISTEN", "0.0.0.0:9142"),
        help="Bind address/port for HTTP exporter service",
    )
    parser.add_argument(
        "--export-path",
        default=_env("EXPORT_PATH", "/metrics"),
        help="HTTP endpoint for prometheus metrics",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=parse_duration,
        default=_env("SHUTDOWN_TIMEOUT", "15s"),
        help="Timeout for HTTP service shutdown (e.g. 15s, 1m30s)",
    )
    parser.add_argument(
        "--log-level",
        default=_env("LOG_LEVEL", "info"),
        help="Logging output level",
    )

    rpc = parser.add_argument_group("bitcoind RPC connection")
    rpc.add_argument("--rpc-addr", default=_env("RPC_ADDR", "127.0.0.1:8332"), help="RPC address")
    rpc.add_argument(
        "--no-rpc-tls",
        action="store_true",
        default=_env_flag("NO_RPC_TLS"),
        help="Disable TLS on RPC connections",
    )
    rpc.add_argument(
        "--rpc-http-post",
        action="store_true",
        default=_env_flag("RPC_HTTP_POST"),
        help="Use a new HTTP POST request per RPC call instead of a persistent connection",
    )
    rpc.add_argument("--rpc-user", default=_env("RPC_USER"), help="RPC authentication user")
    rpc.add_argument("--rpc-pass", default=_env("RPC_PASS"), help="RPC authentication password")
    rpc.add_argument(
        "--rpc-cookie", default=_env("RPC_COOKIE"), help="RPC authentication cookie file path"
    )
    return parser


def parse_args(argv=None):
    return build_parser().parse_args(argv)


def connection_config(args):
    return ConnConfig(
        host=args.rpc_addr,
        disable_tls=args.no_rpc_tls,
        http_post_mode=args.rpc_http_post,
        user=args.rpc_user,
        password=args.rpc_pass,
        cookie_path=args.rpc_cookie,
    )


def configure_logging(level_name):
    """Set up UTC timestamped logging on stdout for the exporter's loggers."""
    level = LOG_LEVELS.get(level_name.strip().lower())
    if level is None:
        raise ValueError(f"unrecognized level: {level_name!r}")

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%SZ",
        stream=sys.stdout,
    )
    logging.Formatter.converter = time.gmtime
    logging.getLogger("bitcoind_exporter").setLevel(level)
    return level
