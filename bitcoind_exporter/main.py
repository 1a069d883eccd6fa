"""bitcoind metrics exporter for Prometheus.

Connects to bitcoind's JSON-RPC interface and serves blockchain, mempool,
peer and index state in Prometheus exposition format on :9142.
"""

import logging
import signal
import sys
import threading
import time

from prometheus_client import CollectorRegistry, GCCollector, PlatformCollector, ProcessCollector

from .collectors import BlockchainCollector, IndexCollector, MempoolCollector, PeersCollector
from .config import configure_logging, connection_config, parse_args
from .rpc import RPCClient, RPCError
from .server import create_server

logger = logging.getLogger("bitcoind_exporter")

COLLECTORS = (BlockchainCollector, MempoolCollector, PeersCollector, IndexCollector)


def build_registry(client):
    """Create a registry holding the bitcoind collectors and process metrics.

    Raises ValueError if two collectors declare the same timeseries.
    """
    registry = CollectorRegistry()
    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)
    GCCollector(registry=registry)

    for collector_type in COLLECTORS:
        logger.info("Registering collector name=%s", collector_type.name, extra={"collector": collector_type.name})
        registry.register(collector_type(client))

    return registry


def install_signal_handlers(stop, force):
    """Set ``stop`` on the first SIGINT/SIGTERM and ``force`` on any later one."""

    def handle(sig, frame):
        if stop.is_set():
            force.set()
        else:
            stop.set()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def serve(server, shutdown_timeout, stop, force, poll_interval=0.1):
    """Serve until ``stop`` is set, then drain in-flight requests.

    Returns the process exit code: 0 after a clean drain, 1 when the serve
    loop dies, the drain times out or ``force`` is set while draining.
    """
    http = logging.getLogger("bitcoind_exporter.http")

    def run():
        try:
            server.serve_forever()
        except Exception:
            http.exception("Accept error")

    thread = threading.Thread(target=run, name="http-server", daemon=True)
    http.info("Starting HTTP service")
    thread.start()

    while not stop.wait(poll_interval):
        if not thread.is_alive():
            http.error("HTTP service stopped unexpectedly")
            server.server_close()
            return 1

    http.info("Shutting down timeout=%ss", shutdown_timeout, extra={"timeout": shutdown_timeout})
    server.shutdown()
    server.server_close()

    deadline = time.monotonic() + shutdown_timeout
    while not server.drain(poll_interval):
        if force.is_set():
            inflight = server.inflight
            http.error("Shutdown error: interrupted while draining inflight=%d", inflight, extra={"inflight": inflight})
            return 1
        if time.monotonic() >= deadline:
            inflight = server.inflight
            http.error("Shutdown error: timed out draining inflight=%d", inflight, extra={"inflight": inflight})
            return 1

    return 0


def main(argv=None):
    args = parse_args(argv)

    try:
        configure_logging(args.log_level)
    except ValueError as e:
        print("Unable to configure logger:", e, file=sys.stderr)
        return 1

    config = connection_config(args)
    if config.cookie_path and (config.user or config.password):
        logger.warning("Both --rpc-cookie and --rpc-user/--rpc-pass set, using cookie file")

    logger.info(
        "Connecting to RPC service addr=%s tls=%s http_post=%s auth=%s",
        config.host,
        not config.disable_tls,
        config.http_post_mode,
        config.auth_mode,
        extra={
            "addr": config.host,
            "tls": not config.disable_tls,
            "http_post": config.http_post_mode,
            "auth": config.auth_mode,
        },
    )
    try:
        client = RPCClient.connect(config)
    except RPCError as e:
        logger.error(
            "Unable to create RPC client addr=%s error=%s", config.host, e, extra={"addr": config.host, "error": str(e)}
        )
        return 1

    try:
        # Trap shutdown signals so the exporter behaves when run as PID 1
        stop, force = threading.Event(), threading.Event()
        install_signal_handlers(stop, force)

        try:
            registry = build_registry(client)
        except ValueError as e:
            logger.error("Unable to register collectors error=%s", e, extra={"error": str(e)})
            return 1

        logger.info("Handling prometheus metrics path=%s", args.export_path, extra={"path": args.export_path})
        try:
            server = create_server(args.listen, args.export_path, registry)
        except (OSError, ValueError) as e:
            logger.error(
                "Unable to create listener addr=%s error=%s",
                args.listen,
                e,
                extra={"addr": args.listen, "error": str(e)},
            )
            return 1

        code = serve(server, args.shutdown_timeout, stop, force)
    finally:
        client.close()

    if code == 0:
        logger.info("Goodbye")
    return code


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
