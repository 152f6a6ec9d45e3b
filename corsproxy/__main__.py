"""
Command line entry point: ``python -m corsproxy``.

Serves until SIGINT or SIGTERM, then gives in-flight requests the configured
grace period before exiting.
"""

import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from .config import ProxyConfig
from .forwarding import ForwardingHandler
from .handler import RequestHandler
from .server import ProxyServer

logger = logging.getLogger("corsproxy")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="corsproxy",
        description="CORS forwarding gateway. Usage: http://<host>:<port>/?url=<encoded target URL>")
    parser.add_argument('--config', help='Path to JSON configuration file')
    parser.add_argument('--host', help='Host to bind (default: 0.0.0.0)')
    parser.add_argument('--port', type=int, help='Port to listen on (default: 5552)')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: INFO)')
    return parser.parse_args(argv)


def build_server(config: ProxyConfig) -> ProxyServer:
    """Wire the handlers and the server from a configuration."""
    handler = RequestHandler(
        forwarding_handler=ForwardingHandler(timeout=config.get("upstream_timeout")),
        timeout=config.get("read_header_timeout"),
        buffer_size=config.get("buffer_size")
    )
    return ProxyServer(
        host=config.get("host"),
        port=config.get("port"),
        handler=handler,
        backlog=config.get("max_connections"),
        shutdown_grace_period=config.get("shutdown_grace_period")
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        config = ProxyConfig(args.config)
    except ValueError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(str(e))
        return 1

    for key in ("host", "port", "log_level"):
        value = getattr(args, key)
        if value is not None:
            config.set(key, value)

    logging.basicConfig(
        level=config.get("log_level"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    server = build_server(config)
    try:
        server.bind()
    except OSError as e:
        logger.error(f"Could not listen on port {config.get('port')}: {e}")
        return 1

    stop = threading.Event()

    def request_stop(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down server...")
        stop.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    serve_thread = threading.Thread(target=server.start, name="corsproxy-accept")
    serve_thread.daemon = True
    serve_thread.start()
    logger.info(f"Proxy server is running on port {server.port}...")

    while serve_thread.is_alive() and not stop.wait(0.5):
        pass

    if not server.shutdown():
        logger.error("Could not gracefully shut down server")
        return 1
    serve_thread.join(timeout=1)
    logger.info("Server stopped")
    return 0


if __name__ == '__main__':
    sys.exit(main())
