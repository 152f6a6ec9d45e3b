import socket
import threading
import time
import logging
from typing import Optional, Set, Tuple

from .handler import RequestHandler

logger = logging.getLogger(__name__)


class ProxyServer:
    """Owns the listening socket and the worker threads serving connections."""

    def __init__(self, host: str = "localhost", port: int = 5552,
                 handler: Optional[RequestHandler] = None, backlog: int = 128,
                 shutdown_grace_period: float = 10):
        """
        Initialize the proxy server.

        Args:
            host: Host address to bind the proxy
            port: Port number to listen on, 0 for any free port
            handler: Request handler run for every accepted connection
            backlog: Listen backlog of the server socket
            shutdown_grace_period: Seconds in-flight requests get to finish on shutdown
        """
        self._host = host
        self._port = port
        self._handler = handler or RequestHandler()
        self._backlog = backlog
        self._shutdown_grace_period = shutdown_grace_period

        # Initialize server socket
        self._server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        self._bound = False
        self._closing = threading.Event()
        self._serving = threading.Event()
        self._stopped = threading.Event()
        self._wakeup_address: Optional[Tuple[str, int]] = None
        self._workers: Set[threading.Thread] = set()
        self._workers_lock = threading.Lock()

    @property
    def host(self) -> str:
        """Get the host address."""
        return self._host

    @property
    def port(self) -> int:
        """Get the port number; the actual one once bound."""
        return self._port

    @property
    def server_socket(self) -> socket.socket:
        """Get the server socket."""
        return self._server_socket

    @property
    def active_requests(self) -> int:
        """Number of connections currently being served."""
        with self._workers_lock:
            return len(self._workers)

    def bind(self) -> None:
        """
        Bind and listen on the configured address.

        Raises:
            OSError: if the address cannot be bound
        """
        if self._bound:
            return
        self._server_socket.bind((self._host, self._port))
        self._server_socket.listen(self._backlog)
        self._port = self._server_socket.getsockname()[1]
        self._bound = True
        logger.info(f"Proxy server listening on {self._host}:{self._port}")

    def start(self) -> None:
        """Start the proxy server; blocks until shutdown."""
        self.bind()
        self._serving.set()
        try:
            while not self._closing.is_set():
                try:
                    client_socket, client_address = self._server_socket.accept()
                    if client_address == self._wakeup_address:
                        client_socket.close()
                        break

                    # Connections accepted before the wake-up one are still served
                    thread = threading.Thread(
                        target=self._serve_client,
                        args=(client_socket, client_address)
                    )
                    thread.daemon = True
                    with self._workers_lock:
                        self._workers.add(thread)
                    thread.start()
                except Exception as e:
                    if not self._closing.is_set():  # Only log if we're still meant to be running
                        logger.error(f"Server error: {e}")

        finally:
            self._server_socket.close()
            self._stopped.set()

    def _serve_client(self, client_socket: socket.socket,
                      client_address: Tuple[str, int]) -> None:
        try:
            self._handler.handle_client(client_socket, client_address)
        finally:
            with self._workers_lock:
                self._workers.discard(threading.current_thread())

    def _wake_accept_loop(self) -> None:
        """Create a dummy connection to unblock accept()."""
        connect_host = '127.0.0.1' if self._host in ('', '0.0.0.0') else self._host
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as wakeup:
                wakeup.settimeout(1)
                wakeup.bind((connect_host, 0))
                self._wakeup_address = wakeup.getsockname()
                wakeup.connect((connect_host, self._port))
        except OSError as e:
            logger.debug(f"Wake-up connection failed: {e}")

    def shutdown(self, grace_period: Optional[float] = None) -> bool:
        """
        Stop accepting connections and wait for in-flight requests.

        Args:
            grace_period: Seconds to wait for in-flight requests, defaults to
                the configured shutdown grace period

        Returns:
            False if requests were still running when the grace period ran out
        """
        if grace_period is None:
            grace_period = self._shutdown_grace_period

        self._closing.set()
        if self._bound:
            self._wake_accept_loop()
            if self._serving.is_set():
                self._stopped.wait(timeout=1)
        self._server_socket.close()

        deadline = time.monotonic() + grace_period
        with self._workers_lock:
            workers = list(self._workers)
        for thread in workers:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            thread.join(remaining)

        with self._workers_lock:
            abandoned = [thread for thread in self._workers if thread.is_alive()]
        if abandoned:
            logger.error(f"{len(abandoned)} request(s) still running after {grace_period}s, abandoning them")
            return False

        logger.info("Proxy server stopped")
        return True
