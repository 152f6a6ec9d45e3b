import socket
import logging
from typing import Callable, Optional, Tuple

from .forwarding import ForwardingHandler
from .health import HEALTH_PATH, HealthHandler
from .models import BodyReadError, HTTPRequest, HTTPResponse

logger = logging.getLogger(__name__)

MAX_HEAD_SIZE = 65536


class _HeadTooLarge(Exception):
    pass


class _BodyReader:
    """Reads a request body off a client socket, after the head."""

    def __init__(self, client_socket: socket.socket, buffered: bytes, buffer_size: int):
        self._socket = client_socket
        self._buffer = bytearray(buffered)
        self._buffer_size = buffer_size

    def _fill(self) -> None:
        try:
            chunk = self._socket.recv(self._buffer_size)
        except OSError as e:
            raise BodyReadError(f"connection error: {e}") from e
        if not chunk:
            raise BodyReadError("connection closed before end of body")
        self._buffer.extend(chunk)

    def read_exact(self, length: int) -> bytes:
        while len(self._buffer) < length:
            self._fill()
        data = bytes(self._buffer[:length])
        del self._buffer[:length]
        return data

    def read_line(self) -> bytes:
        while True:
            end = self._buffer.find(b'\r\n')
            if end != -1:
                line = bytes(self._buffer[:end])
                del self._buffer[:end + 2]
                return line
            if len(self._buffer) > MAX_HEAD_SIZE:
                raise BodyReadError("chunk header too long")
            self._fill()

    def read_chunked(self) -> bytes:
        """Decode a chunked body; trailers are read and discarded."""
        body = bytearray()
        while True:
            size_field = self.read_line().split(b';', 1)[0].strip()
            try:
                size = int(size_field, 16)
            except ValueError:
                raise BodyReadError(f"invalid chunk size {size_field!r}") from None
            if size < 0:
                raise BodyReadError(f"invalid chunk size {size_field!r}")
            if size == 0:
                break
            body.extend(self.read_exact(size))
            if self.read_exact(2) != b'\r\n':
                raise BodyReadError("missing CRLF after chunk")

        while self.read_line():
            pass
        return bytes(body)


class RequestHandler:
    """Handles processing of individual HTTP requests."""

    def __init__(self, forwarding_handler: Optional[ForwardingHandler] = None,
                 health_handler: Optional[HealthHandler] = None,
                 timeout: Optional[float] = 5, buffer_size: int = 4096):
        """
        Initialize the request handler.

        Args:
            forwarding_handler: Handler for everything but the health check
            health_handler: Handler for the health check path
            timeout: Timeout in seconds for reading the request head
            buffer_size: Socket read size in bytes
        """
        self._forwarding_handler = forwarding_handler or ForwardingHandler()
        self._health_handler = health_handler or HealthHandler()
        self._timeout = timeout
        self._buffer_size = buffer_size

    def handle_client(self, client_socket: socket.socket,
                      client_address: Tuple[str, int]) -> None:
        """
        Handle an individual client connection.

        Args:
            client_socket: Socket object for client connection
            client_address: Tuple of client's IP and port
        """
        client_socket.settimeout(self._timeout)
        responded = False

        try:
            try:
                head, rest = self._read_head(client_socket)
            except _HeadTooLarge:
                client_socket.sendall(
                    HTTPResponse.create_error(431, "Request Header Fields Too Large").to_bytes())
                return
            if head is None:
                return

            request = HTTPRequest.from_raw_head(head)
            if not request:
                logger.warning(f"Malformed request from {client_address}")
                client_socket.sendall(HTTPResponse.create_error(400, "Bad Request").to_bytes())
                return

            try:
                request.body_reader = self._body_reader(client_socket, request, rest)
            except ValueError as e:
                logger.warning(f"Malformed request from {client_address}: {e}")
                client_socket.sendall(HTTPResponse.create_error(400, "Bad Request").to_bytes())
                return

            # Only the head is subject to the read timeout
            client_socket.settimeout(None)
            response = self.dispatch(request)
            responded = True
            client_socket.sendall(response.to_bytes(head_only=request.method == 'HEAD'))
            logger.info(f"{client_address[0]} \"{request.method} {request.target}\" {response.status_code}")

        except Exception as e:
            logger.error(f"Error handling client {client_address}: {e}")
            if not responded:
                try:
                    client_socket.sendall(
                        HTTPResponse.create_error(500, "Internal Server Error").to_bytes())
                except OSError as send_error:
                    logger.debug(f"Could not send error response to {client_address}: {send_error}")
        finally:
            client_socket.close()

    def dispatch(self, request: HTTPRequest) -> HTTPResponse:
        """Route a parsed request to the handler serving its path."""
        if request.path == HEALTH_PATH:
            return self._health_handler.handle(request)
        return self._forwarding_handler.handle(request)

    def _read_head(self, client_socket: socket.socket) -> Tuple[Optional[bytes], bytes]:
        """
        Read the request line and headers from the client socket.

        Returns:
            The head without its terminating blank line (None when the client
            went away or timed out) and any body bytes already received
        """
        request_data = bytearray()

        while True:
            try:
                chunk = client_socket.recv(self._buffer_size)
            except socket.timeout:
                logger.debug("Timed out reading request head")
                return None, b''
            if not chunk:
                return None, b''

            request_data.extend(chunk)
            # HTTP messages have headers and body separated by double CRLF (\r\n\r\n)
            end = request_data.find(b'\r\n\r\n')
            if end != -1:
                return bytes(request_data[:end]), bytes(request_data[end + 4:])
            if len(request_data) > MAX_HEAD_SIZE:
                raise _HeadTooLarge()

    def _body_reader(self, client_socket: socket.socket, request: HTTPRequest,
                     buffered: bytes) -> Optional[Callable[[], bytes]]:
        """
        Build the lazy body reader for a request from its framing headers.

        Raises:
            ValueError: if the framing headers are invalid
        """
        reader = _BodyReader(client_socket, buffered, self._buffer_size)

        transfer_encoding = request.get_header('Transfer-Encoding')
        if transfer_encoding is not None:
            if transfer_encoding.split(',')[-1].strip().lower() != 'chunked':
                raise ValueError(f"unsupported transfer encoding {transfer_encoding!r}")
            return reader.read_chunked

        content_length = request.get_header('Content-Length')
        if content_length is None:
            return None
        if not content_length.isdigit():
            raise ValueError(f"invalid Content-Length {content_length!r}")
        length = int(content_length)
        return lambda: reader.read_exact(length)
