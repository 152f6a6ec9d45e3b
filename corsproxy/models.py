from typing import Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from email.utils import formatdate
from http import HTTPStatus
from urllib.parse import parse_qsl, urlsplit

Header = Tuple[str, str]

# Framing headers the server always writes itself
_MANAGED_HEADERS = {'connection', 'keep-alive', 'transfer-encoding'}


class BodyReadError(Exception):
    """Raised when a request body cannot be read off the connection."""


@dataclass
class HTTPRequest:
    """Model representing an inbound HTTP request."""
    method: str
    target: str
    protocol: str = 'HTTP/1.1'
    headers: List[Header] = field(default_factory=list)
    body: Optional[bytes] = None
    body_reader: Optional[Callable[[], bytes]] = field(default=None, repr=False)

    @classmethod
    def from_raw_head(cls, head: bytes) -> Optional['HTTPRequest']:
        """Create HTTPRequest instance from the raw request line and headers."""
        try:
            lines = head.decode('iso-8859-1').split('\n')
            if not lines:
                return None

            # Parse request line
            method, target, protocol = lines[0].rstrip('\r').split(' ')
            if not method or not target or not protocol.startswith('HTTP/'):
                return None

            # Parse headers
            headers = []
            for line in lines[1:]:
                line = line.rstrip('\r')
                if not line:
                    break
                key, value = line.split(':', 1)
                if not key or key != key.strip():
                    return None
                headers.append((key, value.strip()))

            return cls(
                method=method,
                target=target,
                protocol=protocol,
                headers=headers
            )
        except ValueError:
            return None

    @property
    def path(self) -> str:
        return urlsplit(self.target).path or '/'

    @property
    def query(self) -> str:
        return urlsplit(self.target).query

    def query_param(self, name: str) -> Optional[str]:
        """Return the first value of a query parameter, or None."""
        for key, value in parse_qsl(self.query, keep_blank_values=True):
            if key == name:
                return value
        return None

    def get_header(self, name: str) -> Optional[str]:
        values = self.get_headers(name)
        return values[0] if values else None

    def get_headers(self, name: str) -> List[str]:
        name = name.lower()
        return [value for key, value in self.headers if key.lower() == name]

    def header_mapping(self) -> Dict[str, str]:
        """
        Collapse the header list into one entry per name.

        Repeated names are joined with ", ", the HTTP list form; the case of
        the first occurrence is kept.
        """
        mapping: Dict[str, str] = {}
        names: Dict[str, str] = {}
        for key, value in self.headers:
            existing = names.get(key.lower())
            if existing is None:
                names[key.lower()] = key
                mapping[key] = value
            else:
                mapping[existing] = f"{mapping[existing]}, {value}"
        return mapping

    def read_body(self) -> bytes:
        """
        Read the whole request body.

        Raises:
            BodyReadError: if the body could not be read off the connection
        """
        if self.body is None:
            self.body = self.body_reader() if self.body_reader else b''
        return self.body


@dataclass
class HTTPResponse:
    """Model representing an outbound HTTP response."""
    status_code: int = 200
    headers: List[Header] = field(default_factory=list)
    body: bytes = b''

    @property
    def status_message(self) -> str:
        try:
            return HTTPStatus(self.status_code).phrase
        except ValueError:
            return ''

    @property
    def body_allowed(self) -> bool:
        return self.status_code >= 200 and self.status_code not in (204, 304)

    def get_header(self, name: str) -> Optional[str]:
        values = self.get_headers(name)
        return values[0] if values else None

    def get_headers(self, name: str) -> List[str]:
        name = name.lower()
        return [value for key, value in self.headers if key.lower() == name]

    def add_header(self, name: str, value: str) -> None:
        self.headers.append((name, value))

    def set_header(self, name: str, value: str) -> None:
        self.remove_header(name)
        self.headers.append((name, value))

    def remove_header(self, name: str) -> None:
        self.headers = [(k, v) for k, v in self.headers if k.lower() != name.lower()]

    def fail(self, status_code: int, message: str) -> 'HTTPResponse':
        """
        Turn this response into a plain-text error.

        Headers already set (CORS headers in particular) are kept. The body is
        the message followed by a newline.
        """
        self.remove_header('Content-Length')
        self.set_header('Content-Type', 'text/plain; charset=utf-8')
        self.set_header('X-Content-Type-Options', 'nosniff')
        self.status_code = status_code
        self.body = f"{message}\n".encode('utf-8')
        return self

    @classmethod
    def create_error(cls, status_code: int, message: str) -> 'HTTPResponse':
        """Create an error response."""
        return cls().fail(status_code, message)

    def to_bytes(self, head_only: bool = False) -> bytes:
        """
        Serialize the response for the wire.

        The body is always re-framed with Content-Length and the connection is
        marked for closing. With head_only the body is left out and an
        upstream Content-Length is kept as sent.
        """
        headers = [(k, v) for k, v in self.headers
                   if k.lower() not in _MANAGED_HEADERS]
        body = self.body if self.body_allowed and not head_only else b''

        if self.body_allowed:
            declared = self.get_header('Content-Length')
            if not head_only or declared is None:
                headers = [(k, v) for k, v in headers if k.lower() != 'content-length']
                headers.append(('Content-Length', str(len(self.body))))
        if self.get_header('Date') is None:
            headers.append(('Date', formatdate(usegmt=True)))
        headers.append(('Connection', 'close'))

        headers_str = ''.join(f"{k}: {v}\r\n" for k, v in headers)
        head = (
            f"HTTP/1.1 {self.status_code} {self.status_message}\r\n"
            f"{headers_str}"
            f"\r\n"
        )
        return head.encode('iso-8859-1', errors='replace') + body
