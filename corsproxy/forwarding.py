"""
Forwarding of inbound requests to the URL named in their ``url`` parameter.
"""

import logging
import re
from http.cookiejar import DefaultCookiePolicy
from typing import Dict, Iterator, Optional
from urllib.parse import SplitResult, urlsplit

import requests
import urllib3

from .models import BodyReadError, Header, HTTPRequest, HTTPResponse

logger = logging.getLogger(__name__)

CORS_HEADERS = (
    ('Access-Control-Allow-Origin', '*'),
    ('Access-Control-Allow-Methods', 'GET, POST, OPTIONS'),
    ('Access-Control-Allow-Headers', 'Content-Type'),
)

# The gateway re-frames every body it relays
_SKIPPED_UPSTREAM_HEADERS = {'transfer-encoding', 'connection'}

_BAD_ESCAPE = re.compile(r'%(?![0-9A-Fa-f]{2})')
_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f]')

# RFC 3986 host: reg-name, or an IP literal in brackets (with an optional zone id)
_REG_NAME = re.compile(r"(?:[A-Za-z0-9\-._~!$&'()*+,;=]|%[0-9A-Fa-f]{2})*")
_IP_LITERAL = re.compile(
    r"\[(?:[0-9A-Fa-f:.]+(?:%25(?:[A-Za-z0-9\-._~]|%[0-9A-Fa-f]{2})+)?"
    r"|v[0-9A-Fa-f]+\.[A-Za-z0-9\-._~!$&'()*+,;=:]+)\]"
)
_PORT = re.compile(r'(?::[0-9]*)?')

_TRANSPORT_ERRORS = (
    requests.exceptions.RequestException,
    urllib3.exceptions.HTTPError,
    OSError,
)


def parse_target_url(raw_url: str) -> SplitResult:
    """
    Parse a target URL, rejecting syntactically invalid ones.

    The query component is kept raw; escapes in every other component must be
    well formed.

    Raises:
        ValueError: if the URL is malformed
    """
    if _CONTROL_CHARS.search(raw_url):
        raise ValueError("control character in URL")
    if raw_url.startswith(':'):
        raise ValueError("missing protocol scheme")

    parts = urlsplit(raw_url)
    for component in (parts.netloc, parts.path, parts.fragment):
        match = _BAD_ESCAPE.search(component)
        if match:
            raise ValueError(f"invalid URL escape {component[match.start():match.start() + 3]!r}")

    _check_host(parts.netloc)
    return parts


def _check_host(netloc: str) -> None:
    """
    Validate the host and port of a netloc.

    Ports are digits only; their range is left to the HTTP client.

    Raises:
        ValueError: if the host or port is malformed
    """
    host_port = netloc.rpartition('@')[2]
    if host_port.startswith('['):
        end = host_port.find(']') + 1
        host, port = host_port[:end], host_port[end:]
        valid_host = end > 0 and _IP_LITERAL.fullmatch(host)
    else:
        host, sep, port = host_port.partition(':')
        port = sep + port
        valid_host = _REG_NAME.fullmatch(host)

    if not valid_host:
        raise ValueError(f"invalid host {host!r}")
    if not _PORT.fullmatch(port):
        raise ValueError(f"invalid port {port!r}")


def _default_session() -> requests.Session:
    session = requests.Session()
    # Cookies belong to the callers, never to the gateway
    session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
    return session


def _outbound_headers(request: HTTPRequest, has_body: bool) -> Dict[str, str]:
    """
    The inbound headers, verbatim apart from body framing.

    The inbound body has already been de-chunked, and a request forwarded
    without a body must not announce one.
    """
    skipped = {'transfer-encoding'} if has_body else {'transfer-encoding', 'content-length'}
    return {name: value for name, value in request.header_mapping().items()
            if name.lower() not in skipped}


def _upstream_headers(upstream: requests.Response) -> Iterator[Header]:
    """Yield every upstream header value, repeated names included."""
    raw_headers = getattr(upstream.raw, 'headers', None)
    if hasattr(raw_headers, 'getlist'):
        for name in raw_headers:
            for value in raw_headers.getlist(name):
                yield name, value
    else:
        yield from upstream.headers.items()


class ForwardingHandler:
    """Forwards a request to its target URL and relays the answer with CORS headers."""

    def __init__(self, session: Optional[requests.Session] = None,
                 timeout: Optional[float] = None):
        """
        Initialize the forwarding handler.

        Args:
            session: Session used to reach targets; inject one to substitute the transport
            timeout: Upstream timeout in seconds, None to wait indefinitely
        """
        self._session = session or _default_session()
        self._timeout = timeout

    def handle(self, request: HTTPRequest) -> HTTPResponse:
        """
        Forward the request and build the response for the caller.

        Every response, errors included, carries the CORS headers.
        """
        response = HTTPResponse()
        for name, value in CORS_HEADERS:
            response.set_header(name, value)

        if request.method == 'OPTIONS':
            return response

        target_url = request.query_param('url')
        if not target_url:
            logger.warning(f"{request.method} {request.target}: missing url parameter")
            return response.fail(400, "Missing url parameter")

        try:
            parse_target_url(target_url)
        except ValueError as e:
            logger.warning(f"{request.method} {request.target}: invalid url parameter: {e}")
            return response.fail(400, "Invalid url parameter")

        body = None
        if request.method == 'POST':
            try:
                body = request.read_body()
            except BodyReadError as e:
                logger.error(f"Failed to read request body for {target_url}: {e}")
                return response.fail(500, "Failed to read request body")

        try:
            outbound = requests.Request(
                method=request.method,
                url=target_url,
                headers=_outbound_headers(request, has_body=body is not None),
                data=body
            ).prepare()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Failed to create request for {target_url}: {e}")
            return response.fail(500, "Failed to create request")

        try:
            upstream = self._session.send(outbound, stream=True, timeout=self._timeout)
        except _TRANSPORT_ERRORS as e:
            logger.error(f"Failed to make request to {target_url}: {e}")
            return response.fail(500, "Failed to make request")

        # Buffered before anything is written, so a failed read still yields a clean 500
        try:
            upstream_body = upstream.raw.read(decode_content=False)
        except _TRANSPORT_ERRORS as e:
            logger.error(f"Failed to read response body from {target_url}: {e}")
            return response.fail(500, "Failed to read response body")
        finally:
            upstream.close()

        for name, value in _upstream_headers(upstream):
            if name.lower() not in _SKIPPED_UPSTREAM_HEADERS:
                response.add_header(name, value)
        response.status_code = upstream.status_code
        response.body = upstream_body or b''

        logger.info(f"{request.method} {target_url} -> {upstream.status_code} ({len(response.body)} bytes)")
        return response
