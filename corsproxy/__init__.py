"""
A CORS forwarding gateway.
"""

from .server import ProxyServer
from .handler import RequestHandler
from .forwarding import ForwardingHandler
from .health import HealthHandler
from .models import BodyReadError, HTTPRequest, HTTPResponse
from .config import ProxyConfig

__all__ = ['ProxyServer', 'RequestHandler', 'ForwardingHandler', 'HealthHandler',
           'BodyReadError', 'HTTPRequest', 'HTTPResponse', 'ProxyConfig']
