#Filename: structures.py
"""
CORE DATA STRUCTURES
Request objects handed to mock handlers.
IncomingRequest is the in-flight (streamed) view, CompletedRequest the
fully-buffered one produced by request_utils.wait_for_completed_request().
"""

from typing import Dict, List, Tuple, Set, TYPE_CHECKING

if TYPE_CHECKING:
    from http_streams import BodyStream

# -- Constants --

READ_CHUNK_SIZE: int = 65536
MAX_HEADER_BLOCK_SIZE: int = 262144                # Request/response head limit
MAX_COMPLETED_BODY_SIZE: int = 10 * 1024 * 1024    # 10MB limit for buffered requests

# Connection-scoped headers. Never relayed between hops.
HOP_BY_HOP_HEADERS: Set[str] = {
    'connection', 'keep-alive', 'proxy-connection', 'upgrade'
}

# Responses that never carry a body (RFC 9110 Section 6.4.1)
BODYLESS_STATUSES: Set[int] = {204, 304}

# -- Types --

HeaderList = List[Tuple[str, str]]


def lower_header_dict(headers: HeaderList) -> Dict[str, str]:
    """Returns headers keyed by lower-cased name. Note: Lossy for duplicate keys."""
    return {k.lower(): v for k, v in headers}


class IncomingRequest:
    """
    A request as it arrives: head parsed, body still on the wire.
    `url` is the request target exactly as the client sent it, so for
    proxied traffic it is the absolute-form URL of the real server.
    """
    __slots__ = ('method', 'url', 'headers', 'body')

    def __init__(
        self,
        method: str,
        url: str,
        headers: HeaderList,
        body: "BodyStream"
    ) -> None:
        if not isinstance(headers, list):
            raise TypeError(f"Headers must be List[Tuple[str, str]], got {type(headers).__name__}")
        self.method: str = method
        self.url: str = url
        self.headers: HeaderList = headers
        self.body = body

    def headers_dict(self) -> Dict[str, str]:
        return lower_header_dict(self.headers)

    def __repr__(self) -> str:
        return f"<IncomingRequest {self.method} {self.url}>"


class CompletedRequest:
    """
    A request whose body has been read fully into memory.
    Strict typing enforced: headers must be a list of tuples, body must be bytes.
    """
    __slots__ = ('method', 'url', 'headers', 'body')

    def __init__(self, method: str, url: str, headers: HeaderList, body: bytes) -> None:
        if not isinstance(headers, list):
            raise TypeError(f"Headers must be List[Tuple[str, str]], got {type(headers).__name__}")
        if not isinstance(body, bytes):
            raise TypeError(f"Request body must be bytes, got {type(body).__name__}")
        self.method: str = method
        self.url: str = url
        self.headers: HeaderList = headers
        self.body: bytes = body

    @property
    def text(self) -> str:
        """The body decoded as UTF-8 (undecodable bytes replaced)."""
        return self.body.decode('utf-8', 'replace')

    def headers_dict(self) -> Dict[str, str]:
        return lower_header_dict(self.headers)

    def __repr__(self) -> str:
        return f"<CompletedRequest {self.method} {self.url} ({len(self.body)} bytes)>"
