#Filename: proxy_common.py
"""
MOCK SERVER COMMON DEFINITIONS
Shared error taxonomy, header validation, handler configuration and the
upstream connection logic used by the passthrough handler.
"""

import os
import asyncio
import logging
import ssl
import re
import socket
from dataclasses import dataclass
from typing import Optional, Callable, Tuple, Union, List

from structures import MAX_HEADER_BLOCK_SIZE, READ_CHUNK_SIZE

# -- Constants --
# RFC 9110 Section 5.1: field-name = token
TOKEN_PATTERN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9a-zA-Z]+$")
STRICT_HEADER_PATTERN = re.compile(rb'^([!#$%&\'*+\-.^_`|~0-9a-zA-Z]+):[ \t]*(.*)$')
UPSTREAM_ERROR_MESSAGE = "Error communicating with upstream server"

LogCallback = Callable[[str, object], None]
HeaderValue = Union[str, int, List[str]]

logger = logging.getLogger("mockwire")


class MockServerError(Exception):
    """Base exception for mock server operations."""
    status_code: int = 500
    status_message: str = "Internal Server Error"


class ConfigurationError(MockServerError):
    """Raised when a handler cannot be built or cannot run as configured."""


class UpstreamError(MockServerError):
    """Raised when the upstream server of a passthrough request is unreachable or fails mid-request."""
    status_code = 502
    status_message = UPSTREAM_ERROR_MESSAGE

    def __init__(self, message: str = UPSTREAM_ERROR_MESSAGE) -> None:
        super().__init__(message)


class HeaderError(MockServerError, ValueError):
    """Raised when a single header cannot be applied to a response."""


class StreamError(MockServerError):
    """Raised on malformed or truncated HTTP/1.1 framing."""
    status_code = 400
    status_message = "Bad Request"


class PayloadTooLargeError(StreamError):
    """Raised when a body exceeds the buffering limit."""
    status_code = 413
    status_message = "Payload Too Large"


# -- Logging --

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def default_log_callback(level: str, msg: object) -> None:
    """Routes handler diagnostics to the 'mockwire' logger."""
    logger.log(_LEVELS.get(level.upper(), logging.INFO), "%s", msg)


def emit(callback: Optional[LogCallback], level: str, msg: object) -> None:
    """Emits a log message via the callback. Diagnostics never break a response."""
    if callback:
        try:
            callback(level, msg)
        except Exception: # pylint: disable=broad-exception-caught
            pass


# -- Configuration --

@dataclass(frozen=True)
class HandlerOptions:
    """
    Settings shared by every handler built by handlers.build_handler().
    upstream_verify_ssl defaults to False: mocked traffic commonly targets
    hosts with test certificates.
    """
    log_callback: LogCallback = default_log_callback
    upstream_verify_ssl: bool = False
    upstream_ca_bundle: Optional[str] = None
    connect_timeout: Optional[float] = None
    read_chunk_size: int = READ_CHUNK_SIZE

    def log(self, level: str, msg: object) -> None:
        emit(self.log_callback, level, msg)


# -- Header Validation --

def validate_header_value(value: str) -> bool:
    """
    RFC 9110 Section 5.5: Field values MUST NOT contain CR, LF, or NUL.
    """
    return '\r' not in value and '\n' not in value and '\x00' not in value


def check_header(name: str, value: HeaderValue) -> List[str]:
    """
    Validates a header and returns its values as a list of strings.
    Raises HeaderError for an invalid name or any invalid value.
    """
    if not isinstance(name, str) or not TOKEN_PATTERN.match(name):
        raise HeaderError(f"Invalid header name: {name!r}")
    values = value if isinstance(value, (list, tuple)) else [value]
    out = []
    for v in values:
        v_s = str(v)
        if not validate_header_value(v_s):
            raise HeaderError(f"Invalid value for header {name!r}: {v_s!r}")
        out.append(v_s)
    return out


# -- Upstream Connection --

def create_upstream_ssl_context(options: HandlerOptions) -> ssl.SSLContext:
    """Builds the client-side TLS context for https upstreams."""
    ctx = ssl.create_default_context()
    # Respect SSLKEYLOGFILE for debugging if set
    keylog = os.environ.get("SSLKEYLOGFILE")
    if keylog:
        ctx.keylog_filename = keylog

    if options.upstream_verify_ssl:
        ctx.verify_mode = ssl.CERT_REQUIRED
        ctx.check_hostname = True
        if options.upstream_ca_bundle:
            ctx.load_verify_locations(cafile=options.upstream_ca_bundle)
    else:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    return ctx


async def connect_upstream(
    scheme: str,
    host: str,
    port: int,
    options: HandlerOptions
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """
    Opens the upstream connection: TLS for https, plaintext otherwise.
    Any failure (DNS, refused, handshake, timeout) is raised as UpstreamError.
    """
    ssl_ctx = create_upstream_ssl_context(options) if scheme == "https" else None
    server_hostname = host if ssl_ctx is not None else None
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(
                host, port, ssl=ssl_ctx, server_hostname=server_hostname,
                limit=MAX_HEADER_BLOCK_SIZE
            ),
            timeout=options.connect_timeout
        )
    except (OSError, ssl.SSLError, asyncio.TimeoutError) as e:
        raise UpstreamError() from e

    try:
        sock = writer.get_extra_info('socket')
        if sock:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except OSError:
        pass
    return reader, writer
