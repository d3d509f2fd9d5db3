#Filename: passthrough.py
"""
PASSTHROUGH PROXY
Forwards a request to the real server named in its URL and relays the reply.
Bodies are streamed in both directions with drain() backpressure; nothing is
buffered whole.

States: PARSING_TARGET -> AWAITING_UPSTREAM_CONNECTION -> STREAMING_HEADERS
        -> STREAMING_BODY -> COMPLETED | FAILED
"""

import asyncio
from enum import Enum
from typing import Dict, List, Tuple
from urllib.parse import urlsplit

from structures import (
    IncomingRequest, HeaderList, HOP_BY_HOP_HEADERS, BODYLESS_STATUSES
)
from proxy_common import (
    ConfigurationError, HandlerOptions, HeaderError, StreamError, UpstreamError,
    connect_upstream
)
from http_streams import BodyStream, ResponseWriter, body_stream_for, read_response_head
from handler_data import PassThroughHandlerData, RequestHandler

PASSTHROUGH_EXPLANATION = "pass the request through to the real server"


class PassthroughState(str, Enum):
    PARSING_TARGET = 'parsing-target'
    AWAITING_UPSTREAM_CONNECTION = 'awaiting-upstream-connection'
    STREAMING_HEADERS = 'streaming-headers'
    STREAMING_BODY = 'streaming-body'
    COMPLETED = 'completed'
    FAILED = 'failed'


class UpstreamTarget:
    """Where a passthrough request goes."""
    __slots__ = ('scheme', 'host', 'port', 'path')

    def __init__(self, scheme: str, host: str, port: int, path: str) -> None:
        self.scheme = scheme
        self.host = host
        self.port = port
        self.path = path

    @property
    def authority(self) -> str:
        host = f"[{self.host}]" if ':' in self.host else self.host
        default_port = 443 if self.scheme == 'https' else 80
        return host if self.port == default_port else f"{host}:{self.port}"

    def __repr__(self) -> str:
        return f"<UpstreamTarget {self.scheme}://{self.authority}{self.path}>"


def parse_upstream_target(url: str) -> UpstreamTarget:
    """
    Extracts scheme, host, port and path from a request URL.
    Raises ConfigurationError when the URL names no host, i.e. the client
    talked to the mock server directly instead of using it as a proxy.
    """
    parts = urlsplit(url)
    if not parts.hostname:
        raise ConfigurationError(
            f"Cannot pass through request to {url}, since it doesn't specify an upstream host.\n"
            "To pass requests through, use the mock server as a proxy whilst making "
            "requests to the real target server."
        )
    scheme = (parts.scheme or 'http').lower()
    try:
        port = parts.port
    except ValueError as exc:
        raise ConfigurationError(f"Cannot pass through request to {url}: invalid port") from exc
    if port is None:
        port = 443 if scheme == 'https' else 80
    path = parts.path or '/'
    if parts.query:
        path += '?' + parts.query
    return UpstreamTarget(scheme, parts.hostname, port, path)


def _group_headers(headers: HeaderList) -> List[Tuple[str, List[str]]]:
    """Groups repeated headers, keeping first-seen order and casing."""
    grouped: Dict[str, Tuple[str, List[str]]] = {}
    for name, value in headers:
        grouped.setdefault(name.lower(), (name, []))[1].append(value)
    return list(grouped.values())


class PassthroughProxy:
    """
    Runs a single passthrough exchange. One instance per request; the only
    shared input is the immutable HandlerOptions.
    """
    __slots__ = ('options', 'state', 'target')

    def __init__(self, options: HandlerOptions) -> None:
        self.options = options
        self.state = PassthroughState.PARSING_TARGET
        self.target = None

    def _transition(self, state: PassthroughState) -> None:
        self.state = state

    async def run(self, request: IncomingRequest, response: ResponseWriter) -> None:
        try:
            self.target = parse_upstream_target(request.url)
            await self._forward(self.target, request, response)
        except BaseException:
            self._transition(PassthroughState.FAILED)
            raise
        self._transition(PassthroughState.COMPLETED)

    def _request_head(
        self,
        method: str,
        target: UpstreamTarget,
        headers: HeaderList,
        chunked: bool = False
    ) -> bytes:
        lines = [f"{method} {target.path} HTTP/1.1\r\n"]
        has_host = False
        for k, v in headers:
            k_lower = k.lower()
            if k_lower in HOP_BY_HOP_HEADERS:
                continue
            # Transfer-Encoding frames a chunked body
            if chunked and k_lower == 'content-length':
                continue
            if k_lower == 'host':
                has_host = True
            lines.append(f"{k}: {v}\r\n")
        if not has_host:
            lines.insert(1, f"Host: {target.authority}\r\n")
        lines.append("Connection: close\r\n\r\n")
        return "".join(lines).encode('latin-1')

    async def _send_body(self, body: BodyStream, writer: asyncio.StreamWriter) -> None:
        """Pumps the client body upstream, re-chunking chunked bodies."""
        try:
            async for chunk in body:
                writer.write(b"%x\r\n%s\r\n" % (len(chunk), chunk) if body.chunked else chunk)
                await writer.drain()
            if body.chunked:
                writer.write(b"0\r\n\r\n")
                await writer.drain()
        except (OSError, StreamError) as e:
            raise UpstreamError() from e

    async def _read_final_head(self, reader: asyncio.StreamReader) -> Tuple[str, int, str, HeaderList]:
        """Reads the response head, skipping interim 1xx responses."""
        try:
            while True:
                version, status, reason, headers = await read_response_head(reader)
                if 100 <= status < 200 and status != 101:
                    continue
                return version, status, reason, headers
        except (OSError, StreamError) as e:
            raise UpstreamError() from e

    async def _await_response_head(
        self,
        reader: asyncio.StreamReader,
        send_task: "asyncio.Task[None]"
    ) -> Tuple[str, int, str, HeaderList]:
        """
        Waits for the response head while the body is still being sent.
        A failed send aborts the wait; otherwise the head may arrive before,
        during or after the body upload.
        """
        head_task = asyncio.ensure_future(self._read_final_head(reader))
        try:
            await asyncio.wait({head_task, send_task}, return_when=asyncio.FIRST_COMPLETED)
            if not head_task.done():
                exc = send_task.exception()
                if exc is not None:
                    raise exc
            return await head_task
        finally:
            if not head_task.done():
                head_task.cancel()

    async def _forward(
        self,
        target: UpstreamTarget,
        request: IncomingRequest,
        response: ResponseWriter
    ) -> None:
        self._transition(PassthroughState.AWAITING_UPSTREAM_CONNECTION)
        reader, writer = await connect_upstream(target.scheme, target.host, target.port, self.options)

        send_task = None
        try:
            try:
                writer.write(self._request_head(
                    request.method, target, request.headers, request.body.chunked
                ))
                await writer.drain()
            except OSError as e:
                raise UpstreamError() from e
            send_task = asyncio.create_task(self._send_body(request.body, writer))

            _, status, reason, headers = await self._await_response_head(reader, send_task)

            self._transition(PassthroughState.STREAMING_HEADERS)
            for name, values in _group_headers(headers):
                try:
                    response.set_header(name, values if len(values) > 1 else values[0])
                except HeaderError as e:
                    # A surprising number of real sites send slightly invalid headers.
                    self.options.log("WARNING", f"Error setting header on passthrough response: {e}")
            response.status_code = status
            response.status_message = reason or None

            self._transition(PassthroughState.STREAMING_BODY)
            bodyless = (
                request.method.upper() == 'HEAD'
                or status in BODYLESS_STATUSES
                or 100 <= status < 200
            )
            try:
                body = body_stream_for(
                    reader, headers, bodyless=bodyless, allow_until_eof=True,
                    chunk_size=self.options.read_chunk_size
                )
            except StreamError as e:
                # Bad upstream framing, nothing relayed yet
                raise UpstreamError() from e
            await response.pipe_from(body)
        finally:
            if send_task is not None:
                if not send_task.done():
                    send_task.cancel()
                elif not send_task.cancelled():
                    # Upstream may answer without reading the whole body
                    send_task.exception()
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass


def build_passthrough_handler(data: PassThroughHandlerData, options: HandlerOptions) -> RequestHandler:
    async def handle(request: IncomingRequest, response: ResponseWriter) -> None:
        await PassthroughProxy(options).run(request, response)

    def explain() -> str:
        return PASSTHROUGH_EXPLANATION

    return RequestHandler(handle, explain)
