#Filename: http_streams.py
"""
HTTP/1.1 STREAM PRIMITIVES
Framed body streams, head parsing and the outgoing response writer.
All body transfer is pull-based: nothing here reads a whole body unless asked.
"""

import asyncio
from http import HTTPStatus
from typing import AsyncIterator, Dict, List, Optional, Tuple, Union

from structures import (
    HeaderList, READ_CHUNK_SIZE, BODYLESS_STATUSES, lower_header_dict
)
from proxy_common import (
    STRICT_HEADER_PATTERN, HeaderError, HeaderValue, StreamError, check_header
)

HEAD_TERMINATOR = b"\r\n\r\n"


class BodyStream:
    """
    Readable body of a request or response.
    Exactly one framing applies: Content-Length, chunked, or read-until-EOF.
    A stream without a reader is empty.
    """
    __slots__ = (
        'reader', 'length', 'chunked', 'until_eof', 'chunk_size',
        '_remaining', '_chunk_left', '_done'
    )

    def __init__(
        self,
        reader: Optional[asyncio.StreamReader],
        length: Optional[int] = None,
        chunked: bool = False,
        until_eof: bool = False,
        chunk_size: int = READ_CHUNK_SIZE
    ) -> None:
        self.reader = reader
        self.length = length
        self.chunked = chunked
        self.until_eof = until_eof
        self.chunk_size = chunk_size
        self._remaining = length or 0
        self._chunk_left = 0
        self._done = reader is None or not (chunked or until_eof or self._remaining)

    @classmethod
    def empty(cls) -> "BodyStream":
        return cls(None)

    @classmethod
    def from_bytes(cls, data: bytes) -> "BodyStream":
        """Wraps an in-memory payload. Must be called with a running event loop."""
        reader = asyncio.StreamReader()
        reader.feed_data(data)
        reader.feed_eof()
        return cls(reader, length=len(data))

    @property
    def at_end(self) -> bool:
        return self._done

    async def read(self, n: Optional[int] = None) -> bytes:
        """Returns up to n bytes of body; b"" once the body is exhausted."""
        if self._done:
            return b""
        n = n or self.chunk_size
        if self.chunked:
            return await self._read_chunked(n)
        if self.until_eof:
            data = await self.reader.read(n)
            if not data:
                self._done = True
            return data

        data = await self.reader.read(min(n, self._remaining))
        if not data:
            raise StreamError(f"Incomplete body: connection closed with {self._remaining} bytes outstanding")
        self._remaining -= len(data)
        if self._remaining == 0:
            self._done = True
        return data

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            data = await self.read()
            if not data:
                return
            yield data

    async def _read_chunked(self, n: int) -> bytes:
        if self._chunk_left == 0:
            size = await self._read_chunk_size()
            if size == 0:
                # Trailers are discarded
                while await self._read_line():
                    pass
                self._done = True
                return b""
            self._chunk_left = size

        data = await self.reader.read(min(n, self._chunk_left))
        if not data:
            raise StreamError("Incomplete chunked body")
        self._chunk_left -= len(data)
        if self._chunk_left == 0 and await self._read_line():
            raise StreamError("Missing CRLF after chunk data")
        return data

    async def _read_chunk_size(self) -> int:
        line = await self._read_line()
        if b';' in line:
            line, _ = line.split(b';', 1)
        try:
            size = int(line.strip(), 16)
        except ValueError as exc:
            raise StreamError("Invalid chunk size") from exc
        if size < 0:
            raise StreamError("Invalid chunk size")
        return size

    async def _read_line(self) -> bytes:
        try:
            line = await self.reader.readline()
        except ValueError as exc:
            raise StreamError("Chunk line exceeded max length") from exc
        if not line.endswith(b"\n"):
            raise StreamError("Incomplete chunked body")
        return line.rstrip(b"\r\n")


def body_stream_for(
    reader: asyncio.StreamReader,
    headers: HeaderList,
    bodyless: bool = False,
    allow_until_eof: bool = False,
    chunk_size: int = READ_CHUNK_SIZE
) -> BodyStream:
    """
    Picks the body framing for a message (RFC 9112 Section 6.3).
    Requests without Content-Length or chunked coding have no body;
    responses fall back to reading until the connection closes.
    """
    if bodyless:
        return BodyStream.empty()
    headers_dict = lower_header_dict(headers)

    te = headers_dict.get('transfer-encoding')
    if te:
        codings = [c.strip().lower() for c in te.split(',')]
        if codings[-1] == 'chunked':
            return BodyStream(reader, chunked=True, chunk_size=chunk_size)
        if allow_until_eof:
            return BodyStream(reader, until_eof=True, chunk_size=chunk_size)
        raise StreamError("Bad Transfer-Encoding")

    cl = headers_dict.get('content-length')
    if cl is not None:
        try:
            length = int(cl)
            if length < 0:
                raise ValueError
        except ValueError as exc:
            raise StreamError("Invalid Content-Length") from exc
        return BodyStream(reader, length=length, chunk_size=chunk_size)

    if allow_until_eof:
        return BodyStream(reader, until_eof=True, chunk_size=chunk_size)
    return BodyStream.empty()


# -- Head Parsing --

async def _read_head_lines(reader: asyncio.StreamReader) -> Optional[List[bytes]]:
    """Reads a head block. Returns None if the peer closed before sending anything."""
    try:
        block = await reader.readuntil(HEAD_TERMINATOR)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise StreamError("Incomplete message") from exc
    except asyncio.LimitOverrunError as exc:
        raise StreamError("Header block exceeded max length") from exc
    return block[:-len(HEAD_TERMINATOR)].split(b"\r\n")


async def read_request_head(
    reader: asyncio.StreamReader
) -> Optional[Tuple[str, str, str, HeaderList]]:
    """
    Parses a request line and headers strictly.
    Returns (method, target, version, headers) or None on a clean close.
    """
    lines = await _read_head_lines(reader)
    if lines is None:
        return None

    try:
        parts = lines[0].split(b' ', 2)
        if len(parts) != 3:
            raise ValueError
        method, target, version = (p.decode('ascii') for p in parts)
    except ValueError as exc:
        raise StreamError("Malformed Request Line") from exc

    headers: HeaderList = []
    for line in lines[1:]:
        if not line:
            continue
        if line[0] in (0x20, 0x09):
            raise StreamError("Obsolete Line Folding Rejected")
        match = STRICT_HEADER_PATTERN.match(line)
        if not match:
            raise StreamError("Invalid Header Syntax")
        headers.append((match.group(1).decode('ascii'), match.group(2).decode('latin-1').strip()))
    return method, target, version, headers


async def read_response_head(
    reader: asyncio.StreamReader
) -> Tuple[str, int, str, HeaderList]:
    """
    Parses a status line and headers.
    Header lines are kept as long as they contain a colon: real servers emit
    slightly invalid names and values, and those are rejected one by one when
    applied to the outgoing response.
    """
    lines = await _read_head_lines(reader)
    if lines is None:
        raise StreamError("Connection closed before response head")

    parts = lines[0].split(b' ', 2)
    try:
        version = parts[0].decode('ascii')
        status = int(parts[1])
    except (IndexError, ValueError) as exc:
        raise StreamError("Malformed Status Line") from exc
    reason = parts[2].decode('latin-1') if len(parts) > 2 else ""

    headers: HeaderList = []
    for line in lines[1:]:
        if b':' not in line:
            continue
        name, value = line.split(b':', 1)
        headers.append((name.decode('latin-1'), value.decode('latin-1').strip(' \t')))
    return version, status, reason, headers


# -- Response Writer --

class ResponseWriter:
    """
    Outgoing HTTP/1.1 response over an asyncio.StreamWriter.
    The head is sent lazily on the first write() or end(), so status and
    headers may be changed until then. One response per connection.
    """
    __slots__ = (
        'writer', 'request_method', 'status_code', 'status_message',
        '_headers', 'headers_sent', 'finished', '_chunked', '_no_body'
    )

    def __init__(self, writer: asyncio.StreamWriter, request_method: str = "GET") -> None:
        self.writer = writer
        self.request_method = request_method.upper()
        self.status_code: int = 200
        self.status_message: Optional[str] = None
        self._headers: Dict[str, Tuple[str, List[str]]] = {}
        self.headers_sent = False
        self.finished = False
        self._chunked = False
        self._no_body = False

    def set_header(self, name: str, value: HeaderValue) -> None:
        """Sets (replaces) a header. Raises HeaderError if the name or value is invalid."""
        if self.headers_sent:
            raise HeaderError(f"Cannot set header {name!r} after the head was sent")
        values = check_header(name, value)
        for v in values:
            try:
                v.encode('latin-1')
            except UnicodeEncodeError as exc:
                raise HeaderError(f"Invalid character in header {name!r}") from exc
        self._headers[name.lower()] = (name, values)

    def get_header(self, name: str) -> Optional[Union[str, List[str]]]:
        entry = self._headers.get(name.lower())
        if entry is None:
            return None
        values = entry[1]
        return values[0] if len(values) == 1 else list(values)

    def remove_header(self, name: str) -> None:
        self._headers.pop(name.lower(), None)

    @property
    def headers(self) -> HeaderList:
        return [(name, v) for name, values in self._headers.values() for v in values]

    def write_head(
        self,
        status: int,
        headers: Optional[Dict[str, HeaderValue]] = None,
        reason: Optional[str] = None
    ) -> None:
        """Sets status, reason phrase and headers. Nothing is sent until the first write."""
        self.status_code = status
        if reason is not None:
            self.status_message = reason
        for k, v in (headers or {}).items():
            self.set_header(k, v)

    def _reason(self) -> str:
        if self.status_message:
            return self.status_message
        try:
            return HTTPStatus(self.status_code).phrase
        except ValueError:
            return "Unknown"

    def _send_head(self, final_body: Optional[bytes]) -> None:
        status = self.status_code
        self._no_body = (
            self.request_method == 'HEAD'
            or status in BODYLESS_STATUSES
            or 100 <= status < 200
        )
        for h in ('connection', 'keep-alive', 'proxy-connection'):
            self._headers.pop(h, None)

        te = self.get_header('transfer-encoding')
        if isinstance(te, list):
            te = ", ".join(te)
        if te and 'chunked' in te.lower():
            self._chunked = not self._no_body
            self.remove_header('content-length')
        elif te and not self._no_body:
            # chunked must be the final coding
            self._chunked = True
            self.remove_header('content-length')
            self._headers['transfer-encoding'] = ('Transfer-Encoding', [f"{te}, chunked"])
        elif 'content-length' in self._headers or self._no_body:
            pass
        elif final_body is not None:
            self._headers['content-length'] = ('Content-Length', [str(len(final_body))])
        else:
            self._chunked = True
            self._headers['transfer-encoding'] = ('Transfer-Encoding', ['chunked'])
        self._headers['connection'] = ('Connection', ['close'])

        # Batch header writes to minimize syscalls
        buf = [f"HTTP/1.1 {status} {self._reason()}\r\n".encode('latin-1')]
        for k, v in self.headers:
            buf.append(f"{k}: {v}\r\n".encode('latin-1'))
        buf.append(b"\r\n")
        self.writer.write(b"".join(buf))
        self.headers_sent = True

    def _write_framed(self, data: bytes) -> None:
        if self._no_body or not data:
            return
        if self._chunked:
            self.writer.write(b"%x\r\n%s\r\n" % (len(data), data))
        else:
            self.writer.write(data)

    async def write(self, data: Union[bytes, str]) -> None:
        """Writes body data, waiting for the transport to drain (backpressure)."""
        if self.finished:
            raise StreamError("Write after end of response")
        if isinstance(data, str):
            data = data.encode('utf-8')
        if not self.headers_sent:
            self._send_head(None)
        self._write_framed(data)
        await self.writer.drain()

    async def end(self, data: Union[bytes, str] = b"") -> None:
        """Writes any final data and terminates the response."""
        if self.finished:
            return
        if isinstance(data, str):
            data = data.encode('utf-8')
        if not self.headers_sent:
            self._send_head(data)
        self._write_framed(data)
        if self._chunked:
            self.writer.write(b"0\r\n\r\n")
        self.finished = True
        await self.writer.drain()

    async def pipe_from(self, stream: BodyStream) -> None:
        """Relays a body stream chunk by chunk, then ends the response."""
        async for chunk in stream:
            await self.write(chunk)
        await self.end()
