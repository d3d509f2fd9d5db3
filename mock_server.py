#Filename: mock_server.py
"""
MOCK SERVER
Minimal HTTP/1.1 server that answers every request with one handler
description. One request per connection (Connection: close).
Handler failures that escape are translated into error responses here.
"""

import asyncio
import argparse
import logging
import sys
from typing import List, Optional

from structures import IncomingRequest, MAX_HEADER_BLOCK_SIZE, lower_header_dict
from proxy_common import ConfigurationError, HandlerOptions, MockServerError, StreamError
from http_streams import ResponseWriter, body_stream_for, read_request_head
from handler_data import HandlerData, SimpleHandlerData, PassThroughHandlerData
from handlers import build_handler

log = logging.getLogger("mockwire.server")

HANDLER_FAILURE_MESSAGE = "Error during request handling"
LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"


class MockServer:
    """
    Serves a single handler on host:port. port=0 picks a free port;
    read the bound one from `port` after start().
    """

    def __init__(
        self,
        handler_data: HandlerData,
        host: str = "127.0.0.1",
        port: int = 0,
        options: Optional[HandlerOptions] = None
    ) -> None:
        self.options = options or HandlerOptions()
        self.handler = build_handler(handler_data, self.options)
        self.host = host
        self._requested_port = port
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def port(self) -> int:
        if self._server is None or not self._server.sockets:
            raise RuntimeError("MockServer is not running")
        return self._server.sockets[0].getsockname()[1]

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def start(self) -> None:
        if self._server is not None:
            raise RuntimeError("MockServer is already running")
        self._server = await asyncio.start_server(
            self._handle_client, self.host, self._requested_port, limit=MAX_HEADER_BLOCK_SIZE
        )
        log.info("Mock server listening on %s, will %s", self.url, self.handler.explain())

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        log.info("Mock server stopped")

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        try:
            await self._server.serve_forever()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> "MockServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            try:
                head = await read_request_head(reader)
                if head is None:
                    return
                method, target, _version, headers = head
                body = body_stream_for(reader, headers, chunk_size=self.options.read_chunk_size)
            except StreamError as e:
                log.warning("Rejected malformed request: %s", e)
                await self._send_error(ResponseWriter(writer), e.status_code, e.status_message, str(e))
                return

            if lower_header_dict(headers).get('expect', '').lower() == '100-continue':
                writer.write(b"HTTP/1.1 100 Continue\r\n\r\n")
                await writer.drain()

            request = IncomingRequest(method, target, headers, body)
            response = ResponseWriter(writer, method)
            log.debug("%s %s: %s", method, target, self.handler.explain())
            try:
                await self.handler(request, response)
            except Exception as e: # pylint: disable=broad-exception-caught
                await self._handle_failure(request, response, e)
        except Exception as e: # pylint: disable=broad-exception-caught
            log.error("Connection error: %s", e)
        finally:
            if not writer.is_closing():
                writer.close()

    async def _handle_failure(
        self,
        request: IncomingRequest,
        response: ResponseWriter,
        error: Exception
    ) -> None:
        """Answers for a handler that failed. Only possible while the head is unsent."""
        if isinstance(error, MockServerError):
            status, reason, body = error.status_code, error.status_message, str(error)
            log.error("%s %s failed: %s", request.method, request.url, error)
        else:
            status, reason, body = 500, HANDLER_FAILURE_MESSAGE, f"{type(error).__name__}: {error}"
            log.error("%s %s failed", request.method, request.url, exc_info=error)

        if response.headers_sent:
            log.warning("Response already started for %s %s, closing connection", request.method, request.url)
            return
        await self._send_error(ResponseWriter(response.writer, request.method), status, reason, body)

    async def _send_error(self, response: ResponseWriter, status: int, reason: str, body: str) -> None:
        response.write_head(status, {'Content-Type': 'text/plain; charset=utf-8'}, reason=reason)
        await response.end(body)


# -- CLI --

def handler_data_from_args(args: argparse.Namespace, parser: argparse.ArgumentParser) -> HandlerData:
    if args.passthrough:
        return PassThroughHandlerData()
    headers = {}
    for raw in args.header or []:
        if ':' not in raw:
            parser.error(f"--header expects 'Name: value', got {raw!r}")
        name, value = raw.split(':', 1)
        headers[name.strip()] = value.strip()
    return SimpleHandlerData(args.status, args.body, headers or None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="mockwire - answer every HTTP request with one handler")
    parser.add_argument("--host", default="127.0.0.1", help="Listen address (default: 127.0.0.1)")
    parser.add_argument("-p", "--port", type=int, default=8000, help="Listen port (default: 8000)")
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("-s", "--status", type=int, help="Respond with this fixed status")
    mode.add_argument("--passthrough", action="store_true", help="Forward requests to the real server")
    parser.add_argument("-b", "--body", help="Fixed response body")
    parser.add_argument("-H", "--header", action="append", help="Fixed response header 'Name: value' (repeatable)")
    parser.add_argument("--verify-ssl", action="store_true", help="Verify upstream TLS certificates")
    parser.add_argument("--ca-bundle", help="CA bundle for upstream verification")
    parser.add_argument("--connect-timeout", type=float, default=None, help="Upstream connect timeout in seconds")
    parser.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT, datefmt="%H:%M:%S")

    options = HandlerOptions(
        upstream_verify_ssl=args.verify_ssl,
        upstream_ca_bundle=args.ca_bundle,
        connect_timeout=args.connect_timeout
    )
    try:
        server = MockServer(handler_data_from_args(args, parser), args.host, args.port, options)
    except ConfigurationError as e:
        parser.error(str(e))
    try:
        run_event_loop(server.serve_forever())
    except KeyboardInterrupt:
        pass
    return 0


def run_event_loop(coro) -> None:
    """Runs the server on uvloop where it is supported."""
    if sys.platform != "win32":
        import uvloop
        uvloop.run(coro)
    else:
        asyncio.run(coro)


if __name__ == "__main__":
    sys.exit(main())
