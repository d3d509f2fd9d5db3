#Filename: handlers.py
"""
HANDLER FACTORY
Turns a handler description into an executable RequestHandler.
One builder per HandlerType; the table is checked for completeness at import.
"""

import inspect
import json
from typing import Any, Callable, Dict, Mapping, Optional

from structures import CompletedRequest, IncomingRequest
from proxy_common import ConfigurationError, HandlerOptions, HeaderError, HeaderValue, check_header
from http_streams import ResponseWriter
from handler_data import (
    HandlerType, HandlerData, SimpleHandlerData, CallbackHandlerData,
    PassThroughHandlerData, CallbackResult, Callback, RequestHandler,
    normalize_callback_result
)
from request_utils import wait_for_completed_request
from passthrough import build_passthrough_handler

CALLBACK_ERROR_MESSAGE = "Callback handler threw an exception"

HandlerBuilder = Callable[[Any, HandlerOptions], RequestHandler]


def _copy_headers(headers: Optional[Mapping[str, HeaderValue]]) -> Optional[Dict[str, HeaderValue]]:
    if headers is None:
        return None
    copied: Dict[str, HeaderValue] = {}
    for k, v in headers.items():
        try:
            check_header(k, v)
        except HeaderError as e:
            raise ConfigurationError(f"Invalid fixed response header: {e}") from e
        copied[k] = list(v) if isinstance(v, (list, tuple)) else v
    return copied


# -- Fixed Responder --

def build_simple_handler(data: SimpleHandlerData, options: HandlerOptions) -> RequestHandler:
    status = data.status
    body = data.body
    headers = _copy_headers(data.headers)

    async def handle(request: IncomingRequest, response: ResponseWriter) -> None:
        response.write_head(status, headers)
        await response.end(body or "")

    def explain() -> str:
        return (
            f"respond with status {status}"
            + (f", headers {json.dumps(headers)}" if headers else "")
            + (f' and body "{body}"' if body else "")
        )

    return RequestHandler(handle, explain)


# -- Callback Responder --

class CallbackOutcome:
    """Either the callback's result or the error it failed with."""
    __slots__ = ('result', 'error')

    def __init__(
        self,
        result: Optional[CallbackResult] = None,
        error: Optional[Exception] = None
    ) -> None:
        self.result = result
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None


async def invoke_callback(callback: Callback, request: CompletedRequest) -> CallbackOutcome:
    """
    Calls a user callback and captures any failure in the outcome.
    Async callbacks are awaited; mappings are coerced to CallbackResult.
    """
    try:
        value = callback(request)
        if inspect.isawaitable(value):
            value = await value
        if isinstance(value, Mapping):
            value = CallbackResult.from_mapping(value)
        elif not isinstance(value, CallbackResult):
            raise TypeError(f"Callback returned {type(value).__name__}, expected CallbackResult")
    except Exception as e: # pylint: disable=broad-exception-caught
        return CallbackOutcome(error=e)
    return CallbackOutcome(result=value)


def _callback_name(callback: Callback) -> Optional[str]:
    name = getattr(callback, '__name__', None)
    if not name or name == '<lambda>':
        return None
    return name


def build_callback_handler(data: CallbackHandlerData, options: HandlerOptions) -> RequestHandler:
    callback = data.callback
    name = _callback_name(callback)

    async def handle(request: IncomingRequest, response: ResponseWriter) -> None:
        completed = await wait_for_completed_request(request)
        outcome = await invoke_callback(callback, completed)

        if not outcome.ok:
            error = outcome.error
            options.log("ERROR", f"Callback handler failed for {request.method} {request.url}: {error!r}")
            response.write_head(500, reason=CALLBACK_ERROR_MESSAGE)
            await response.end(f"{type(error).__name__}: {error}")
            return

        normalized = normalize_callback_result(outcome.result)
        response.write_head(normalized.status, normalized.headers)
        await response.end(normalized.body)

    def explain() -> str:
        return "respond using provided callback" + (f" ({name})" if name else "")

    return RequestHandler(handle, explain)


# -- Factory --

HANDLER_BUILDERS: Dict[HandlerType, HandlerBuilder] = {
    HandlerType.SIMPLE: build_simple_handler,
    HandlerType.CALLBACK: build_callback_handler,
    HandlerType.PASSTHROUGH: build_passthrough_handler,
}

_VARIANTS = (SimpleHandlerData, CallbackHandlerData, PassThroughHandlerData)

if set(HANDLER_BUILDERS) != set(HandlerType):
    raise RuntimeError("HANDLER_BUILDERS must define exactly one builder per HandlerType")


def build_handler(handler_data: HandlerData, options: Optional[HandlerOptions] = None) -> RequestHandler:
    """Builds the executable handler for a description. Pure construction, no I/O."""
    if not isinstance(handler_data, _VARIANTS):
        raise ConfigurationError(f"Unknown handler description: {handler_data!r}")
    builder = HANDLER_BUILDERS[handler_data.type]
    return builder(handler_data, options or HandlerOptions())
