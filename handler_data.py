#Filename: handler_data.py
"""
HANDLER DESCRIPTIONS
Declarative descriptions of how a matched request is answered.
The set of variants is closed: SimpleHandlerData, CallbackHandlerData and
PassThroughHandlerData, tagged by HandlerType.
"""

import json
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Dict, Mapping, Optional, Union

from structures import CompletedRequest, IncomingRequest
from proxy_common import HeaderValue
from http_streams import ResponseWriter


class HandlerType(str, Enum):
    SIMPLE = 'simple'
    CALLBACK = 'callback'
    PASSTHROUGH = 'passthrough'


@dataclass
class CallbackResult:
    """
    What a user callback returns.
    `json`, when not None, is serialized and replaces `body`.
    """
    status: Optional[int] = None
    json: Any = None
    body: Optional[Union[str, bytes]] = None
    headers: Optional[Dict[str, HeaderValue]] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CallbackResult":
        allowed = {f.name for f in fields(cls)}
        unknown = set(data) - allowed
        if unknown:
            raise TypeError(f"Unexpected callback result keys: {', '.join(sorted(unknown))}")
        return cls(**data)


Callback = Callable[
    [CompletedRequest],
    Union[CallbackResult, Mapping[str, Any], Awaitable[Union[CallbackResult, Mapping[str, Any]]]]
]


@dataclass(frozen=True)
class SimpleHandlerData:
    type: ClassVar[HandlerType] = HandlerType.SIMPLE

    status: int
    body: Optional[str] = None
    headers: Optional[Dict[str, HeaderValue]] = None


@dataclass(frozen=True)
class CallbackHandlerData:
    type: ClassVar[HandlerType] = HandlerType.CALLBACK

    callback: Callback


@dataclass(frozen=True)
class PassThroughHandlerData:
    type: ClassVar[HandlerType] = HandlerType.PASSTHROUGH


HandlerData = Union[SimpleHandlerData, CallbackHandlerData, PassThroughHandlerData]


@dataclass(frozen=True)
class RequestHandler:
    """
    An executable handler plus its diagnostic description.
    explain() is for logs only and never affects behavior.
    """
    handle: Callable[[IncomingRequest, ResponseWriter], Awaitable[None]]
    explain: Callable[[], str]

    async def __call__(self, request: IncomingRequest, response: ResponseWriter) -> None:
        await self.handle(request, response)


@dataclass(frozen=True)
class NormalizedResponse:
    status: int
    headers: Dict[str, HeaderValue] = field(default_factory=dict)
    body: Union[str, bytes] = ""


def normalize_callback_result(result: CallbackResult) -> NormalizedResponse:
    """
    Turns a callback result into the response to write. Pure: `result` is not modified.

    A `json` value always wins over `body`, and forces Content-Type to
    application/json whatever casing the callback used for that header.
    """
    headers: Dict[str, HeaderValue] = dict(result.headers or {})
    body = result.body

    if result.json is not None:
        for name in [k for k in headers if k.lower() == 'content-type']:
            del headers[name]
        headers['Content-Type'] = 'application/json'
        body = json.dumps(result.json, separators=(",", ":"), ensure_ascii=False)

    return NormalizedResponse(
        status=result.status if result.status is not None else 200,
        headers=headers,
        body=body if body is not None else ""
    )
