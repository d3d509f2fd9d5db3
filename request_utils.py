#Filename: request_utils.py
"""
REQUEST UTILITIES
Buffers an in-flight request into a CompletedRequest.
"""

from structures import IncomingRequest, CompletedRequest, MAX_COMPLETED_BODY_SIZE
from proxy_common import PayloadTooLargeError


async def wait_for_completed_request(
    request: IncomingRequest,
    max_body_size: int = MAX_COMPLETED_BODY_SIZE
) -> CompletedRequest:
    """
    Reads the request body to the end and returns the materialized request.
    Raises PayloadTooLargeError once more than max_body_size bytes arrive.
    """
    parts = []
    total = 0
    async for chunk in request.body:
        total += len(chunk)
        if total > max_body_size:
            raise PayloadTooLargeError(f"Request body exceeded {max_body_size} bytes.")
        parts.append(chunk)
    return CompletedRequest(request.method, request.url, list(request.headers), b"".join(parts))
