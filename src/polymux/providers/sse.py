"""Server-sent event helpers shared by the HTTP streaming adapters"""

import json
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import structlog


logger = structlog.get_logger(__name__)

DONE_SENTINEL = "[DONE]"


async def iter_sse_data(response: httpx.Response, bare_json: bool = False) -> AsyncIterator[str]:
    """Yield the payload of every ``data:`` line as it arrives

    With ``bare_json`` a line holding an unframed JSON object is passed through
    too; some APIs answer errors that way on an otherwise streaming endpoint.
    """
    async for line in response.aiter_lines():
        line = line.strip()
        if line.startswith("data:"):
            payload = line[5:].strip()
        elif bare_json and line.startswith("{"):
            payload = line
        else:
            continue
        if not payload or payload == DONE_SENTINEL:
            continue
        yield payload


def decode_frame(payload: str, provider: str, session_id: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse one SSE payload; malformed frames are logged and dropped"""
    try:
        frame = json.loads(payload)
    except json.JSONDecodeError as e:
        logger.warning("Malformed stream frame skipped",
                       provider=provider,
                       session_id=session_id,
                       error=str(e))
        return None

    if not isinstance(frame, dict):
        logger.warning("Unexpected stream frame skipped",
                       provider=provider,
                       session_id=session_id,
                       frame_type=type(frame).__name__)
        return None
    return frame


def error_message_from_body(body: bytes) -> str:
    """Best-effort human message from an error response body"""
    text = body.decode("utf-8", errors="replace")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        for key in ("message", "error_msg"):
            if data.get(key):
                return str(data[key])
    return text
