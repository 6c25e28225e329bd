import json
from typing import Optional


def sse_format(data: dict, event: Optional[str] = None, id_: Optional[str] = None) -> bytes:
    """Build an SSE frame."""
    chunks = []
    if event:
        chunks.append(f"event: {event}\n")
    if id_:
        chunks.append(f"id: {id_}\n")
    payload = json.dumps(data, separators=(",", ":"), default=str)
    chunks.append(f"data: {payload}\n\n")
    return "".join(chunks).encode("utf-8")


def sse_retry(ms: int = 5000) -> bytes:
    """Generate SSE retry hint frame."""
    return f"retry: {ms}\n\n".encode("utf-8")


SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
