"""
Server-sent event filtering for upstream streaming responses.

Some upstreams emit text delta events that carry an extra "snapshot" field:

    data: {"type":"text","text":"I'm open","snapshot":"I'm open"}

A downstream SSE consumer validates events against a discriminated union keyed
on "type" and rejects that shape outright. The consumer cannot be patched, so
those events are removed from the stream entirely. The text they carry is lost
with them; stripping just the field would change what clients observe.

Every other line (event:, id:, retry:, comments, blank separators, [DONE],
unparseable payloads) is kept byte-for-byte and in order.
"""

import json
import logging
from collections.abc import Iterator
from typing import Any

logger = logging.getLogger(__name__)

DATA_PREFIX = b"data: "
DONE_SENTINEL = b"[DONE]"


def should_drop_event(event: dict[str, Any]) -> bool:
    """Drop text events that carry a snapshot field, whatever its value."""
    return event.get("type") == "text" and "snapshot" in event


def classify_lines(body: bytes) -> Iterator[tuple[bytes, bool]]:
    """
    Yield (line, keep) for every line of body, in order.

    Lines are split on b"\\n"; rejoining all kept lines with b"\\n" reproduces
    the input exactly when nothing is dropped.
    """
    for line in body.split(b"\n"):
        if not line.startswith(DATA_PREFIX):
            yield line, True
            continue

        payload = line[len(DATA_PREFIX):]
        if not payload or payload == DONE_SENTINEL:
            yield line, True
            continue

        try:
            event = json.loads(payload)
        except (ValueError, UnicodeDecodeError, RecursionError):
            yield line, True
            continue

        if isinstance(event, dict) and should_drop_event(event):
            yield line, False
        else:
            yield line, True


def filter_sse(body: bytes) -> tuple[bytes, bool]:
    """
    Remove snapshot-carrying text events from an SSE body.

    Returns:
        (new_body, changed). When nothing was dropped the original bytes
        object is returned so callers can leave headers alone.
    """
    kept: list[bytes] = []
    dropped = 0
    for line, keep in classify_lines(body):
        if keep:
            kept.append(line)
        else:
            dropped += 1
            logger.debug(f"Dropped SSE frame: {line[:200]!r}")

    if not dropped:
        return body, False

    logger.info(f"Dropped {dropped} SSE text frame(s) carrying a snapshot field")
    return b"\n".join(kept), True
