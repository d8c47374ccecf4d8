"""
Model name remapping for outbound JSON request bodies.

A client asks for model "A"; the upstream is sent model "B". Only the
top-level "model" field of a JSON object body is ever touched, and anything
that does not fit that shape is forwarded exactly as received.
"""

import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any, Union

logger = logging.getLogger(__name__)

JSONValue = Union[dict[str, Any], list[Any], str, int, float, bool, None]

JSON_CONTENT_TYPE = "application/json"


def is_json_content_type(content_type: str | None) -> bool:
    """True for exactly "application/json" or "application/json;<params>"."""
    if not content_type:
        return False
    return content_type == JSON_CONTENT_TYPE or content_type.startswith(
        JSON_CONTENT_TYPE + ";"
    )


def remap_model(
    body: bytes, content_type: str | None, model_map: Mapping[str, str]
) -> tuple[bytes, bool]:
    """
    Replace the body's top-level "model" value using model_map.

    Returns:
        (new_body, changed). When changed is False new_body is the original
        bytes object, untouched.
    """
    if not model_map or not is_json_content_type(content_type):
        return body, False

    try:
        data: JSONValue = json.loads(body)
    except (ValueError, UnicodeDecodeError, RecursionError):
        # Malformed or too deeply nested client input goes upstream as-is
        return body, False

    if not isinstance(data, dict):
        return body, False

    model = data.get("model")
    if not isinstance(model, str) or model not in model_map:
        return body, False

    data["model"] = model_map[model]
    try:
        new_body = json.dumps(
            data, ensure_ascii=False, separators=(",", ":"), allow_nan=False
        ).encode("utf-8")
    except (ValueError, RecursionError):
        # NaN/Infinity literals parsed leniently cannot be written back as JSON
        return body, False

    logger.info(f"Model remapped: {model} -> {model_map[model]}")
    return new_body, True


def parse_model_mappings(values: Iterable[str]) -> dict[str, str]:
    """
    Parse FROM=TO arguments into a mapping table.

    Splits on the first "=" only, so targets may themselves contain "=".
    Later entries win over earlier ones for the same source name.

    Raises:
        ValueError: If an entry contains no "=".
    """
    mapping: dict[str, str] = {}
    for value in values:
        source, sep, target = value.partition("=")
        if not sep:
            raise ValueError(f"invalid model mapping: {value}")
        mapping[source] = target
    return mapping
