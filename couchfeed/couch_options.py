"""Query string and request path construction for CouchDB requests.

Options are encoded in a canonical order (sorted by key) so that the same
mapping always produces the same URL.
"""

from __future__ import annotations

import json
import math
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import quote, quote_plus


def _encode_value(value: Any) -> str:
    if value is None:
        raise ValueError("value is None")
    # bool before int: True is an int too
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return quote_plus(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"non-finite number {value!r}")
        # Positional notation, shortest round-trip digits, no exponent.
        text = format(Decimal(repr(value)), "f")
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        return text
    raise ValueError(f"unsupported type: {type(value).__name__}")


def encode_options(
    options: Optional[Mapping[str, Any]], json_keys: Iterable[str] = ()
) -> str:
    """Encode options as a query string ("?a=1&b=x"), or "" when there are none.

    Values of keys listed in json_keys are JSON-encoded (so strings keep their
    quotes); all other values must be plain scalars.
    """
    if not options:
        return ""
    json_keys = set(json_keys)
    parts = []
    for key in sorted(options):
        value = options[key]
        try:
            if key in json_keys:
                encoded = quote_plus(json.dumps(value, separators=(",", ":")))
            else:
                encoded = _encode_value(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid option {key!r}: {e}") from e
        parts.append(f"{quote_plus(key)}={encoded}")
    return "?" + "&".join(parts)


def path(*segments: str) -> str:
    """Build a request path, escaping each segment ("a/b" stays one segment)."""
    return "".join("/" + quote(segment, safe="") for segment in segments)


def optpath(
    options: Optional[Mapping[str, Any]],
    json_keys: Optional[Iterable[str]],
    *segments: str,
) -> str:
    return path(*segments) + encode_options(options, json_keys or ())
