"""
Fast JSON utilities for high-frequency paths (feed messages, HTTP bodies).

Usage:
    from keeper.core.json_utils import dumps, loads

    body = dumps({"event": "price_update", "px": 100.0})
"""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return orjson.dumps(obj, option=orjson.OPT_NON_STR_KEYS).decode("utf-8")


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)
