from __future__ import annotations

import json
from collections.abc import Mapping

from cookie_lb.core.types import JsonValue

DONE_EVENT = "data: [DONE]\n\n"


def format_sse_data(payload: Mapping[str, JsonValue]) -> str:
    data = json.dumps(payload, ensure_ascii=True, separators=(",", ":"))
    return f"data: {data}\n\n"
