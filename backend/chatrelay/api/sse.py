import json
from typing import Any, Dict

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

DONE_LINE = "data: [DONE]\n\n"
KEEP_ALIVE_LINE = ": keep-alive\n\n"


def sse_format(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"
