"""Server-Sent Events (SSE) helpers for the watch stream."""
import json
import time
from typing import Any, Dict, Optional


def format_sse(data: Dict[str, Any], event: Optional[str] = None) -> str:
    """Format data as a Server-Sent Event.

    Args:
        data: JSON-serializable payload
        event: Optional event name, sent as an "event:" line

    Returns:
        "event: <name>\\ndata: <json>\\n\\n", without the event line if no name
    """
    lines = f"event: {event}\n" if event else ""
    return f"{lines}data: {json.dumps(data)}\n\n"


def watch_event(kind: str, path: str) -> Dict[str, Any]:
    """Payload sent on the watch stream: "changed" or "closed"."""
    return {"type": kind, "path": path, "timestamp": int(time.time())}
