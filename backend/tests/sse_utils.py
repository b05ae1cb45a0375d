from __future__ import annotations

import json
from typing import Any, Dict, List


def parse_sse_events(payload_text: str) -> List[Dict[str, Any]]:
    """Split a text/event-stream body into events with raw `data` (and `event` when named)."""
    events: List[Dict[str, Any]] = []
    current: Dict[str, Any] = {}
    for raw_line in payload_text.splitlines():
        line = raw_line.strip("\r")
        if line.startswith("event:"):
            current["event"] = line[6:].strip()
        elif line.startswith("data:"):
            chunk = line[5:].lstrip(" ")
            current["data"] = f"{current['data']}\n{chunk}" if "data" in current else chunk
        elif line == "" and current:
            events.append(current)
            current = {}
    if current:
        events.append(current)
    return events


def sse_payloads(payload_text: str) -> List[Dict[str, Any]]:
    return [json.loads(event["data"]) for event in parse_sse_events(payload_text) if "data" in event]
