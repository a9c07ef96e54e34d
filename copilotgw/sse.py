"""Helpers for Server-Sent Events responses."""
from __future__ import annotations

import json
from typing import Any, Dict

EVENT_STREAM_HEADERS = {"Cache-Control": "no-cache"}


def encode_record(record: Dict[str, Any]) -> bytes:
    """Serialize one record as a self-delimited ``data:`` event."""
    payload = json.dumps(record, separators=(",", ":")).encode("utf-8")
    return b"data: " + payload + b"\n\n"


def decode_records(raw: bytes) -> list[Dict[str, Any]]:
    """Parse a buffered event stream back into records."""
    records = []
    for block in raw.decode("utf-8").split("\n\n"):
        block = block.strip()
        if not block.startswith("data: "):
            continue
        records.append(json.loads(block[len("data: "):]))
    return records


__all__ = ["EVENT_STREAM_HEADERS", "decode_records", "encode_record"]
