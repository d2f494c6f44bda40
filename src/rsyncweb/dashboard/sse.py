"""Server-Sent Events wire formatting for job streams."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime

from rsyncweb.jobs.models import StreamEvent

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable proxy buffering
}


@dataclass
class SSEEvent:
    """An SSE event to be sent to clients."""

    event: str
    data: str
    id: str | None = None
    retry: int | None = None

    def format(self) -> str:
        """Format as SSE wire format."""
        lines = []
        if self.id:
            lines.append(f"id: {self.id}")
        if self.retry:
            lines.append(f"retry: {self.retry}")
        lines.append(f"event: {self.event}")
        for line in self.data.split("\n"):
            lines.append(f"data: {line}")
        lines.append("")  # Final blank line
        return "\n".join(lines) + "\n"

    @classmethod
    def from_stream_event(cls, event: StreamEvent, seq: int | None = None) -> SSEEvent:
        return cls(
            event=event.type,
            data=json.dumps(event.to_dict()),
            id=str(seq) if seq is not None else None,
        )

    @classmethod
    def heartbeat(cls) -> SSEEvent:
        return cls(
            event="heartbeat",
            data=json.dumps({"timestamp": datetime.now(UTC).isoformat()}),
        )


__all__ = ["SSE_HEADERS", "SSEEvent"]
