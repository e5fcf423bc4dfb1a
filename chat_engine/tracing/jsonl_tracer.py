"""JSONL file-based trace collector."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any

from chat_engine.tracing.interface import TraceCollector

logger = logging.getLogger(__name__)


class JSONLTraceCollector(TraceCollector):
    """Appends one line per trace record to ``{trace_dir}/{trace_id}.jsonl``.

    Records are buffered per turn; ``flush`` is called by the orchestrator
    when the turn ends (done, failure or cancellation).
    """

    def __init__(self, trace_dir: str = "./traces") -> None:
        self._dir = Path(trace_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._buffers: dict[str, list[dict[str, Any]]] = {}

    async def emit(self, trace_id: str, event_type: str, data: dict[str, Any]) -> None:
        self._buffers.setdefault(trace_id, []).append({
            "ts": time.time(),
            "trace_id": trace_id,
            "event": event_type,
            **data,
        })

    async def flush(self, trace_id: str) -> None:
        records = self._buffers.pop(trace_id, [])
        if not records:
            return
        path = self._dir / f"{trace_id}.jsonl"
        try:
            with open(path, "a") as f:
                for record in records:
                    f.write(json.dumps(record, default=str) + "\n")
        except OSError as exc:
            logger.warning("Could not write trace %s: %s", path, exc)
