"""
Conversation turn and ingest metrics.

Tracks: answer latency, success/error counts, prompt/completion token
estimates, chunks ingested and process memory. Appends one JSON line per
event to <log_dir>/metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path

import psutil

from .config import CACHE_DIR
from .observability import get_logger

logger = get_logger(__name__)


class TurnMetrics:
    """Thread-safe turn tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = CACHE_DIR, enabled: bool = True):
        self._lock = threading.Lock()
        self._start_time: float = time.time()
        self._enabled = bool(enabled)

        # Turn counters.
        self._turns: int = 0
        self._errors: int = 0
        self._total_latency_ms: float = 0.0
        self._min_latency_ms: float = float("inf")
        self._max_latency_ms: float = 0.0
        self._prompt_tokens: int = 0
        self._completion_tokens: int = 0

        # Ingest counters.
        self._ingests: int = 0
        self._ingest_failures: int = 0
        self._chunks_indexed: int = 0

        self._log_path = Path(log_dir) / "metrics.jsonl"
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._process = psutil.Process(os.getpid())

    @property
    def log_path(self) -> Path:
        return self._log_path

    def record_turn(
        self,
        latency_ms: float,
        success: bool,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
    ) -> None:
        with self._lock:
            self._turns += 1
            self._total_latency_ms += latency_ms
            self._min_latency_ms = min(self._min_latency_ms, latency_ms)
            self._max_latency_ms = max(self._max_latency_ms, latency_ms)
            if not success:
                self._errors += 1
            self._prompt_tokens += int(prompt_tokens)
            self._completion_tokens += int(completion_tokens)
        self._append({
            "kind": "turn",
            "latency_ms": round(latency_ms, 2),
            "success": bool(success),
            "prompt_tokens": int(prompt_tokens),
            "completion_tokens": int(completion_tokens),
        })

    def record_ingest(self, book_id: str, chunks_added: int, success: bool) -> None:
        with self._lock:
            self._ingests += 1
            self._chunks_indexed += int(chunks_added)
            if not success:
                self._ingest_failures += 1
        self._append({
            "kind": "ingest",
            "book_id": book_id,
            "chunks_added": int(chunks_added),
            "success": bool(success),
        })

    def _append(self, entry: dict) -> None:
        if not self._enabled:
            return
        entry = {"timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"), **entry}
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError as exc:
            logger.warning("metrics_write_failed", path=str(self._log_path), error=str(exc))

    def get_summary(self) -> dict:
        """Returns a metrics snapshot."""
        with self._lock:
            turns = self._turns
            avg_lat = (self._total_latency_ms / turns) if turns else 0.0
            min_lat = self._min_latency_ms if turns else 0.0
            max_lat = self._max_latency_ms if turns else 0.0
            errors = self._errors
            prompt_tokens = self._prompt_tokens
            completion_tokens = self._completion_tokens
            ingests = self._ingests
            ingest_failures = self._ingest_failures
            chunks = self._chunks_indexed

        mem_info = self._process.memory_info()
        return {
            "latency": {
                "avg_ms": round(avg_lat, 2),
                "min_ms": round(min_lat, 2),
                "max_ms": round(max_lat, 2),
            },
            "turns": {
                "total": turns,
                "errors": errors,
                "error_rate_percent": round((errors / turns * 100) if turns else 0.0, 2),
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
            },
            "ingest": {
                "runs": ingests,
                "failures": ingest_failures,
                "chunks_indexed": chunks,
            },
            "memory": {
                "rss_mb": round(mem_info.rss / (1024 * 1024), 1),
                "vms_mb": round(mem_info.vms / (1024 * 1024), 1),
            },
            "uptime_seconds": round(time.time() - self._start_time, 1),
        }
