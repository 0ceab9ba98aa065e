"""Per-step debug snapshots of a research session.

A snapshot is a plain dict::

    {"step", "total_step", "question", "prompt", "schema", "context",
     "queries", "questions", "knowledge", "urls", "messages"}

The loop hands one to its sink after every step. Sinks must not raise;
any failure is logged and the session carries on.
"""

import json
import logging
import os
import time
from typing import Any, Dict, List, Optional, Protocol

from supabase import create_client

from .config import get_config

logger = logging.getLogger(__name__)

SNAPSHOT_TABLE = "deepsearch_snapshots"


class SessionSink(Protocol):
    def record(self, snapshot: Dict[str, Any]) -> None:
        ...


class MemorySessionSink:
    def __init__(self):
        self.snapshots: List[Dict[str, Any]] = []

    def record(self, snapshot: Dict[str, Any]) -> None:
        self.snapshots.append(snapshot)


class FileSessionSink:
    """Writes the latest state to a directory, one prompt file per step."""

    FILES = {
        "context": "context.json",
        "queries": "queries.json",
        "questions": "questions.json",
        "knowledge": "knowledge.json",
        "urls": "urls.json",
        "messages": "messages.json",
    }

    def __init__(self, directory: Optional[str] = None):
        self.directory = directory or get_config().snapshot_dir

    def record(self, snapshot: Dict[str, Any]) -> None:
        try:
            os.makedirs(self.directory, exist_ok=True)
            prompt_path = os.path.join(self.directory, f"prompt-{snapshot.get('total_step', 0)}.txt")
            with open(prompt_path, "w", encoding="utf-8") as f:
                f.write(f"Prompt:\n{snapshot.get('prompt', '')}\n\nJSONSchema:\n")
                f.write(json.dumps(snapshot.get("schema"), indent=2, ensure_ascii=False, default=str))
            for key, filename in self.FILES.items():
                with open(os.path.join(self.directory, filename), "w", encoding="utf-8") as f:
                    json.dump(snapshot.get(key), f, indent=2, ensure_ascii=False, default=str)
        except Exception as exc:
            logger.warning("Failed to write snapshot to %s: %s", self.directory, exc)


class SupabaseSessionSink:
    """Inserts each snapshot as a row; a no-op when Supabase is not configured."""

    def __init__(self, run_id: str, table: str = SNAPSHOT_TABLE):
        self.run_id = run_id
        self.table = table
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_KEY")
        self._client = create_client(url, key) if url and key else None

    def record(self, snapshot: Dict[str, Any]) -> None:
        if self._client is None:
            return
        try:
            self._client.table(self.table).insert({
                "run_id": self.run_id,
                "step": snapshot.get("total_step"),
                "state": json.loads(json.dumps(snapshot, default=str)),
                "created_at": int(time.time()),
            }).execute()
        except Exception as exc:
            logger.warning("Supabase snapshot insert failed for run %s: %s", self.run_id, exc)
