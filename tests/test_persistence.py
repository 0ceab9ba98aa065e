"""Snapshot sinks."""

import json

from deepsearch import persistence
from deepsearch.persistence import FileSessionSink, MemorySessionSink, SupabaseSessionSink

SNAPSHOT = {
    "step": 1,
    "total_step": 3,
    "question": "q",
    "prompt": "System prompt text",
    "schema": {"title": "AgentAction"},
    "context": [{"total_step": 3, "action": "search"}],
    "queries": ["paris"],
    "questions": ["q"],
    "knowledge": [{"question": "q", "answer": "a", "type": "qa"}],
    "urls": [{"url": "https://a.com"}],
    "messages": [{"role": "user", "content": "q"}],
}


class FakeTable:
    def __init__(self, rows, fail=False):
        self.rows = rows
        self.fail = fail

    def insert(self, row):
        if self.fail:
            raise RuntimeError("insert refused")
        self.rows.append(row)
        return self

    def execute(self):
        return self


class FakeClient:
    def __init__(self, fail=False):
        self.rows = []
        self.fail = fail
        self.tables = []

    def table(self, name):
        self.tables.append(name)
        return FakeTable(self.rows, self.fail)


def test_memory_sink_keeps_every_snapshot():
    sink = MemorySessionSink()
    sink.record(SNAPSHOT)
    sink.record({**SNAPSHOT, "total_step": 4})
    assert [s["total_step"] for s in sink.snapshots] == [3, 4]


def test_file_sink_writes_prompt_and_state(tmp_path):
    FileSessionSink(str(tmp_path / "snapshots")).record(SNAPSHOT)
    out = tmp_path / "snapshots"

    prompt = (out / "prompt-3.txt").read_text(encoding="utf-8")
    assert prompt.startswith("Prompt:\nSystem prompt text")
    assert '"title": "AgentAction"' in prompt
    assert json.loads((out / "queries.json").read_text(encoding="utf-8")) == ["paris"]
    assert json.loads((out / "knowledge.json").read_text(encoding="utf-8"))[0]["answer"] == "a"
    for name in FileSessionSink.FILES.values():
        assert (out / name).exists()


def test_file_sink_swallows_write_errors(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    FileSessionSink(str(blocker)).record(SNAPSHOT)


def test_supabase_sink_is_noop_without_credentials():
    sink = SupabaseSessionSink("run-1")
    sink.record(SNAPSHOT)
    assert sink._client is None


def test_supabase_sink_inserts_rows(monkeypatch):
    client = FakeClient()
    monkeypatch.setenv("SUPABASE_URL", "https://db.example.com")
    monkeypatch.setenv("SUPABASE_KEY", "key")
    monkeypatch.setattr(persistence, "create_client", lambda url, key: client)

    SupabaseSessionSink("run-1").record(SNAPSHOT)
    assert client.tables == [persistence.SNAPSHOT_TABLE]
    row = client.rows[0]
    assert row["run_id"] == "run-1"
    assert row["step"] == 3
    assert row["state"]["queries"] == ["paris"]


def test_supabase_sink_swallows_insert_errors(monkeypatch):
    monkeypatch.setenv("SUPABASE_URL", "https://db.example.com")
    monkeypatch.setenv("SUPABASE_KEY", "key")
    monkeypatch.setattr(persistence, "create_client", lambda url, key: FakeClient(fail=True))
    SupabaseSessionSink("run-1").record(SNAPSHOT)
