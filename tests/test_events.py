import json
import threading

import pytest

from portbuild.modules.events import BUILT, FAILED, QUEUED, RUNNING, Compactor, EventLog


class TestEventLog:
    def test_append_and_read(self, event_log):
        event_log.append("devel/libfoo", QUEUED)
        event_log.append("devel/libfoo", RUNNING, attempt=1)
        event_log.append("devel/libfoo", BUILT, attempt=1)
        events = event_log.read()
        assert [e["status"] for e in events] == ["queued", "running", "built"]
        assert events[1]["attempt"] == 1
        assert "attempt" not in events[0]
        assert all(e["timestamp"].endswith("Z") for e in events)
        assert event_log.session == events

    def test_unknown_status_rejected(self, event_log):
        with pytest.raises(ValueError):
            event_log.append("A", "exploded")

    def test_missing_file_reads_empty(self, tmp_path):
        assert EventLog(str(tmp_path / "nope" / "events.jsonl")).read() == []

    def test_corrupt_and_malformed_lines_skipped(self, event_log):
        event_log.append("A", QUEUED)
        with open(event_log.path, "a", encoding="utf-8") as fh:
            fh.write("{not json\n")
            fh.write(json.dumps({"node": "B", "status": "weird", "timestamp": "t"}) + "\n")
            fh.write("\n")
        event_log.append("A", BUILT)
        assert [e["status"] for e in event_log.read()] == ["queued", "built"]

    def test_events_for(self, event_log):
        event_log.append("A", QUEUED)
        event_log.append("B", QUEUED)
        event_log.append("A", FAILED, attempt=3, detail="boom")
        a = event_log.events_for("A")
        assert [e["status"] for e in a] == ["queued", "failed"]
        assert a[-1]["detail"] == "boom"

    def test_concurrent_appends_keep_lines_whole(self, event_log):
        def writer(n):
            for i in range(50):
                event_log.append(f"port{n}", RUNNING, attempt=i)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        events = event_log.read()
        assert len(events) == 400
        for n in range(8):
            assert [e["attempt"] for e in events if e["node"] == f"port{n}"] == list(range(50))


class TestCompactor:
    def test_projection(self, event_log, tmp_path):
        event_log.append("A", QUEUED)
        event_log.append("A", RUNNING, attempt=1)
        event_log.append("B", QUEUED)
        event_log.append("A", BUILT, attempt=1)
        status = Compactor(event_log, str(tmp_path / "status.json")).compact()
        assert status["events"] == 4
        assert status["nodes"]["A"]["last"]["status"] == "built"
        assert [h["status"] for h in status["nodes"]["A"]["history"]] == ["queued", "running", "built"]
        assert status["nodes"]["B"]["last"]["status"] == "queued"
        assert "node" not in status["nodes"]["A"]["history"][0]

    def test_compaction_is_idempotent(self, event_log, tmp_path):
        event_log.append("A", QUEUED)
        event_log.append("A", BUILT)
        path = tmp_path / "state" / "status.json"
        compactor = Compactor(event_log, str(path))
        compactor.compact()
        first = path.read_bytes()
        compactor.compact()
        assert path.read_bytes() == first
        assert compactor.load() == json.loads(first)
        assert not [p for p in path.parent.iterdir() if p.name.endswith(".tmp")]

    def test_load_without_status_file(self, event_log, tmp_path):
        assert Compactor(event_log, str(tmp_path / "status.json")).load() == {"events": 0, "nodes": {}}

    def test_log_is_left_untouched(self, event_log, tmp_path):
        event_log.append("A", QUEUED)
        before = open(event_log.path, "rb").read()
        Compactor(event_log, str(tmp_path / "status.json")).compact()
        assert open(event_log.path, "rb").read() == before
