from datetime import timedelta

import pytest

from engine.errors import InvalidState, JobNotFound
from engine.models import utcnow


def _running(store, kind="SCAN", subtype="NETWORK"):
    job = store.create(kind, subtype, {"targets": ["10.0.0.1"]})
    store.mark_running(job["job_id"])
    return job["job_id"]


def test_create_starts_pending(store):
    job = store.create("SCAN", "FULL", {"targets": ["10.0.0.1"]}, created_by="alice")

    assert job["status"] == "PENDING"
    assert job["configuration"] == {"targets": ["10.0.0.1"]}
    assert job["created_by"] == "alice"
    assert job["started_at"] is None
    assert store.count_active() == 1


def test_get_missing_job(store):
    with pytest.raises(JobNotFound):
        store.get("missing")


def test_mark_running_only_from_pending(store):
    job_id = _running(store)
    assert store.get(job_id)["started_at"] is not None
    with pytest.raises(InvalidState):
        store.mark_running(job_id)


def test_finish_completed_stores_results(store):
    job_id = _running(store)
    job = store.finish(
        job_id, "COMPLETED",
        result_summary={"total_findings": 1}, findings=[{"title": "x"}],
        result_file="/tmp/x.json", targets_processed=1,
    )

    assert job["status"] == "COMPLETED"
    assert job["error"] is None
    assert job["duration"] >= 0
    assert store.get(job_id, include_findings=True)["findings"] == [{"title": "x"}]
    assert store.count_active() == 0


def test_terminal_states_are_absorbing(store):
    job_id = _running(store)
    store.finish(job_id, "FAILED", error="boom")

    with pytest.raises(InvalidState):
        store.finish(job_id, "COMPLETED")
    with pytest.raises(InvalidState):
        store.request_cancel(job_id)
    assert store.get(job_id)["error"] == "boom"


def test_finish_rejects_non_terminal_status(store):
    job_id = _running(store)
    with pytest.raises(ValueError):
        store.finish(job_id, "RUNNING")


def test_cancel_request_on_running_job(store):
    job_id = _running(store, kind="REPORT", subtype="RISKS")

    assert store.request_cancel(job_id) == "RUNNING"
    job = store.get(job_id)
    assert job["status"] == "RUNNING"
    assert job["cancel_requested"] is True

    # a late completion write still ends as cancelled
    job = store.finish(job_id, "COMPLETED", result_summary={"total_findings": 2}, findings=[{}, {}])
    assert job["status"] == "CANCELLED"
    assert job["error"] == "Report was cancelled"
    assert job["result_summary"] is None


def test_cancel_pending_job(store):
    job = store.create("SCAN", "NETWORK", {"targets": ["10.0.0.1"]})

    assert store.request_cancel(job["job_id"]) == "PENDING"
    job = store.get(job["job_id"])
    assert job["status"] == "CANCELLED"
    assert job["error"] == "Cancelled by user"
    assert job["duration"] == 0
    assert job["completed_at"] is not None


def test_list_filters_and_order(store):
    first = store.create("SCAN", "NETWORK", {"targets": ["a"]}, created_by="alice")
    second = store.create("REPORT", "RISKS", {"targets": ["a"]}, created_by="bob")
    third = store.create("SCAN", "FULL", {"targets": ["a"]}, created_by="alice")

    assert [j["job_id"] for j in store.list()][0] in (second["job_id"], third["job_id"])
    assert {j["job_id"] for j in store.list(kind="scan")} == {first["job_id"], third["job_id"]}
    assert [j["job_id"] for j in store.list(subtype="risks")] == [second["job_id"]]
    assert {j["job_id"] for j in store.list(created_by="alice")} == {first["job_id"], third["job_id"]}
    assert len(store.list(limit=1)) == 1
    assert len(store.list(limit=2, offset=2)) == 1
    assert store.list(start_date=utcnow() + timedelta(hours=1)) == []


def test_delete_only_terminal_jobs(store):
    job_id = _running(store)
    with pytest.raises(InvalidState):
        store.delete(job_id)

    store.finish(job_id, "COMPLETED")
    store.delete(job_id)
    with pytest.raises(JobNotFound):
        store.get(job_id)


def test_stats(store):
    done = _running(store)
    store.finish(done, "COMPLETED", result_summary={"total_findings": 3, "severity_counts": {"critical": 2, "low": 1}})
    failed = _running(store, kind="REPORT", subtype="ASSETS")
    store.finish(failed, "FAILED", error="boom")
    store.create("SCAN", "NETWORK", {"targets": ["b"]})

    stats = store.stats(since=utcnow() - timedelta(days=1))

    assert stats["total_jobs"] == 3
    assert stats["completed_jobs"] == 1
    assert stats["failed_jobs"] == 1
    assert stats["success_rate"] == 33
    assert stats["total_findings"] == 3
    assert stats["critical_findings"] == 2
    assert stats["kind_stats"] == {"scan": 2, "report": 1}
    assert stats["status_stats"] == {"completed": 1, "failed": 1, "pending": 1}


def test_fail_orphaned(store):
    pending = store.create("SCAN", "NETWORK", {"targets": ["a"]})
    running = _running(store)
    done = _running(store)
    store.finish(done, "COMPLETED")

    orphaned = store.fail_orphaned("restarted")

    assert set(orphaned) == {pending["job_id"], running}
    assert store.get(running)["error"] == "restarted"
    assert store.get(done)["status"] == "COMPLETED"


def test_latest_findings_uses_newest_completed_scan(store):
    old = _running(store)
    store.finish(old, "COMPLETED", findings=[{"target": "h1", "title": "old"}])
    new = _running(store)
    store.finish(new, "COMPLETED", findings=[{"target": "h1", "title": "new"}, {"target": "h2", "title": "other"}])

    assert [f["title"] for f in store.latest_findings("h1")] == ["new"]
    assert store.latest_findings("unknown") == []


def test_system_setting_default(store):
    assert store.get_system_setting("scanning.concurrentScans", 3) == 3
