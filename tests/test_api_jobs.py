import os
import signal
import sys
import time

import pytest

from remote_bridge import main

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX utilities")


def _wait_for_settled(client, job_id, limit=10.0):
    deadline = time.monotonic() + limit
    while time.monotonic() < deadline:
        body = client.get(f"/jobs/{job_id}").json()
        if body["status"] != "running":
            return body
        time.sleep(0.1)
    raise AssertionError(f"job {job_id} still running after {limit}s")


@posix_only
def test_job_runs_asynchronously(client):
    resp = client.post("/jobs/run", json={"tool": "sh", "command": "sleep 1; echo JOB_OK"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["status"] == "running"
    job_id = body["jobId"]

    first = client.get(f"/jobs/{job_id}").json()
    assert first["status"] == "running"
    assert first["completedAt"] is None
    assert first["exitCode"] is None

    time.sleep(1)
    job = _wait_for_settled(client, job_id)
    assert job["ok"] is True
    assert job["status"] == "completed"
    assert "JOB_OK" in job["stdout"]
    assert job["exitCode"] == 0
    assert job["completedAt"] >= job["createdAt"]
    assert job["tool"] == "sh"


@posix_only
def test_background_job_submission_does_not_wait(client):
    started = time.monotonic()
    resp = client.post(
        "/jobs/run",
        json={"tool": "sleep", "command": "120", "background": True},
    )
    assert time.monotonic() - started < 2
    job_id = resp.json()["jobId"]

    job = _wait_for_settled(client, job_id, limit=5)
    try:
        assert job["status"] == "completed"
        assert job["background"] is True
        assert job["pid"]
        assert job["stdout"] == ""
    finally:
        os.kill(job["pid"], signal.SIGTERM)


@posix_only
def test_job_with_nonzero_exit_completes(client):
    job_id = client.post("/jobs/run", json={"tool": "sh", "command": "exit 2"}).json()["jobId"]
    job = _wait_for_settled(client, job_id)
    assert job["status"] == "completed"
    assert job["exitCode"] == 2
    assert "error" not in job


@posix_only
def test_job_timeout_fails(client):
    job_id = client.post(
        "/jobs/run", json={"tool": "sh", "command": "echo started; sleep 5", "timeout": 300}
    ).json()["jobId"]
    job = _wait_for_settled(client, job_id)
    assert job["status"] == "failed"
    assert "timeout" in job["error"].lower()
    assert "started" in job["stdout"]
    assert job["completedAt"] is not None


def test_job_spawn_error_fails(client):
    job_id = client.post(
        "/jobs/run", json={"tool": "definitely-not-a-real-binary-4711", "command": "x"}
    ).json()["jobId"]
    job = _wait_for_settled(client, job_id)
    assert job["status"] == "failed"
    assert job["error"]


def test_unknown_job_is_not_found(client):
    resp = client.get("/jobs/job_0_0")
    assert resp.status_code == 404
    assert resp.json() == {"ok": False, "error": "not found"}


@posix_only
def test_list_jobs(client):
    first = client.post("/jobs/run", json={"tool": "echo", "command": "one"}).json()["jobId"]
    second = client.post("/jobs/run", json={"tool": "echo", "command": "two"}).json()["jobId"]

    body = client.get("/jobs").json()
    assert body["ok"] is True
    assert body["count"] == 2
    assert [job["id"] for job in body["jobs"]] == [first, second]
    for job in body["jobs"]:
        assert set(job) == {
            "id",
            "tool",
            "command",
            "cwd",
            "background",
            "status",
            "pid",
            "createdAt",
            "elapsed",
        }


def test_forbidden_tool_creates_no_job(client, monkeypatch):
    monkeypatch.setattr(main, "ALLOWED_TOOLS", ["echo"])
    resp = client.post("/jobs/run", json={"tool": "rm", "command": "-rf /"})
    assert resp.status_code == 403
    assert client.get("/jobs").json()["count"] == 0


def test_job_endpoints_require_auth(client):
    bad = {"Authorization": "Bearer wrong"}
    assert client.post("/jobs/run", json={"tool": "echo", "command": "x"}, headers=bad).status_code == 401
    assert client.get("/jobs", headers=bad).status_code == 401
    assert client.get("/jobs/anything", headers=bad).status_code == 401
    assert client.get("/jobs").json()["count"] == 0
