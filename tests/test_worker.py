import io
import json
import zipfile

import httpx
import pytest

from celery.exceptions import Retry

from mapxion.work_queue import RetryPolicy
from mapxion_worker.client import ApiClient, ApiError
from mapxion_worker.pipeline import JobRunner


class FakeApi:
    def __init__(self, photos, status="queued"):
        self.photos = photos
        self.status = status
        self.patches = []
        self.uploads = {}

    def get_job(self, job_id):
        return {"id": job_id, "status": self.status}

    def patch_job(self, job_id, **fields):
        self.patches.append(fields)
        return fields

    def download_inputs(self, job_id, dest):
        with zipfile.ZipFile(dest, "w") as zf:
            for name, data in self.photos.items():
                zf.writestr(name, data)
        return dest

    def upload_output(self, job_id, path):
        self.uploads[path.name] = path.read_bytes()
        return {"filename": path.name}


def test_runner_reports_monotonic_progress(make_image):
    api = FakeApi({"a.png": make_image(), "b.jpg": make_image("JPEG", size=(40, 30))})

    assert JobRunner(api).run("job1") is True

    progress = [p["progress"] for p in api.patches]
    assert progress == [5, 20, 45, 70, 90, 100]
    assert api.patches[0]["status"] == "running"
    assert api.patches[-1]["status"] == "done"
    assert all("message" in p for p in api.patches)

    assert set(api.uploads) == {"cameras.json", "manifest.json", "preview.jpg", "mapxion-job1.zip"}
    manifest = json.loads(api.uploads["manifest.json"])
    assert [p["name"] for p in manifest["photos"]] == ["a.png", "b.jpg"]
    assert manifest["photos"][1]["width"] == 40

    with zipfile.ZipFile(io.BytesIO(api.uploads["mapxion-job1.zip"])) as zf:
        assert zf.namelist() == ["cameras.json", "manifest.json", "preview.jpg"]


def test_runner_failure_records_error_and_reraises():
    api = FakeApi({"broken.jpg": b"not an image"})

    with pytest.raises(Exception):
        JobRunner(api).run("job1")

    assert "error.txt" in api.uploads
    assert b"Traceback" in api.uploads["error.txt"]
    last = api.patches[-1]
    assert last["status"] == "failed"
    assert last["error"]
    assert "done" not in [p.get("status") for p in api.patches]


def test_runner_skips_finished_job():
    api = FakeApi({}, status="done")
    assert JobRunner(api).run("job1") is False
    assert api.patches == []


def test_runner_pauses_between_stages(make_image):
    api = FakeApi({"a.png": make_image()})
    pauses = []
    JobRunner(api, stage_delay=1.5, sleep=pauses.append).run("job1")
    assert pauses == [1.5] * 5


def test_api_client_sends_only_given_fields():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "job1"})

    with ApiClient("http://api", transport=httpx.MockTransport(handler)) as client:
        client.patch_job("job1", progress=20, message="Importing photos", error=None)

    assert seen == {"method": "PATCH", "path": "/jobs/job1", "body": {"progress": 20, "message": "Importing photos"}}


def test_api_client_raises_on_error_status():
    def handler(request):
        return httpx.Response(400, json={"error": "invalid_progress", "message": "bad"})

    with ApiClient("http://api", transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ApiError) as err:
            client.patch_job("job1", progress=150)
    assert err.value.status_code == 400
    assert "invalid_progress" in err.value.body


def test_worker_against_api(client, make_image):
    job = client.post("/jobs").json()
    client.post(f"/jobs/{job['id']}/upload", files=[("files", ("p1.png", make_image(), "image/png"))])
    assert client.post(f"/jobs/{job['id']}/submit").status_code == 200

    JobRunner(ApiClient("http://testserver", http=client)).run(job["id"])

    finished = client.get(f"/jobs/{job['id']}").json()
    assert finished["status"] == "done"
    assert finished["progress"] == 100
    assert finished["message"] == "Completed"
    assert finished["started_at"] is not None
    assert finished["finished_at"] is not None

    outputs = client.get(f"/jobs/{job['id']}/outputs").json()["files"]
    assert f"mapxion-{job['id']}.zip" in outputs

    res = client.get(f"/jobs/{job['id']}/download")
    with zipfile.ZipFile(io.BytesIO(res.content)) as zf:
        assert "preview.jpg" in zf.namelist()


def test_task_runs_job(monkeypatch):
    from mapxion_worker import tasks

    ran = []

    class StubRunner:
        def __init__(self, client, **kwargs):
            pass

        def run(self, job_id):
            ran.append(job_id)
            return True

    monkeypatch.setattr(tasks, "JobRunner", StubRunner)

    result = tasks.process_job.run(payload={"jobId": "job1"}, retry_policy={"max_attempts": 3})
    assert result == {"ok": True, "job_id": "job1"}
    assert ran == ["job1"]


def _fail_then_fix(client, make_image):
    job = client.post("/jobs").json()
    client.post(f"/jobs/{job['id']}/upload", files=[("files", ("p.png", b"not an image", "image/png"))])
    assert client.post(f"/jobs/{job['id']}/submit").status_code == 200

    with pytest.raises(Exception):
        JobRunner(ApiClient("http://testserver", http=client)).run(job["id"])

    failed = client.get(f"/jobs/{job['id']}").json()
    assert failed["status"] == "failed"
    assert "error.txt" in client.get(f"/jobs/{job['id']}/outputs").json()["files"]

    client.post(f"/jobs/{job['id']}/upload", files=[("files", ("p.png", make_image(), "image/png"))])
    return job["id"]


def _assert_clean_success(client, job_id):
    finished = client.get(f"/jobs/{job_id}").json()
    assert finished["status"] == "done"
    assert finished["error"] is None

    assert "error.txt" not in client.get(f"/jobs/{job_id}/outputs").json()["files"]
    res = client.get(f"/jobs/{job_id}/download")
    with zipfile.ZipFile(io.BytesIO(res.content)) as zf:
        assert "error.txt" not in zf.namelist()


def test_resubmitted_job_drops_failure_artifacts(client, make_image):
    job_id = _fail_then_fix(client, make_image)
    assert client.post(f"/jobs/{job_id}/submit").status_code == 200

    JobRunner(ApiClient("http://testserver", http=client)).run(job_id)
    _assert_clean_success(client, job_id)


def test_redelivered_job_drops_failure_artifacts(client, make_image):
    job_id = _fail_then_fix(client, make_image)

    JobRunner(ApiClient("http://testserver", http=client)).run(job_id)
    _assert_clean_success(client, job_id)


class FailingRunner:
    def __init__(self, client, **kwargs):
        pass

    def run(self, job_id):
        raise RuntimeError("boom")


@pytest.fixture
def retries(monkeypatch):
    from mapxion_worker import tasks

    calls = []

    def fake_retry(exc=None, countdown=None, max_retries=None, **kwargs):
        calls.append({"countdown": countdown, "max_retries": max_retries})
        return Retry(exc=exc, when=countdown)

    monkeypatch.setattr(tasks, "JobRunner", FailingRunner)
    monkeypatch.setattr(tasks.process_job, "retry", fake_retry)
    return calls


def _run_task(retries_so_far):
    from mapxion_worker import tasks

    tasks.process_job.push_request(retries=retries_so_far)
    try:
        return tasks.process_job.run(payload={"jobId": "job1"}, retry_policy=RetryPolicy().as_dict())
    finally:
        tasks.process_job.pop_request()


@pytest.mark.parametrize("retries_so_far, countdown", [(0, 5.0), (1, 10.0)])
def test_task_retries_with_exponential_backoff(retries, retries_so_far, countdown):
    with pytest.raises(Retry):
        _run_task(retries_so_far)

    assert retries == [{"countdown": countdown, "max_retries": 2}]


def test_task_gives_up_after_last_attempt(retries):
    with pytest.raises(RuntimeError, match="boom"):
        _run_task(2)

    assert retries == []
