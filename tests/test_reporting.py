from __future__ import annotations

import hashlib
import io
import json
import urllib.error
import urllib.request

import pytest

from batchci.model import Artifact, Outcome, RunReport, StageState, Verdict
from batchci.reporting import ReportClient, ReportClientError, report_to_dict
from batchci.reporting.serialize import artifact_to_dict


def sample_report() -> RunReport:
    lock = Artifact("Docs", "Cargo.lock", b"# lock\n")
    return RunReport(
        run_id="abc123",
        verdict=Verdict.FAILED,
        outcomes=[
            Outcome(label="Build container", state=StageState.FAILED, worker="agent-1", exit_code=1,
                    command=".buildkite/build-container", reason="non-zero exit", duration=1.23456),
            Outcome(label="Docs", state=StageState.SUCCEEDED, worker="agent-2", exit_code=0, artifacts=[lock]),
        ],
        artifacts={lock.key: lock},
        started_at=100.0,
        finished_at=105.5,
    )


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def test_report_to_dict() -> None:
    data = report_to_dict(sample_report(), pipeline="batchci_workflow.py")

    assert data["run_id"] == "abc123"
    assert data["verdict"] == "failed"
    assert data["pipeline"] == "batchci_workflow.py"
    assert [s["label"] for s in data["stages"]] == ["Build container", "Docs"]
    assert data["stages"][0]["position"] == 0
    assert data["stages"][0]["duration"] == 1.235
    assert data["stages"][1]["artifacts"] == ["Docs/Cargo.lock"]
    assert data["artifacts"] == [{
        "key": "Docs/Cargo.lock",
        "stage": "Docs",
        "path": "Cargo.lock",
        "size": 7,
        "sha256": hashlib.sha256(b"# lock\n").hexdigest(),
    }]
    json.dumps(data)


def test_artifact_data_only_on_request() -> None:
    data = artifact_to_dict(Artifact("a", "x", b"hi"), include_data=True)
    assert data["data_b64"] == "aGk="


def test_submit_posts_the_report(monkeypatch) -> None:
    captured = {}

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["method"] = req.get_method()
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return FakeResponse(b'{"run_id": "abc123"}')

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)

    run_id = ReportClient("http://archive:8000/", timeout=3).submit(sample_report(), pipeline="p")

    assert run_id == "abc123"
    assert captured["url"] == "http://archive:8000/reports"
    assert captured["method"] == "POST"
    assert captured["body"]["verdict"] == "failed"
    assert captured["timeout"] == 3


def test_http_errors_are_wrapped(monkeypatch) -> None:
    def fake_urlopen(req, timeout):
        raise urllib.error.HTTPError(req.full_url, 409, "Conflict", {}, io.BytesIO(b"already archived"))

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    with pytest.raises(ReportClientError, match="409 Conflict. already archived"):
        ReportClient("http://archive").submit(sample_report())


def test_network_errors_are_wrapped(monkeypatch) -> None:
    def fake_urlopen(req, timeout):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    with pytest.raises(ReportClientError, match="Network error: connection refused"):
        ReportClient("http://archive").submit(sample_report())


def test_response_without_run_id(monkeypatch) -> None:
    monkeypatch.setattr(urllib.request, "urlopen", lambda req, timeout: FakeResponse(b"{}"))
    with pytest.raises(ReportClientError, match="run_id"):
        ReportClient("http://archive").submit(sample_report())
