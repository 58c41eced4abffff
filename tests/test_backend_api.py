from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import requests

from fakes import FakeResponse, FakeSession
from jobclient import (
    BackendAPI,
    MediaFetchFailed,
    ReportFetchFailed,
    StatusCheckFailed,
    SubmissionFailed,
    UnknownCase,
)

BASE = "http://api.test"


def _api(config, routes) -> tuple[BackendAPI, FakeSession]:
    session = FakeSession(routes)
    return BackendAPI(config, session=session), session


def test_submit_posts_multipart_and_returns_job_id(config, video: Path) -> None:
    api, session = _api(config, {("POST", f"{BASE}/upload"): FakeResponse(200, {"job_id": "job-1"})})

    job_id = asyncio.run(api.submit(video, "anpr"))

    assert job_id == "job-1"
    assert len(session.requests) == 1
    sent = session.requests[0]
    assert sent["file"] == ("junction.mp4", video.read_bytes(), "video/mp4")
    assert sent["data"] == {"case_type": "anpr"}
    assert sent["timeout"] == config.upload_timeout_s


def test_submit_is_not_idempotent(config, video: Path) -> None:
    api, session = _api(config, {("POST", f"{BASE}/upload"): FakeResponse(200, {"job_id": "job-1"})})

    async def twice():
        await api.submit(video, "helmet")
        await api.submit(video, "helmet")

    asyncio.run(twice())
    assert len(session.requests) == 2


@pytest.mark.parametrize(
    "answer",
    [
        requests.ConnectionError("connection refused"),
        FakeResponse(500, {"detail": "boom"}),
        FakeResponse(200, {"id": "job-1"}),
        FakeResponse(200, None, text="<html>"),
    ],
)
def test_submit_failures_become_submission_failed(config, video: Path, answer) -> None:
    api, session = _api(config, {("POST", f"{BASE}/upload"): answer})

    with pytest.raises(SubmissionFailed):
        asyncio.run(api.submit(video, "anpr"))
    assert len(session.requests) == 1


def test_submit_validates_before_sending(config, video: Path, tmp_path: Path) -> None:
    api, session = _api(config, {})

    with pytest.raises(UnknownCase):
        asyncio.run(api.submit(video, "speeding"))
    with pytest.raises(FileNotFoundError):
        asyncio.run(api.submit(tmp_path / "missing.mp4", "anpr"))
    assert session.requests == []


def test_fetch_status(config) -> None:
    api, session = _api(config, {
        ("GET", f"{BASE}/status/job-1"): FakeResponse(200, {"status": "completed", "video_url": "/out/job-1.mp4"}),
    })

    status = asyncio.run(api.fetch_status("job-1"))

    assert status.status == "completed"
    assert status.is_terminal
    assert status.video_url == "/out/job-1.mp4"
    assert session.requests[0]["timeout"] == config.request_timeout_s


@pytest.mark.parametrize(
    "answer",
    [
        requests.Timeout("read timed out"),
        FakeResponse(404, {"detail": "Job not found"}),
        FakeResponse(200, {"state": "processing"}),
        FakeResponse(200, None, text=""),
    ],
)
def test_fetch_status_failures(config, answer) -> None:
    api, _ = _api(config, {("GET", f"{BASE}/status/job-1"): answer})

    with pytest.raises(StatusCheckFailed):
        asyncio.run(api.fetch_status("job-1"))


def test_fetch_report_keeps_backend_order(config) -> None:
    rows = [
        {"Frame": 90, "VehicleID": 7, "Type": "car", "Plate": "KA05MN4321",
         "plate_image": "/media/a.jpg", "vehicle_image": "/media/a_full.jpg"},
        {"Frame": 12, "VehicleID": "3", "Type": "motorcycle", "Plate": None,
         "CropImgUrl": "https://s3/b.jpg?X-Amz-Signature=1", "FullImgUrl": None},
    ]
    api, _ = _api(config, {("GET", f"{BASE}/report/job-1"): FakeResponse(200, rows)})

    report = asyncio.run(api.fetch_report("job-1"))

    assert isinstance(report, tuple)
    assert [r.frame for r in report] == [90, 12]
    assert report[0].vehicle_id == "7"
    assert report[1].crop_image_ref == "https://s3/b.jpg?X-Amz-Signature=1"
    assert report[1].full_image_ref is None


def test_fetch_report_accepts_numeric_plate_and_type(config) -> None:
    rows = [
        {"Frame": 10, "VehicleID": 1, "Type": "car", "Plate": "KA01AB1234"},
        {"Frame": 17, "VehicleID": 2, "Type": 3, "Plate": 4521},
    ]
    api, _ = _api(config, {("GET", f"{BASE}/report/job-1"): FakeResponse(200, rows)})

    report = asyncio.run(api.fetch_report("job-1"))

    assert [r.plate_or_result for r in report] == ["KA01AB1234", "4521"]
    assert report[1].type == "3"
    assert report[1].vehicle_id == "2"


@pytest.mark.parametrize(
    "answer",
    [
        requests.ConnectionError("reset"),
        FakeResponse(503, {"detail": "busy"}),
        FakeResponse(200, {"rows": []}),
        FakeResponse(200, [{"Frame": "not-a-frame", "VehicleID": 1, "Type": "car"}]),
    ],
)
def test_fetch_report_failures(config, answer) -> None:
    api, _ = _api(config, {("GET", f"{BASE}/report/job-1"): answer})

    with pytest.raises(ReportFetchFailed):
        asyncio.run(api.fetch_report("job-1"))


def test_download_streams_to_disk(config, tmp_path: Path) -> None:
    body = b"\x00" * (3 * 1024 * 1024 + 17)
    url = f"{BASE}/out/job-1.mp4"
    api, session = _api(config, {("GET", url): FakeResponse(200, {}, content=body)})

    out = asyncio.run(api.download(url, tmp_path / "nested" / "out.mp4"))

    assert out.read_bytes() == body
    assert session.requests[0]["stream"] is True


def test_download_failure_leaves_no_partial_file(config, tmp_path: Path) -> None:
    url = "https://bucket.example/crop.jpg?sig=expired"
    api, _ = _api(config, {("GET", url): FakeResponse(403, {"detail": "expired"})})
    dest = tmp_path / "crop.jpg"

    with pytest.raises(MediaFetchFailed):
        asyncio.run(api.download(url, dest))
    assert not dest.exists()


def test_close_closes_session(config) -> None:
    api, session = _api(config, {})
    api.close()
    assert session.closed
