from __future__ import annotations

import asyncio
from pathlib import Path

import cv2
import numpy as np
import pandas as pd

from client import run_job
from fakes import FakeBackend, completed, errored, make_records, processing
from jobclient import ClientConfig, SubmissionFailed

BASE = "http://api.test"


def _fast_config() -> ClientConfig:
    return ClientConfig(base_url=BASE, poll_interval_s=0.01)


def test_run_job_saves_video_report_and_evidence(video: Path, tmp_path: Path, capsys) -> None:
    backend = FakeBackend(
        statuses=[processing(), completed("/out/job-1.mp4")],
        reports=[make_records(1), make_records(2)],
    )
    backend.downloads = {
        BASE + "/out/job-1.mp4": b"annotated",
        BASE + "/media/crop_0.jpg": cv2.imencode(".jpg", np.zeros((8, 8, 3), np.uint8))[1].tobytes(),
        BASE + "/media/crop_1.jpg": b"broken",
    }
    csv_path = tmp_path / "report.csv"

    code = asyncio.run(run_job(
        backend, video, "anpr",
        out_dir=tmp_path / "out",
        report_csv=csv_path,
        evidence_dir=tmp_path / "evidence",
        config=_fast_config(),
    ))

    assert code == 0
    assert (tmp_path / "out" / "junction_anpr_annotated.mp4").read_bytes() == b"annotated"
    rows = pd.read_csv(csv_path)
    assert len(rows) == 2
    assert rows["crop_image_url"].tolist() == [BASE + "/media/crop_0.jpg", BASE + "/media/crop_1.jpg"]
    out = capsys.readouterr().out
    assert "Job queued: job-1" in out
    assert "Automated Violation Report" in out
    assert "⚠ Load failed" in out


def test_run_job_reports_upload_failure(video: Path, tmp_path: Path, capsys, caplog) -> None:
    backend = FakeBackend(submit_error=SubmissionFailed("POST /upload failed: connection refused"))

    code = asyncio.run(run_job(backend, video, "anpr", out_dir=tmp_path, config=_fast_config()))

    assert code == 1
    assert "Upload failed" in capsys.readouterr().out
    assert any("Upload of" in r.getMessage() and r.levelname == "ERROR" for r in caplog.records)
    assert backend.count("status") == 0


def test_run_job_reports_backend_error(video: Path, tmp_path: Path, capsys, caplog) -> None:
    backend = FakeBackend(statuses=[processing(), errored()], reports=[make_records(1)])

    code = asyncio.run(run_job(backend, video, "helmet", out_dir=tmp_path, config=_fast_config()))

    assert code == 1
    assert "Analysis failed" in capsys.readouterr().out
    assert any("job-1 ended in error" in r.getMessage() for r in caplog.records)
    assert backend.count("download") == 0


def test_run_job_without_video_url_skips_download(video: Path, tmp_path: Path, capsys) -> None:
    backend = FakeBackend(statuses=[completed(video_url=None)], reports=[()])

    code = asyncio.run(run_job(backend, video, "stalled", out_dir=tmp_path, config=_fast_config()))

    assert code == 0
    assert backend.count("download") == 0
    assert "No instances detected in this segment." in capsys.readouterr().out
