from __future__ import annotations

from pathlib import Path

import pytest

from jobclient import ClientConfig

BASE_URL = "http://api.test"


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(base_url=BASE_URL, poll_interval_s=3.0)


@pytest.fixture
def video(tmp_path: Path) -> Path:
    path = tmp_path / "junction.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42fake-video")
    return path
