"""
Report presentation helpers: table, CSV export, evidence images.

Nothing in here can change job state: an evidence image that fails to
download or decode is replaced by a placeholder marker in the table and
logged, the same way a broken <img> is hidden in the web client.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Callable, Optional

import cv2
import numpy as np
import pandas as pd

from jobclient import ImageLoadFailed, JobPhase, MediaFetchFailed, Report

log = logging.getLogger("traffic-client")

Resolver = Callable[[Optional[str]], Optional[str]]

TABLE_COLUMNS = ["Frame", "Vehicle ID", "Class", "Detection Result", "Evidence", "Full Frame"]
CSV_COLUMNS = [
    "frame", "vehicle_id", "type", "plate_or_result", "crop_image_url", "full_image_url",
]

NOT_AVAILABLE = "N/A"
NO_EVIDENCE = "-"
LOAD_FAILED = "⚠ Load failed"

WAITING_MESSAGE = "Waiting for detections..."
EMPTY_MESSAGE = "No instances detected in this segment."


def _evidence_cell(index, record, resolve, evidence):
    url = resolve(record.crop_image_ref)
    if url is None:
        return NO_EVIDENCE
    if evidence is None:
        return url
    path = evidence.get(index)
    return str(path) if path is not None else LOAD_FAILED


def report_table(
    report: Report,
    resolve: Resolver,
    evidence: Optional[dict[int, Optional[Path]]] = None,
) -> pd.DataFrame:
    """One row per record, in backend order (frames are not sorted).

    ``evidence`` maps row index → local image path, or None when the image
    could not be loaded.  Without it the Evidence column shows the resolved
    crop URL.  Full Frame carries the resolved full-image URL the crop links to.
    """
    rows = [
        {
            "Frame": record.frame,
            "Vehicle ID": record.vehicle_id,
            "Class": record.type,
            "Detection Result": record.plate_or_result or NOT_AVAILABLE,
            "Evidence": _evidence_cell(i, record, resolve, evidence),
            "Full Frame": resolve(record.full_image_ref) or NO_EVIDENCE,
        }
        for i, record in enumerate(report)
    ]
    return pd.DataFrame(rows, columns=TABLE_COLUMNS)


def render_report(
    report: Report,
    phase: JobPhase,
    resolve: Resolver,
    evidence: Optional[dict[int, Optional[Path]]] = None,
) -> str:
    if not report:
        return WAITING_MESSAGE if phase is JobPhase.PROCESSING else EMPTY_MESSAGE
    return report_table(report, resolve, evidence).to_string(index=False)


def write_report_csv(report: Report, path, resolve: Resolver) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    frame = pd.DataFrame(
        [
            {
                "frame": r.frame,
                "vehicle_id": r.vehicle_id,
                "type": r.type,
                "plate_or_result": r.plate_or_result,
                "crop_image_url": resolve(r.crop_image_ref),
                "full_image_url": resolve(r.full_image_ref),
            }
            for r in report
        ],
        columns=CSV_COLUMNS,
    )
    frame.to_csv(path, index=False)
    return path


def load_evidence_image(path) -> np.ndarray:
    """Decode an evidence image; raises ImageLoadFailed if OpenCV can't."""
    image = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if image is None or image.size == 0:
        raise ImageLoadFailed(f"Cannot decode image {path}")
    return image


async def collect_evidence(api, report: Report, resolve: Resolver, dest_dir) -> dict[int, Optional[Path]]:
    """Download and verify each record's crop image.

    Returns row index → saved path, or None for rows whose image failed.
    Rows without a crop reference are left out.
    """
    dest_dir = Path(dest_dir)
    results: dict[int, Optional[Path]] = {}
    for i, record in enumerate(report):
        url = resolve(record.crop_image_ref)
        if url is None:
            continue
        suffix = Path(url.split("?", 1)[0]).suffix or ".jpg"
        safe_id = re.sub(r"[^A-Za-z0-9_-]", "_", record.vehicle_id)
        dest = dest_dir / f"{i:04d}_{safe_id}_crop{suffix}"
        try:
            await api.download(url, dest)
            load_evidence_image(dest)
        except (MediaFetchFailed, ImageLoadFailed) as e:
            log.warning("Evidence for row %d unavailable: %s", i, e)
            results[i] = None
            continue
        results[i] = dest
    return results
