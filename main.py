"""
Smart Traffic AI — Replay Backend
=================================

FastAPI service that speaks the same job API as the traffic-analysis
backend but replays a scripted job instead of running detection models.
Lets the job client be developed and demoed without GPUs or storage
credentials.

Every GET /status call advances the job by one step:
    • the first REPLAY_PROCESSING_POLLS calls report "processing" and
      reveal REPLAY_RECORDS_PER_POLL more report rows each
    • after that the job is terminal (REPLAY_FINAL_STATUS)

Endpoints:
    POST /upload                 — create a job (multipart: file, case_type)
    GET  /status/{id}            — poll job state (advances the script)
    GET  /report/{id}            — full snapshot of rows revealed so far
    GET  /out/{id}.mp4           — output video (the uploaded clip)
    GET  /media/{id}/{name}      — evidence crop / full frame (JPEG)
    DELETE /jobs/{id}            — manual cleanup
    GET  /health                 — liveness probe

Run locally:
    uvicorn main:app --host 0.0.0.0 --port 8000
"""

import logging
import os
import threading
import time
import uuid
from pathlib import Path
from contextlib import asynccontextmanager

import cv2
import numpy as np
from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, Response
from pydantic import BaseModel

from jobclient import CASE_IDS, DETECTION_CASES, TERMINAL_STATUSES


# ---------------------------------------------------------------------------
#  Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("traffic-replay")


# ---------------------------------------------------------------------------
#  Config from environment
# ---------------------------------------------------------------------------
UPLOAD_DIR               = Path(os.getenv("UPLOAD_DIR", "/tmp/traffic_uploads"))
MAX_UPLOAD_MB            = int(os.getenv("MAX_UPLOAD_MB", "200"))
JOB_TTL_MINUTES          = int(os.getenv("JOB_TTL_MINUTES", "30"))
REPLAY_PROCESSING_POLLS  = int(os.getenv("REPLAY_PROCESSING_POLLS", "3"))
REPLAY_RECORDS_PER_POLL  = int(os.getenv("REPLAY_RECORDS_PER_POLL", "2"))
REPLAY_FINAL_STATUS      = os.getenv("REPLAY_FINAL_STATUS", "completed")
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:3000,http://localhost:5173,http://localhost:8000"
).split(",")

# The web client only offers .mp4 uploads.
VALID_EXTENSIONS = {".mp4"}

# Detection class and result text per case, used to synthesise rows.
CASE_ROWS = {
    "anpr": ("car", None),
    "wrong_side": ("car", "Wrong Side"),
    "helmet": ("motorcycle", "No Helmet"),
    "triple": ("motorcycle", "Triple Riding"),
    "wrong_lane": ("truck", "Wrong Lane"),
    "stalled": ("car", "Stalled"),
    "seatbelt": ("car", "No Seatbelt"),
    "blacklist": ("car", "Blacklisted"),
}


# ---------------------------------------------------------------------------
#  Shared state
# ---------------------------------------------------------------------------
JOBS: dict[str, dict] = {}
_jobs_lock = threading.Lock()


class UploadResult(BaseModel):
    job_id: str


class JobStatusOut(BaseModel):
    status: str
    video_url: str | None = None


# ---------------------------------------------------------------------------
#  Synthetic rows
# ---------------------------------------------------------------------------

def _plate(rng: np.random.Generator) -> str:
    letters = "ABCDEFGHJKLMNPRSTUVWXYZ"
    a, b, c, d = (letters[i] for i in rng.integers(0, len(letters), 4))
    return f"{a}{b}{rng.integers(10, 99)}{c}{d}{rng.integers(1000, 9999)}"


def _build_records(job_id: str, case_type: str, count: int) -> list[dict]:
    """Deterministic rows for a job, in the backend's own key spelling.

    Frames are jittered so the list is not strictly sorted, like the real
    backend which appends per tracked vehicle rather than per frame.
    """
    rng = np.random.default_rng(uuid.UUID(job_id).int % (2 ** 32))
    cls, result = CASE_ROWS.get(case_type, ("car", None))
    rows = []
    frame = 0
    for i in range(count):
        frame += int(rng.integers(5, 40))
        rows.append({
            "Frame": max(1, frame - int(rng.integers(0, 12))),
            "VehicleID": int(rng.integers(1, 500)),
            "Type": cls,
            "Plate": _plate(rng) if result is None else result,
            "plate_image": f"/media/{job_id}/{i}_crop.jpg",
            "vehicle_image": f"/media/{job_id}/{i}_full.jpg",
        })
    return rows


def _render_evidence(label: str, kind: str) -> bytes:
    """Render a placeholder JPEG: small plate-like crop or a full frame."""
    h, w = (60, 200) if kind == "crop" else (360, 640)
    img = np.full((h, w, 3), (40, 40, 40) if kind == "full" else (235, 235, 235), np.uint8)
    colour = (20, 20, 20) if kind == "crop" else (60, 200, 240)
    cv2.putText(img, label, (8, h // 2 + 8), cv2.FONT_HERSHEY_SIMPLEX, 0.7, colour, 2)
    ok, buf = cv2.imencode(".jpg", img)
    if not ok:
        raise HTTPException(500, "Could not encode evidence image")
    return buf.tobytes()


# ---------------------------------------------------------------------------
#  Auto-cleanup
# ---------------------------------------------------------------------------

def _cleanup_loop():
    """Background thread: drop finished jobs older than JOB_TTL_MINUTES."""
    while True:
        time.sleep(60)
        now = time.time()
        with _jobs_lock:
            expired = [
                jid for jid, j in JOBS.items()
                if j["status"] in TERMINAL_STATUSES
                and now - j["_created"] > JOB_TTL_MINUTES * 60
            ]
        for jid in expired:
            _cleanup_job(jid)
            log.info("Auto-cleaned expired job %s", jid)


def _cleanup_job(job_id: str):
    """Remove the stored clip and the in-memory record for a job."""
    with _jobs_lock:
        job = JOBS.pop(job_id, None)
    if job is not None:
        Path(job["_video"]).unlink(missing_ok=True)


# ---------------------------------------------------------------------------
#  App lifecycle
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    threading.Thread(target=_cleanup_loop, daemon=True).start()
    log.info("Replay backend ready: %d processing poll(s), %d row(s)/poll, final=%s",
             REPLAY_PROCESSING_POLLS, REPLAY_RECORDS_PER_POLL, REPLAY_FINAL_STATUS)
    yield
    log.info("Shutting down")


app = FastAPI(
    title="Smart Traffic AI — Replay Backend",
    description=(
        "Scripted stand-in for the traffic-analysis job API.  Accepts an "
        "upload, then replays a processing → completed (or error) job with "
        "a growing violation report."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def _validate_upload(filename: str, case_type: str):
    ext = Path(filename or "").suffix.lower()
    if ext not in VALID_EXTENSIONS:
        raise HTTPException(
            400,
            f"Unsupported format '{ext}'. Accepted: {', '.join(sorted(VALID_EXTENSIONS))}",
        )
    if case_type not in CASE_IDS:
        raise HTTPException(400, f"Unknown case_type '{case_type}'")


async def _save_upload(video: UploadFile, video_path: Path) -> int:
    """Stream the upload to disk in 1 MB chunks, enforcing MAX_UPLOAD_MB."""
    total = 0
    with open(video_path, "wb") as f:
        while chunk := await video.read(1024 * 1024):
            total += len(chunk)
            if total > MAX_UPLOAD_MB * 1024 * 1024:
                f.close()
                video_path.unlink(missing_ok=True)
                raise HTTPException(413, f"Upload exceeds {MAX_UPLOAD_MB} MB limit")
            f.write(chunk)
    return total


def _get_job(job_id: str) -> dict:
    job = JOBS.get(job_id)
    if job is None:
        raise HTTPException(404, "Job not found")
    return job


def _advance(job_id: str, job: dict):
    """One scripted step per status poll."""
    job["_polls"] += 1
    if job["_polls"] <= REPLAY_PROCESSING_POLLS:
        job["_visible"] = min(len(job["_records"]), job["_polls"] * REPLAY_RECORDS_PER_POLL)
        return
    if job["status"] in TERMINAL_STATUSES:
        return
    job["_visible"] = len(job["_records"])
    if REPLAY_FINAL_STATUS == "completed":
        job["status"] = "completed"
        job["video_url"] = f"/out/{job_id}.mp4"
    else:
        job["status"] = "error"
    log.info("Job %s: %s with %d row(s)", job_id, job["status"], job["_visible"])


# ---------------------------------------------------------------------------
#  Endpoints
# ---------------------------------------------------------------------------

@app.post("/upload", response_model=UploadResult)
async def upload(
    file: UploadFile = File(..., description="Traffic video (.mp4)"),
    case_type: str = Form(..., description="Detection case id"),
):
    """Create a replay job for ``case_type``."""
    _validate_upload(file.filename, case_type)

    job_id = str(uuid.uuid4())
    video_path = UPLOAD_DIR / f"{job_id}.mp4"
    size = await _save_upload(file, video_path)

    total_rows = REPLAY_PROCESSING_POLLS * REPLAY_RECORDS_PER_POLL
    with _jobs_lock:
        JOBS[job_id] = {
            "status": "processing", "video_url": None,
            "_case": case_type, "_polls": 0, "_visible": 0,
            "_records": _build_records(job_id, case_type, total_rows),
            "_video": str(video_path), "_created": time.time(),
        }

    log.info("Job %s: queued (%s, %s, %.0f KB)", job_id, file.filename, case_type, size / 1024)
    return UploadResult(job_id=job_id)


@app.get("/status/{job_id}", response_model=JobStatusOut)
async def get_status(job_id: str):
    job = _get_job(job_id)
    _advance(job_id, job)
    return JobStatusOut(status=job["status"], video_url=job["video_url"])


@app.get("/report/{job_id}")
async def get_report(job_id: str):
    """Full snapshot, not a delta: the client replaces its table with it."""
    job = _get_job(job_id)
    return job["_records"][: job["_visible"]]


@app.get("/out/{job_id}.mp4")
async def download_output(job_id: str):
    job = _get_job(job_id)
    if job["status"] != "completed":
        raise HTTPException(400, f"Not ready: {job['status']}")
    p = Path(job["_video"])
    if not p.exists():
        raise HTTPException(404, "Output video not found")
    return FileResponse(str(p), media_type="video/mp4", filename=f"annotated_{job_id}.mp4")


@app.get("/media/{job_id}/{name}")
async def get_media(job_id: str, name: str):
    job = _get_job(job_id)
    stem, _, ext = name.partition(".")
    index, _, kind = stem.partition("_")
    if ext != "jpg" or kind not in ("crop", "full") or not index.isdigit():
        raise HTTPException(404, "Media not found")
    i = int(index)
    if i >= job["_visible"]:
        raise HTTPException(404, "Media not found")
    row = job["_records"][i]
    label = row["Plate"] if kind == "crop" else f"{row['Type']} #{row['VehicleID']}"
    return Response(_render_evidence(label, kind), media_type="image/jpeg")


@app.delete("/jobs/{job_id}")
async def delete_job(job_id: str):
    _get_job(job_id)
    _cleanup_job(job_id)
    return {"detail": "deleted"}


@app.get("/health")
async def health():
    with _jobs_lock:
        statuses = [j["status"] for j in JOBS.values()]
    return {
        "status": "healthy",
        "active_jobs": statuses.count("processing"),
        "total_jobs": len(statuses),
    }


@app.get("/")
async def root():
    """Service info and endpoint index."""
    return {
        "service": "Smart Traffic AI — Replay Backend",
        "version": "1.0.0",
        "docs": "/docs",
        "cases": [c.id for c in DETECTION_CASES],
        "endpoints": {
            "POST /upload": "Create a job (file, case_type), returns job_id",
            "GET /status/{job_id}": "Poll job state",
            "GET /report/{job_id}": "Current report snapshot",
            "GET /out/{job_id}.mp4": "Output video",
            "GET /media/{job_id}/{name}": "Evidence image",
            "DELETE /jobs/{job_id}": "Cleanup",
            "GET /health": "Liveness probe",
        },
    }
