"""
Smart Traffic AI — Job Lifecycle Client
=======================================

Importable client for the traffic-analysis job API.  Submits a video for a
selected detection case, polls the asynchronous job until it finishes, and
keeps a live copy of the (partial) violation report while it runs.

    api = BackendAPI(ClientConfig(base_url="http://localhost:8000"))
    lifecycle = JobLifecycle(api)
    await lifecycle.submit("clip.mp4", "anpr")
    state = await lifecycle.wait_for_outcome()

Components, leaves first:
    resolve_media_url  — media reference → displayable URL
    BackendAPI         — /upload, /status, /report and media downloads
    ReportSynchronizer — fetches the full report snapshot for a job
    JobPoller          — fixed-interval status check + report sync
    JobLifecycle       — idle → processing → completed | error
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

import requests
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

log = logging.getLogger("traffic-client")


# =====================================================================
#  CONFIGURATION
# =====================================================================

# Read once at import.  Everything downstream takes a ClientConfig, so
# tests and the CLI can override without touching the environment.
API_BASE_URL       = os.getenv("API_BASE_URL", "http://localhost:8000")
POLL_INTERVAL_S    = float(os.getenv("POLL_INTERVAL_S", "3"))
REQUEST_TIMEOUT_S  = float(os.getenv("REQUEST_TIMEOUT_S", "10"))
UPLOAD_TIMEOUT_S   = float(os.getenv("UPLOAD_TIMEOUT_S", "600"))

DOWNLOAD_CHUNK_BYTES = 1024 * 1024


@dataclass
class ClientConfig:

    # -- Backend --
    base_url: str = API_BASE_URL

    # -- Polling --
    poll_interval_s: float = POLL_INTERVAL_S

    # -- Timeouts (seconds) --
    request_timeout_s: float = REQUEST_TIMEOUT_S
    upload_timeout_s: float = UPLOAD_TIMEOUT_S
    download_timeout_s: float = 120.0

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")
        if self.poll_interval_s <= 0:
            raise ValueError(f"poll_interval_s must be positive, got {self.poll_interval_s}")
        for name in ("request_timeout_s", "upload_timeout_s", "download_timeout_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")


# =====================================================================
#  DETECTION CASES
# =====================================================================

@dataclass(frozen=True)
class DetectionCase:
    id: str
    title: str
    description: str


DETECTION_CASES: tuple[DetectionCase, ...] = (
    DetectionCase("anpr", "Number Plate", "AI License Plate recognition"),
    DetectionCase("wrong_side", "Wrong Side", "Illegal direction detection"),
    DetectionCase("helmet", "No Helmet", "Two-wheeler safety check"),
    DetectionCase("triple", "Triple Riding", "Overloading detection"),
    DetectionCase("wrong_lane", "Wrong Lane", "Lane discipline monitoring"),
    DetectionCase("stalled", "Stalled Vehicle", "Stationary traffic alert"),
    DetectionCase("seatbelt", "No Seatbelt", "Occupant safety check"),
    DetectionCase("blacklist", "Security Alert", "Blacklist/Theft detection"),
)
CASE_IDS = frozenset(c.id for c in DETECTION_CASES)
DEFAULT_CASE = "anpr"


def get_case(case_id: str) -> DetectionCase:
    for case in DETECTION_CASES:
        if case.id == case_id:
            return case
    raise UnknownCase(
        f"Unknown detection case '{case_id}'. Known: {', '.join(c.id for c in DETECTION_CASES)}"
    )


# =====================================================================
#  ERRORS
# =====================================================================

class JobClientError(Exception):
    """Base class for every failure the job client reports."""


class SubmissionFailed(JobClientError):
    """POST /upload did not produce a job id."""


class StatusCheckFailed(JobClientError):
    """Could not ask the backend for the job status (transient)."""


class ReportFetchFailed(JobClientError):
    """Could not fetch the report snapshot (transient)."""


class JobFailed(JobClientError):
    """The backend itself reported status=error for the job."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} failed on the backend")
        self.job_id = job_id


class MediaFetchFailed(JobClientError):
    """A resolved media URL could not be downloaded."""


class ImageLoadFailed(JobClientError):
    """An evidence image was fetched but cannot be decoded."""


class InvalidTransition(JobClientError):
    """The requested action is not valid in the current phase."""


class UnknownCase(JobClientError, ValueError):
    pass


# =====================================================================
#  WIRE MODELS
# =====================================================================

TERMINAL_STATUSES = ("completed", "error")


class UploadResponse(BaseModel):
    job_id: str = Field(min_length=1)


class JobStatus(BaseModel):
    """Body of GET /status/{job_id}.

    Only ``completed`` and ``error`` are terminal; any other value
    (``processing``, ``pending``, ``queued`` ...) means keep polling.
    """
    status: str
    video_url: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class DetectionRecord(BaseModel):
    """One row of the violation report.

    The backend emits ``Frame``/``VehicleID``/``Type``/``Plate`` and puts
    image references under either ``plate_image``/``vehicle_image`` or
    ``CropImgUrl``/``FullImgUrl`` depending on the storage backend.  Both
    spellings collapse onto ``crop_image_ref``/``full_image_ref`` here.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    frame: int = Field(alias="Frame")
    vehicle_id: str = Field(alias="VehicleID")
    type: str = Field(alias="Type")
    plate_or_result: Optional[str] = Field(default=None, alias="Plate")
    crop_image_ref: Optional[str] = None
    full_image_ref: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _coalesce_image_keys(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for target, sources in (
            ("crop_image_ref", ("plate_image", "CropImgUrl")),
            ("full_image_ref", ("vehicle_image", "FullImgUrl")),
        ):
            found = [data.pop(k, None) for k in sources]
            if not data.get(target):
                data[target] = next((v for v in found if v), None)
        return data

    @field_validator("vehicle_id", "type", "plate_or_result", mode="before")
    @classmethod
    def _number_as_text(cls, value):
        # Plates read as all digits and track ids arrive as JSON numbers.
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


Report = tuple[DetectionRecord, ...]

_REPORT_ADAPTER = TypeAdapter(list[DetectionRecord])


# =====================================================================
#  URL RESOLVER
# =====================================================================

def resolve_media_url(ref: Optional[str], base_url: str) -> Optional[str]:
    """Turn a media reference into something a viewer can open.

    Absent → None.  ``http://``/``https://`` (e.g. pre-signed storage
    links) → unchanged.  Anything else is a backend-relative path and gets
    ``base_url`` prepended.
    """
    if not ref:
        return None
    if ref.startswith("http://") or ref.startswith("https://"):
        return ref
    return f"{base_url}{ref}"


# =====================================================================
#  BACKEND API  (submission gateway + reads)
# =====================================================================

class BackendAPI:
    """Thin async wrapper over the job endpoints.

    requests is blocking, so every call is pushed to a worker thread with
    asyncio.to_thread.  Nothing here touches ClientState; results are
    returned to the caller on the event loop.
    """

    def __init__(self, config: ClientConfig | None = None, session=None):
        self.config = config or ClientConfig()
        self._session = session if session is not None else requests.Session()

    def close(self):
        self._session.close()

    # -- Submission --

    async def submit(self, video: Union[str, Path], case_id: str) -> str:
        """Create a job for ``video`` under ``case_id`` and return its id.

        One POST per call; no idempotency key, so calling twice creates
        two jobs.
        """
        get_case(case_id)
        video = Path(video)
        if not video.is_file():
            raise FileNotFoundError(video)
        return await asyncio.to_thread(self._post_upload, video, case_id)

    def _post_upload(self, video: Path, case_id: str) -> str:
        url = f"{self.config.base_url}/upload"
        try:
            with open(video, "rb") as f:
                resp = self._session.post(
                    url,
                    files={"file": (video.name, f, "video/mp4")},
                    data={"case_type": case_id},
                    timeout=self.config.upload_timeout_s,
                )
            resp.raise_for_status()
            return UploadResponse.model_validate(resp.json()).job_id
        except (requests.RequestException, ValidationError, ValueError) as e:
            raise SubmissionFailed(f"POST {url} failed: {e}") from e

    # -- Reads --

    async def fetch_status(self, job_id: str) -> JobStatus:
        payload = await asyncio.to_thread(self._get_json, f"/status/{job_id}", StatusCheckFailed)
        try:
            return JobStatus.model_validate(payload)
        except ValidationError as e:
            raise StatusCheckFailed(f"Malformed status for job {job_id}: {e}") from e

    async def fetch_report(self, job_id: str) -> Report:
        payload = await asyncio.to_thread(self._get_json, f"/report/{job_id}", ReportFetchFailed)
        if not isinstance(payload, list):
            raise ReportFetchFailed(
                f"Report for job {job_id} is not a list: {type(payload).__name__}"
            )
        try:
            return tuple(_REPORT_ADAPTER.validate_python(payload))
        except ValidationError as e:
            raise ReportFetchFailed(f"Malformed report for job {job_id}: {e}") from e

    def _get_json(self, path: str, error_cls: type[JobClientError]):
        url = f"{self.config.base_url}{path}"
        try:
            resp = self._session.get(url, timeout=self.config.request_timeout_s)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            raise error_cls(f"GET {url} failed: {e}") from e

    # -- Media --

    async def download(self, url: str, dest: Union[str, Path]) -> Path:
        """Stream an already-resolved media URL to ``dest``."""
        return await asyncio.to_thread(self._download, url, Path(dest))

    def _download(self, url: str, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._session.get(url, stream=True, timeout=self.config.download_timeout_s) as resp:
                resp.raise_for_status()
                with open(dest, "wb") as f:
                    for chunk in resp.iter_content(DOWNLOAD_CHUNK_BYTES):
                        f.write(chunk)
        except (requests.RequestException, OSError) as e:
            dest.unlink(missing_ok=True)
            raise MediaFetchFailed(f"GET {url} failed: {e}") from e
        return dest


# =====================================================================
#  REPORT SYNCHRONIZER
# =====================================================================

ReportSink = Callable[[str, Report], None]


class ReportSynchronizer:
    """Fetch the full report snapshot for a job and hand it to ``sink``.

    The snapshot replaces whatever the sink held before; records are never
    merged because the backend does not keep per-record identity stable
    between polls.  Whichever fetch *completes* last wins, even if it was
    issued earlier.
    """

    def __init__(self, api, sink: ReportSink):
        self._api = api
        self._sink = sink

    async def sync(self, job_id: str) -> Report:
        report = await self._api.fetch_report(job_id)
        self._sink(job_id, report)
        return report


# =====================================================================
#  JOB POLLER
# =====================================================================

class PollerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class JobPoller:
    """Periodic status check + report sync for a single job.

    The timer task sleeps ``interval_s`` and fires a tick as a separate
    task, so a slow tick never delays the next one and consecutive ticks
    may overlap in flight.  A terminal status stops the poller and fires
    ``on_completed`` / ``on_failed`` exactly once.
    """

    def __init__(
        self,
        api,
        synchronizer: ReportSynchronizer,
        *,
        interval_s: float,
        on_completed: Callable[[str, Optional[str]], None],
        on_failed: Callable[[str, JobStatus], None],
        sleep=asyncio.sleep,
    ):
        self._api = api
        self._synchronizer = synchronizer
        self.interval_s = interval_s
        self._on_completed = on_completed
        self._on_failed = on_failed
        self._sleep = sleep

        self.state = PollerState.IDLE
        self.job_id: Optional[str] = None
        self.ticks = 0
        self._timer: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self.state is PollerState.RUNNING

    def start(self, job_id: str):
        if self.state is not PollerState.IDLE:
            raise RuntimeError(f"Poller already {self.state.value} (job {self.job_id})")
        self.job_id = job_id
        self.state = PollerState.RUNNING
        self._timer = asyncio.get_running_loop().create_task(self._run(job_id))
        log.debug("Job %s: polling every %.1fs", job_id, self.interval_s)

    def stop(self):
        """Stop scheduling ticks.  Safe to call any number of times.

        Ticks already in flight are left to finish; their results are
        filtered by state (here) and by job identity (JobLifecycle).
        """
        if self.state is PollerState.RUNNING:
            self.state = PollerState.STOPPED
            log.debug("Job %s: poller stopped after %d tick(s)", self.job_id, self.ticks)
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _run(self, job_id: str):
        while self.state is PollerState.RUNNING:
            await self._sleep(self.interval_s)
            if self.state is not PollerState.RUNNING:
                break
            self.ticks += 1
            task = asyncio.get_running_loop().create_task(self._tick(job_id, self.ticks))
            # Keep a strong reference until the tick finishes.
            self._inflight.add(task)
            task.add_done_callback(self._tick_done)

    def _tick_done(self, task: asyncio.Task):
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Job %s: poll tick crashed: %s", self.job_id, exc, exc_info=exc)

    async def _tick(self, job_id: str, tick: int):
        status, _ = await asyncio.gather(
            self._check_status(job_id, tick),
            self._sync_report(job_id, tick),
        )
        if status is None or not status.is_terminal:
            return
        # No await between this check and stop(): only one tick can win.
        if self.state is not PollerState.RUNNING:
            return
        self.stop()
        if status.status == "completed":
            self._on_completed(job_id, status.video_url)
        else:
            self._on_failed(job_id, status)

    async def _check_status(self, job_id: str, tick: int) -> Optional[JobStatus]:
        try:
            return await self._api.fetch_status(job_id)
        except StatusCheckFailed as e:
            log.warning("Job %s: status check failed on tick %d, will retry: %s", job_id, tick, e)
            return None

    async def _sync_report(self, job_id: str, tick: int):
        try:
            await self._synchronizer.sync(job_id)
        except ReportFetchFailed as e:
            log.warning("Job %s: report fetch failed on tick %d, keeping last report: %s",
                        job_id, tick, e)


# =====================================================================
#  JOB LIFECYCLE STATE MACHINE
# =====================================================================

class JobPhase(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class Job:
    id: str
    case_type: str


@dataclass(frozen=True)
class ClientState:
    phase: JobPhase = JobPhase.IDLE
    job: Optional[Job] = None
    report: Report = field(default_factory=tuple)
    video_url: Optional[str] = None
    error: Optional[JobClientError] = None

    @property
    def terminal(self) -> bool:
        return self.phase in (JobPhase.COMPLETED, JobPhase.ERROR)


class JobLifecycle:
    """Owns the session's ClientState and drives it from API/poller signals.

    Only this class replaces ``state``.  Every callback carries the job id
    it was started for and is dropped if that no longer matches the
    current job, so results from a superseded job or a reset session can
    never leak into the current one.
    """

    def __init__(
        self,
        api,
        config: ClientConfig | None = None,
        *,
        sleep=asyncio.sleep,
        on_change: Optional[Callable[[ClientState], None]] = None,
    ):
        self._api = api
        self.config = config or getattr(api, "config", None) or ClientConfig()
        self._sleep = sleep
        self._on_change = on_change

        self._state = ClientState()
        self._poller: Optional[JobPoller] = None
        self._session_seq = 0
        self._submitting = False
        self._outcome = asyncio.Event()

    # -- Read side --

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def phase(self) -> JobPhase:
        return self._state.phase

    @property
    def job(self) -> Optional[Job]:
        return self._state.job

    @property
    def report(self) -> Report:
        return self._state.report

    @property
    def video_url(self) -> Optional[str]:
        return self._state.video_url

    @property
    def poller(self) -> Optional[JobPoller]:
        return self._poller

    def resolve(self, ref: Optional[str]) -> Optional[str]:
        return resolve_media_url(ref, self.config.base_url)

    async def wait_for_outcome(self) -> ClientState:
        """Wait until the session reaches completed/error or is reset."""
        await self._outcome.wait()
        return self._state

    # -- Actions --

    async def submit(self, video: Union[str, Path], case_id: str) -> Optional[Job]:
        """idle → processing on success, idle → error on SubmissionFailed.

        Returns None when the submission failed or the session was reset
        while the upload was in flight.
        """
        if self._state.phase is not JobPhase.IDLE or self._submitting:
            raise InvalidTransition(
                f"Cannot submit while {self._state.phase.value}"
                + (" (upload pending)" if self._submitting else "")
            )
        get_case(case_id)

        seq = self._session_seq
        self._submitting = True
        try:
            job_id = await self._api.submit(video, case_id)
        except SubmissionFailed as e:
            if seq != self._session_seq:
                log.debug("Discarding submission failure from a reset session: %s", e)
                return None
            log.error("Submission failed: %s", e)
            self._set(replace(self._state, phase=JobPhase.ERROR, error=e))
            self._outcome.set()
            return None
        finally:
            if seq == self._session_seq:
                self._submitting = False

        if seq != self._session_seq:
            log.info("Session was reset during upload; ignoring job %s", job_id)
            return None

        job = Job(id=job_id, case_type=case_id)
        log.info("Job %s: created (%s)", job.id, case_id)
        self._set(ClientState(phase=JobPhase.PROCESSING, job=job))
        self._poller = JobPoller(
            self._api,
            ReportSynchronizer(self._api, self._apply_report),
            interval_s=self.config.poll_interval_s,
            on_completed=self._on_completed,
            on_failed=self._on_failed,
            sleep=self._sleep,
        )
        self._poller.start(job.id)
        return job

    def new_session(self):
        """Discard job, report and video URL and go back to idle."""
        if self._poller is not None:
            self._poller.stop()
            self._poller = None
        previous = self._state
        self._session_seq += 1
        self._submitting = False
        self._state = ClientState()
        # Release anyone waiting on the old session before swapping the event.
        self._outcome.set()
        self._outcome = asyncio.Event()
        if previous.job is not None:
            log.info("Job %s: session reset", previous.job.id)
        if previous != self._state:
            self._notify()

    close = new_session

    # -- Signals --

    def _is_current(self, job_id: str) -> bool:
        return self._state.job is not None and self._state.job.id == job_id

    def _apply_report(self, job_id: str, report: Report):
        if not self._is_current(job_id):
            log.debug("Job %s: discarding stale report (%d rows)", job_id, len(report))
            return
        self._set(replace(self._state, report=report))

    def _on_completed(self, job_id: str, video_url: Optional[str]):
        if not self._is_current(job_id) or self._state.phase is not JobPhase.PROCESSING:
            log.debug("Job %s: discarding stale completion", job_id)
            return
        resolved = self.resolve(video_url)
        if resolved is None:
            log.warning("Job %s: completed without a video_url", job_id)
        log.info("Job %s: completed with %d detection(s)", job_id, len(self._state.report))
        self._set(replace(self._state, phase=JobPhase.COMPLETED, video_url=resolved))
        self._outcome.set()

    def _on_failed(self, job_id: str, status: JobStatus):
        if not self._is_current(job_id) or self._state.phase is not JobPhase.PROCESSING:
            log.debug("Job %s: discarding stale failure", job_id)
            return
        log.info("Job %s: backend reported status=%s", job_id, status.status)
        self._set(replace(self._state, phase=JobPhase.ERROR, error=JobFailed(job_id)))
        self._outcome.set()

    def _set(self, state: ClientState):
        self._state = state
        self._notify()

    def _notify(self):
        if self._on_change is not None:
            self._on_change(self._state)
