#!/usr/bin/env python3
"""
Smart Traffic AI — Command-line Client
======================================

Usage:
    # Number-plate recognition against a local backend
    python client.py clip.mp4 --case anpr

    # Remote backend, faster polling, keep the report and evidence crops
    python client.py clip.mp4 --case helmet --url https://traffic.example.com \\
        --interval 1 --report-csv helmet.csv --evidence-dir evidence/

    # Show the available detection cases
    python client.py --list-cases
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from evidence import collect_evidence, render_report, write_report_csv
from jobclient import (
    API_BASE_URL,
    DEFAULT_CASE,
    DETECTION_CASES,
    POLL_INTERVAL_S,
    BackendAPI,
    ClientConfig,
    ClientState,
    JobLifecycle,
    JobPhase,
    MediaFetchFailed,
    UnknownCase,
    get_case,
)

log = logging.getLogger("traffic-client")


def _progress(state: ClientState) -> None:
    job = state.job.id if state.job else "-"
    print(f"  [{state.phase.value}] job {job} — {len(state.report)} detection(s)        ",
          end="\r", flush=True)


async def run_job(
    api,
    video: Path,
    case_id: str,
    *,
    out_dir: Path,
    report_csv: Path | None = None,
    evidence_dir: Path | None = None,
    config: ClientConfig | None = None,
) -> int:
    """Submit, poll to completion, then save outputs.  Returns an exit code."""
    case = get_case(case_id)
    lifecycle = JobLifecycle(api, config, on_change=_progress)
    try:
        print(f"Uploading {video} for {case.title} ...")
        job = await lifecycle.submit(video, case_id)
        if job is None:
            log.error("Upload of %s failed: %s", video, lifecycle.state.error)
            print(f"\nUpload failed: {lifecycle.state.error}")
            return 1
        print(f"Job queued: {job.id}")

        state = await lifecycle.wait_for_outcome()
        print()
        if state.phase is not JobPhase.COMPLETED:
            log.error("Job %s ended in error: %s", job.id, state.error)
            print(f"Analysis failed: {state.error}")
            return 1

        evidence = None
        if evidence_dir is not None:
            evidence = await collect_evidence(api, state.report, lifecycle.resolve, evidence_dir)

        print("\nAutomated Violation Report")
        print(render_report(state.report, state.phase, lifecycle.resolve, evidence))

        if report_csv is not None:
            write_report_csv(state.report, report_csv, lifecycle.resolve)
            print(f"\n  Report CSV -> {report_csv}")

        if state.video_url:
            out = out_dir / f"{video.stem}_{case_id}_annotated.mp4"
            print(f"  Downloading annotated video -> {out}")
            try:
                await api.download(state.video_url, out)
                print(f"    {out.stat().st_size / 1024:.0f} KB")
            except MediaFetchFailed as e:
                log.warning("Annotated video for job %s not saved: %s", job.id, e)
                print(f"    (not available: {e})")
        return 0
    finally:
        lifecycle.close()


def main():
    p = argparse.ArgumentParser(description="Smart Traffic AI job client")
    p.add_argument("video", nargs="?", help="Path to input .mp4 video")
    p.add_argument("--case", default=DEFAULT_CASE, help="Detection case id (see --list-cases)")
    p.add_argument("--url", default=API_BASE_URL, help="Backend base URL")
    p.add_argument("--interval", type=float, default=POLL_INTERVAL_S,
                   help="Seconds between status polls")
    p.add_argument("--out-dir", default=".", help="Where to save the annotated video")
    p.add_argument("--report-csv", default=None, help="Also write the report as CSV")
    p.add_argument("--evidence-dir", default=None, help="Download evidence crops here")
    p.add_argument("--list-cases", action="store_true", help="List detection cases and exit")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = p.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.list_cases:
        for c in DETECTION_CASES:
            print(f"  {c.id:<12} {c.title:<16} {c.description}")
        return

    if not args.video:
        p.error("video is required unless --list-cases is given")
    video = Path(args.video)
    if not video.is_file():
        print(f"File not found: {video}"); sys.exit(1)
    try:
        get_case(args.case)
    except UnknownCase as e:
        print(e); sys.exit(1)

    config = ClientConfig(base_url=args.url, poll_interval_s=args.interval)
    api = BackendAPI(config)
    try:
        code = asyncio.run(run_job(
            api, video, args.case,
            out_dir=Path(args.out_dir),
            report_csv=Path(args.report_csv) if args.report_csv else None,
            evidence_dir=Path(args.evidence_dir) if args.evidence_dir else None,
            config=config,
        ))
    except KeyboardInterrupt:
        print("\nCancelled.")
        code = 130
    finally:
        api.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
