#!/usr/bin/env python3
"""Create a CircleCI usage export job, wait for it, and download the CSV report(s)."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import requests

from usage_export_client import (
    API_BASE_URL,
    DEFAULT_TIMEOUT_SECONDS,
    CircleCIApiError,
    CircleCIUsageClient,
    JobFailedError,
    MalformedResponseError,
    UsageExportError,
    raw_text,
)
from usage_export_download import DownloadIncompleteError, DownloadStats, retrieve_reports
from usage_export_events import (
    TeeStream,
    clear_secrets,
    format_exception_message,
    log_event,
    register_secret,
    utc_now_iso,
)
from usage_export_polling import DEFAULT_INTERVAL_SECONDS, DEFAULT_MAX_ATTEMPTS, PollPolicy, poll_job
from usage_export_request import (
    ENV_END_DATE,
    ENV_ORG_ID,
    ENV_START_DATE,
    ENV_TOKEN,
    ExportRequest,
    UsageError,
    build_request,
    config_to_parser_defaults,
    encode_payload,
    load_config_file,
    resolve_setting,
    unknown_config_keys,
)


class UsageArgumentParser(argparse.ArgumentParser):
    """Argument parser that prints the full help and exits 1 on bad input."""

    def error(self, message: str) -> None:  # type: ignore[override]
        sys.stderr.write(f"Error: {message}\n")
        self.print_help(sys.stderr)
        raise SystemExit(1)


@dataclass
class RunSummary:
    status: str = "pending"
    started_at: str = ""
    finished_at: str = ""
    org_ids: List[str] = field(default_factory=list)
    start: str = ""
    end: str = ""
    job_id: Optional[str] = None
    job_state: Optional[str] = None
    poll_attempts: int = 0
    waited_seconds: float = 0.0
    stats: Optional[DownloadStats] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "org_ids": self.org_ids,
            "start": self.start,
            "end": self.end,
            "job_id": self.job_id,
            "job_state": self.job_state,
            "poll_attempts": self.poll_attempts,
            "waited_seconds": self.waited_seconds,
            "stats": self.stats.as_dict() if self.stats else None,
            "files": [item.as_dict() for item in self.stats.files] if self.stats else [],
            "error": self.error,
        }


def build_parser(config_defaults: Optional[Dict[str, Any]] = None) -> UsageArgumentParser:
    parser = UsageArgumentParser(description=__doc__)
    parser.add_argument("--config", help="Path to YAML/JSON config file.")
    parser.add_argument(
        "--org_id",
        help=(
            "Organization ID(s), comma-separated, e.g. \"org_id_1,org_id_2\". "
            "The first ID selects the endpoint. Falls back to ORG_ID."
        ),
    )
    parser.add_argument("--token", help="CircleCI API token. Falls back to CIRCLE_TOKEN.")
    parser.add_argument(
        "--start",
        help="Start date, YYYY-MM-DD or YYYY-MM-DDThh:mm:ssZ. Falls back to START_DATE.",
    )
    parser.add_argument(
        "--end",
        help="End date, YYYY-MM-DD or YYYY-MM-DDThh:mm:ssZ. Falls back to END_DATE.",
    )
    parser.add_argument("--output", default=".", help="Output directory (default: current directory).")
    parser.add_argument("--debug", action="store_true", help="Print every raw API response.")
    parser.add_argument("--api-base-url", default=API_BASE_URL, help="CircleCI API v2 base URL.")
    parser.add_argument(
        "--timeout-seconds",
        type=int,
        default=DEFAULT_TIMEOUT_SECONDS,
        help="HTTP timeout in seconds.",
    )
    parser.add_argument(
        "--poll-attempts",
        type=int,
        default=DEFAULT_MAX_ATTEMPTS,
        help="Maximum number of job status checks.",
    )
    parser.add_argument(
        "--poll-interval-seconds",
        type=float,
        default=DEFAULT_INTERVAL_SECONDS,
        help="Delay between job status checks.",
    )
    parser.add_argument(
        "--keep-compressed",
        action="store_true",
        help="Keep the downloaded .csv.gz files next to the decompressed CSVs.",
    )
    parser.add_argument(
        "--no-combine",
        dest="combine",
        action="store_false",
        default=True,
        help="Do not build a combined CSV when the job returns several files.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate inputs and print the job payload without calling the API.",
    )
    parser.add_argument(
        "--logs-dir",
        default=None,
        help="Write run.log and summary.json into a timestamped folder under this directory.",
    )
    if config_defaults:
        parser.set_defaults(**config_defaults)
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    argv = list(sys.argv[1:] if argv is None else argv)
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config")
    pre_args, _ = pre_parser.parse_known_args(argv)
    config_defaults: Dict[str, Any] = {}
    if pre_args.config:
        try:
            config_data = load_config_file(Path(pre_args.config))
            config_defaults = config_to_parser_defaults(config_data)
        except (UsageError, ValueError) as exc:
            build_parser().error(str(exc))
        for key in unknown_config_keys(config_data):
            log_event("CONFIG_WARN", message="unknown_key", key=key)
    parser = build_parser(config_defaults)
    args = parser.parse_args(argv)
    args.parser = parser
    return args


def _debug_hook(context: str, payload: Dict[str, Any]) -> None:
    log_event("DEBUG_RESPONSE", context=context, body=raw_text(payload))


def run_export(
    client: CircleCIUsageClient,
    request: ExportRequest,
    policy: PollPolicy,
    summary: RunSummary,
    keep_compressed: bool = False,
    combine: bool = True,
) -> DownloadStats:
    log_event("JOB_CREATE", org_id=request.home_org_id)
    job = client.create_job(request)
    summary.job_id = job.job_id
    log_event("JOB_CREATED", job_id=job.job_id)

    try:
        poll_state = poll_job(client, request.home_org_id, job, policy, debug=request.debug)
    except JobFailedError as exc:
        summary.job_state = exc.state
        raise
    summary.poll_attempts = poll_state.attempt
    summary.waited_seconds = poll_state.waited_seconds
    summary.job_state = poll_state.job.state
    if not poll_state.job.is_completed:
        raise JobFailedError(poll_state.job.state)

    log_event("JOB_COMPLETED", job_id=job.job_id, files=len(poll_state.job.download_urls))
    try:
        stats = retrieve_reports(
            client,
            request,
            poll_state.job.download_urls,
            keep_compressed=keep_compressed,
            combine=combine,
        )
    except DownloadIncompleteError as exc:
        summary.stats = exc.stats
        raise
    summary.stats = stats
    return stats


def main(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    args = parse_args(argv)
    parser: argparse.ArgumentParser = args.parser
    env = os.environ if environ is None else environ
    summary = RunSummary(started_at=utc_now_iso())

    original_stdout = sys.stdout
    original_stderr = sys.stderr
    run_log_handle = None
    run_dir: Optional[Path] = None
    if args.logs_dir:
        run_dir = Path(args.logs_dir) / datetime.now().strftime("%Y%m%d_%H%M%S")
        run_dir.mkdir(parents=True, exist_ok=True)
        run_log_handle = open(run_dir / "run.log", "a", encoding="utf-8")
        sys.stdout = TeeStream(original_stdout, run_log_handle)
        sys.stderr = TeeStream(original_stderr, run_log_handle)

    try:
        if run_dir is not None:
            log_event("RUN_PATHS", run_dir=run_dir)
        if args.config:
            log_event("RUN_CONFIG", config=args.config)
        try:
            request = build_request(
                org_id=resolve_setting(args.org_id, env, ENV_ORG_ID),
                token=resolve_setting(args.token, env, ENV_TOKEN),
                start=resolve_setting(args.start, env, ENV_START_DATE),
                end=resolve_setting(args.end, env, ENV_END_DATE),
                output_dir=args.output,
                debug=args.debug,
            )
            policy = PollPolicy(
                max_attempts=args.poll_attempts,
                interval_seconds=args.poll_interval_seconds,
                sleep=sleep,
            )
        except (UsageError, ValueError) as exc:
            summary.status = "usage_error"
            summary.error = str(exc)
            sys.stderr.write(f"Error: {exc}\n")
            parser.print_help(sys.stderr)
            return 1

        register_secret(request.token)
        summary.org_ids = list(request.org_ids)
        summary.start = request.start
        summary.end = request.end
        log_event(
            "EXPORT_REQUEST",
            org_ids=",".join(request.org_ids),
            start=request.start,
            end=request.end,
            output=request.output_dir,
        )
        log_event("JOB_PAYLOAD", payload=encode_payload(request.payload()))

        if args.dry_run:
            summary.status = "dry_run"
            create_url = f"{args.api_base_url.rstrip('/')}/organizations/{request.home_org_id}/usage_export_job"
            log_event("DRY_RUN", url=create_url)
            return 0

        request.output_dir.mkdir(parents=True, exist_ok=True)
        client = CircleCIUsageClient(
            token=request.token,
            api_base_url=args.api_base_url,
            timeout_seconds=args.timeout_seconds,
            session=session,
            on_response=_debug_hook if request.debug else None,
        )
        try:
            stats = run_export(
                client,
                request,
                policy,
                summary,
                keep_compressed=args.keep_compressed,
                combine=args.combine,
            )
        except UsageExportError as exc:
            summary.status = "failed"
            summary.error = format_exception_message(exc)
            fields: Dict[str, object] = {"error": summary.error}
            if isinstance(exc, (CircleCIApiError, MalformedResponseError)) and exc.raw is not None:
                fields["response"] = raw_text(exc.raw)
            log_event("RUN_FAILED", **fields)
            return 1

        summary.status = "completed"
        log_event(
            "RUN_DONE",
            job_id=summary.job_id,
            files=len(stats.files),
            combined=stats.combined_path,
        )
        return 0
    finally:
        summary.finished_at = utc_now_iso()
        clear_secrets()
        if run_dir is not None:
            (run_dir / "summary.json").write_text(
                json.dumps(summary.as_dict(), indent=2, sort_keys=True),
                encoding="utf-8",
            )
        sys.stdout = original_stdout
        sys.stderr = original_stderr
        if run_log_handle is not None:
            run_log_handle.close()


def cli() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    cli()
