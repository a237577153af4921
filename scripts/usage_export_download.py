#!/usr/bin/env python3
"""Download, decompress and combine usage export report files."""

from __future__ import annotations

import gzip
import os
import re
import shutil
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlparse

import requests

from usage_export_client import CircleCIUsageClient, UsageExportError
from usage_export_events import format_exception_message, log_event
from usage_export_request import ExportRequest, report_filename

STATUS_PENDING = "pending"
STATUS_DOWNLOADED = "downloaded"
STATUS_DECOMPRESSED = "decompressed"
STATUS_FAILED = "failed"


@dataclass
class ReportFile:
    source_url: str
    compressed_path: Path
    final_path: Path
    status: str = STATUS_PENDING
    error: str = ""
    bytes_written: int = 0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_DECOMPRESSED

    def as_dict(self) -> Dict[str, object]:
        return {
            "source_url": self.source_url,
            "compressed_path": str(self.compressed_path),
            "final_path": str(self.final_path),
            "status": self.status,
            "error": self.error,
            "bytes_written": self.bytes_written,
        }


@dataclass
class DownloadStats:
    downloaded: int = 0
    decompressed: int = 0
    failures: int = 0
    combined_rows: int = 0
    combined_path: Optional[Path] = None
    files: List[ReportFile] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return self.failures == 0 and all(item.ok for item in self.files)

    def as_dict(self) -> Dict[str, object]:
        return {
            "downloaded": self.downloaded,
            "decompressed": self.decompressed,
            "failures": self.failures,
            "combined_rows": self.combined_rows,
            "combined_path": str(self.combined_path) if self.combined_path else None,
        }


class DownloadIncompleteError(UsageExportError):
    def __init__(self, stats: DownloadStats) -> None:
        failed = [item.source_url for item in stats.files if not item.ok]
        super().__init__(
            f"{len(failed)} of {len(stats.files)} report file(s) failed: " + ", ".join(failed)
        )
        self.stats = stats


def filename_from_url(url: str) -> str:
    name = os.path.basename(urlparse(url).path)
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name)
    return name or "report.csv.gz"


def plan_report_files(request: ExportRequest, urls: List[str]) -> List[ReportFile]:
    multi = len(urls) > 1
    planned: List[ReportFile] = []
    seen: Dict[Path, int] = {}
    for index, url in enumerate(urls, 1):
        compressed = request.output_dir / f"usage_report_{filename_from_url(url)}"
        # Different URLs can share a basename; keep their temp files apart.
        if compressed in seen:
            compressed = compressed.with_name(f"{index}_{compressed.name}")
        seen[compressed] = index
        final = request.output_dir / report_filename(request, part=index if multi else None)
        planned.append(ReportFile(source_url=url, compressed_path=compressed, final_path=final))
    return planned


def decompress_gzip(source: Path, destination: Path) -> None:
    try:
        with gzip.open(source, "rb") as f_in, open(destination, "wb") as f_out:
            shutil.copyfileobj(f_in, f_out)
    except BaseException:
        destination.unlink(missing_ok=True)
        raise


def combine_csv_parts(parts: List[Path], destination: Path) -> int:
    """Concatenate CSV parts, dropping repeats of the first part's header.

    Empty parts are skipped and the header comes from the first non-empty
    part. Returns the number of data rows written.
    """
    header: Optional[bytes] = None
    rows = 0
    tmp_path = destination.with_name(destination.name + ".part")
    with open(tmp_path, "wb") as out:
        for path in parts:
            with open(path, "rb") as handle:
                first = handle.readline()
                if not first:
                    continue
                if not first.endswith(b"\n"):
                    first += b"\n"
                if header is None:
                    header = first
                    out.write(first)
                elif first.rstrip(b"\r\n") != header.rstrip(b"\r\n"):
                    out.write(first)
                    rows += 1
                for line in handle:
                    if not line.endswith(b"\n"):
                        line += b"\n"
                    out.write(line)
                    rows += 1
    tmp_path.replace(destination)
    return rows


def fetch_report_file(
    client: CircleCIUsageClient,
    item: ReportFile,
    stats: DownloadStats,
    keep_compressed: bool = False,
) -> None:
    log_event("DOWNLOAD_START", url=item.source_url, dest=item.compressed_path)
    try:
        item.bytes_written = client.download(item.source_url, item.compressed_path)
    except (requests.RequestException, OSError) as exc:
        item.status = STATUS_FAILED
        item.error = format_exception_message(exc)
        stats.failures += 1
        log_event("DOWNLOAD_ERROR", url=item.source_url, error=item.error)
        return
    item.status = STATUS_DOWNLOADED
    stats.downloaded += 1

    try:
        decompress_gzip(item.compressed_path, item.final_path)
    except (OSError, EOFError, zlib.error) as exc:
        item.status = STATUS_FAILED
        item.error = format_exception_message(exc)
        stats.failures += 1
        log_event(
            "DECOMPRESS_ERROR",
            file=item.compressed_path,
            error=item.error,
            kept=item.compressed_path,
        )
        return
    item.status = STATUS_DECOMPRESSED
    stats.decompressed += 1
    if not keep_compressed:
        item.compressed_path.unlink(missing_ok=True)
    log_event("DECOMPRESS_DONE", file=item.final_path, bytes=item.bytes_written)


def retrieve_reports(
    client: CircleCIUsageClient,
    request: ExportRequest,
    urls: List[str],
    keep_compressed: bool = False,
    combine: bool = True,
) -> DownloadStats:
    """Download every URL, then build the combined file for multi-part jobs.

    Per-file failures do not stop the loop. Raises ``DownloadIncompleteError``
    at the end when any file failed.
    """
    stats = DownloadStats()
    request.output_dir.mkdir(parents=True, exist_ok=True)
    if not urls:
        log_event("DOWNLOAD_WARN", message="completed_job_returned_no_download_urls")
        return stats

    stats.files = plan_report_files(request, urls)
    for item in stats.files:
        fetch_report_file(client, item, stats, keep_compressed=keep_compressed)

    if len(stats.files) > 1 and combine:
        combined = request.output_dir / report_filename(request)
        if stats.all_succeeded:
            stats.combined_rows = combine_csv_parts([item.final_path for item in stats.files], combined)
            stats.combined_path = combined
            log_event("COMBINE_DONE", file=combined, parts=len(stats.files), rows=stats.combined_rows)
        else:
            log_event("COMBINE_SKIP", file=combined, reason="part_failures", failures=stats.failures)

    log_event(
        "DOWNLOAD_SUMMARY",
        files=len(stats.files),
        downloaded=stats.downloaded,
        decompressed=stats.decompressed,
        failures=stats.failures,
    )
    if not stats.all_succeeded:
        raise DownloadIncompleteError(stats)
    return stats
