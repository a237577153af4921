#!/usr/bin/env python3
"""Thin client for the CircleCI usage export job endpoints."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests
from tqdm import tqdm

from usage_export_request import ExportRequest

API_BASE_URL = "https://circleci.com/api/v2"
DEFAULT_TIMEOUT_SECONDS = 60
DOWNLOAD_CHUNK_SIZE = 1024 * 1024

STATE_PROCESSING = "processing"
STATE_COMPLETED = "completed"


class UsageExportError(RuntimeError):
    """Base class for failures that end a usage export run."""


class CircleCIApiError(UsageExportError):
    def __init__(
        self,
        message: str,
        raw: Any = None,
        status_code: Optional[int] = None,
        context: str = "CircleCI API",
    ) -> None:
        super().__init__(f"Error from {context}: {message}")
        self.message = message
        self.raw = raw
        self.status_code = status_code


class MalformedResponseError(UsageExportError):
    def __init__(self, detail: str, raw: Any = None) -> None:
        super().__init__(detail)
        self.raw = raw


class JobFailedError(UsageExportError):
    def __init__(self, state: str, detail: Optional[str] = None) -> None:
        super().__init__(detail or f"Job has finished with state: {state}")
        self.state = state


class JobTimeoutError(JobFailedError):
    def __init__(self, attempts: int) -> None:
        super().__init__(
            STATE_PROCESSING,
            f"Max attempts reached ({attempts}). Job is still processing.",
        )
        self.attempts = attempts


@dataclass
class ExportJob:
    job_id: str
    state: str = STATE_PROCESSING
    download_urls: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_processing(self) -> bool:
        return self.state == STATE_PROCESSING

    @property
    def is_completed(self) -> bool:
        return self.state == STATE_COMPLETED


def _is_missing(value: object) -> bool:
    return value is None or (isinstance(value, str) and value.strip() in {"", "null"})


def content_length(headers: Mapping[str, str]) -> Optional[int]:
    raw = headers.get("Content-Length")
    if raw is None:
        return None
    try:
        size = int(raw)
    except (TypeError, ValueError):
        return None
    return size if size >= 0 else None


def raw_text(payload: object) -> str:
    if isinstance(payload, (dict, list)):
        return json.dumps(payload, sort_keys=True)
    return str(payload)


class CircleCIUsageClient:
    def __init__(
        self,
        token: str,
        api_base_url: str = API_BASE_URL,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        on_response: Optional[Callable[[str, Dict[str, Any]], None]] = None,
    ) -> None:
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.on_response = on_response
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Circle-Token": token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

    def job_url(self, org_id: str, job_id: Optional[str] = None) -> str:
        url = f"{self.api_base_url}/organizations/{org_id}/usage_export_job"
        if job_id:
            url = f"{url}/{job_id}"
        return url

    def _request_json(self, method: str, url: str, context: str, **kwargs: object) -> Dict[str, Any]:
        try:
            response = self.session.request(method, url, timeout=self.timeout_seconds, **kwargs)
        except requests.RequestException as exc:
            raise CircleCIApiError(str(exc), context=context) from exc
        try:
            payload = response.json()
        except ValueError as exc:
            body = (response.text or "").strip()
            raise MalformedResponseError(
                f"{context} returned a non-JSON body (HTTP {response.status_code}): {body}",
                raw=body,
            ) from exc
        if self.on_response is not None:
            self.on_response(context, payload)
        if not isinstance(payload, dict):
            raise MalformedResponseError(
                f"{context} returned an unexpected JSON shape: {raw_text(payload)}",
                raw=payload,
            )
        # CircleCI reports API-level failures as a top-level "message" key.
        if "message" in payload:
            raise CircleCIApiError(
                str(payload.get("message")),
                raw=payload,
                status_code=response.status_code,
                context=context,
            )
        if response.status_code >= 400:
            raise CircleCIApiError(
                f"HTTP {response.status_code}",
                raw=payload,
                status_code=response.status_code,
                context=context,
            )
        return payload

    def create_job(self, request: ExportRequest) -> ExportJob:
        payload = self._request_json(
            "POST",
            self.job_url(request.home_org_id),
            "CircleCI API",
            json=request.payload(),
        )
        job_id = payload.get("usage_export_job_id")
        if _is_missing(job_id):
            raise MalformedResponseError(
                f"Failed to create usage export job. Response: {raw_text(payload)}",
                raw=payload,
            )
        return ExportJob(job_id=str(job_id), raw=payload)

    def get_job(self, org_id: str, job_id: str) -> ExportJob:
        payload = self._request_json("GET", self.job_url(org_id, job_id), "job status check")
        state = payload.get("state")
        if _is_missing(state):
            raise MalformedResponseError(
                f"Could not determine job state. Response: {raw_text(payload)}",
                raw=payload,
            )
        urls = payload.get("download_urls") or []
        if not isinstance(urls, list):
            raise MalformedResponseError(
                f"download_urls is not a list. Response: {raw_text(payload)}",
                raw=payload,
            )
        return ExportJob(
            job_id=job_id,
            state=str(state),
            download_urls=[str(url) for url in urls if url],
            raw=payload,
        )

    def download(self, url: str, destination: Path) -> int:
        """Stream ``url`` into ``destination`` through a ``.part`` file.

        Pre-signed report URLs reject extra credentials, so the token header
        is dropped for this request. Returns the number of bytes written.
        """
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = destination.with_name(destination.name + ".part")
        written = 0
        try:
            with self.session.get(
                url,
                headers={"Circle-Token": None, "Content-Type": None, "Accept": None},
                stream=True,
                allow_redirects=True,
                timeout=self.timeout_seconds,
            ) as response:
                response.raise_for_status()
                with open(tmp_path, "wb") as handle, tqdm(
                    total=content_length(response.headers),
                    unit="B",
                    unit_scale=True,
                    desc=destination.name,
                ) as pbar:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
                            written += len(chunk)
                            pbar.update(len(chunk))
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        tmp_path.replace(destination)
        return written
