from __future__ import annotations

import gzip
from typing import Any, Dict, List, Optional, Tuple

import pytest
import requests

API = "https://circleci.example/api/v2"


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        payload: Any = None,
        content: bytes = b"",
        text: Optional[str] = None,
    ) -> None:
        self.status_code = status_code
        self._payload = payload
        self.content = content
        self.text = text if text is not None else ""
        self.headers: Dict[str, str] = {}
        if content:
            self.headers["Content-Length"] = str(len(content))

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def iter_content(self, chunk_size: int = 1):
        for index in range(0, len(self.content), chunk_size):
            yield self.content[index : index + chunk_size]

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None


class FakeCircleCI:
    """Stands in for ``requests.Session`` with canned CircleCI responses."""

    def __init__(self) -> None:
        self.headers: Dict[str, str] = {}
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self.create_response = FakeResponse(201, {"usage_export_job_id": "job-123"})
        self.status_responses: List[FakeResponse] = []
        self.downloads: Dict[str, Any] = {}
        self.download_headers: Dict[str, str] = {}

    def queue_states(self, *states: str, urls: Optional[List[str]] = None) -> None:
        for state in states:
            body: Dict[str, Any] = {"state": state}
            if state == "completed":
                body["download_urls"] = list(urls or [])
            self.status_responses.append(FakeResponse(200, body))

    def add_download(self, url: str, csv_text: str) -> None:
        self.downloads[url] = gzip.compress(csv_text.encode("utf-8"))

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        if method == "POST":
            return self.create_response
        if not self.status_responses:
            raise AssertionError(f"unexpected status call: {url}")
        return self.status_responses.pop(0)

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append(("DOWNLOAD", url, kwargs))
        item = self.downloads.get(url)
        if item is None:
            return FakeResponse(404)
        if isinstance(item, Exception):
            raise item
        response = FakeResponse(200, content=item)
        response.headers.update(self.download_headers)
        return response

    def methods(self) -> List[str]:
        return [method for method, _, _ in self.calls]


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []
        self.now = 0.0

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.now += seconds

    def clock(self) -> float:
        return self.now


@pytest.fixture
def fake_api() -> FakeCircleCI:
    return FakeCircleCI()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()
