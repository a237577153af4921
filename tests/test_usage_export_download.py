from __future__ import annotations

from pathlib import Path

import pytest
import requests
from conftest import API

from usage_export_client import CircleCIUsageClient, content_length
from usage_export_download import (
    DownloadIncompleteError,
    combine_csv_parts,
    filename_from_url,
    retrieve_reports,
)
from usage_export_request import build_request

HEADER = "organization_id,project_name,credits\n"


def _request(output_dir: Path):
    return build_request(
        org_id="org-1, org-2",
        token="secret",
        start="2025-04-01",
        end="2025-04-30",
        output_dir=str(output_dir),
    )


def _client(fake_api) -> CircleCIUsageClient:
    return CircleCIUsageClient(token="secret", api_base_url=API, session=fake_api)


def test_filename_from_url_drops_query() -> None:
    url = "https://bucket.s3.amazonaws.com/exports/abc/part-0.csv.gz?X-Amz-Signature=xyz"
    assert filename_from_url(url) == "part-0.csv.gz"


def test_single_file_is_decompressed_and_temp_removed(fake_api, tmp_path: Path) -> None:
    url = "https://dl.example/exports/report.csv.gz?sig=1"
    fake_api.add_download(url, HEADER + "org-1,api,10\n")

    stats = retrieve_reports(_client(fake_api), _request(tmp_path), [url])

    final = tmp_path / "usage_report_2025-04-01_to_2025-04-30_org-1_org-2.csv"
    assert final.read_text(encoding="utf-8") == HEADER + "org-1,api,10\n"
    assert sorted(path.name for path in tmp_path.iterdir()) == [final.name]
    assert stats.downloaded == 1
    assert stats.decompressed == 1
    assert stats.combined_path is None
    _, _, kwargs = fake_api.calls[-1]
    assert kwargs["headers"]["Circle-Token"] is None
    assert kwargs["stream"] is True


def test_keep_compressed_leaves_archive(fake_api, tmp_path: Path) -> None:
    url = "https://dl.example/exports/report.csv.gz"
    fake_api.add_download(url, HEADER)

    retrieve_reports(_client(fake_api), _request(tmp_path), [url], keep_compressed=True)

    assert (tmp_path / "usage_report_report.csv.gz").exists()


def test_multiple_files_get_parts_and_combined(fake_api, tmp_path: Path) -> None:
    urls = ["https://dl.example/a/part.csv.gz", "https://dl.example/b/part.csv.gz"]
    fake_api.add_download(urls[0], HEADER + "org-1,api,10\n")
    fake_api.add_download(urls[1], HEADER + "org-2,web,5\norg-2,cli,1")

    stats = retrieve_reports(_client(fake_api), _request(tmp_path), urls)

    prefix = "usage_report_2025-04-01_to_2025-04-30_org-1_org-2"
    part1 = tmp_path / f"{prefix}_part1.csv"
    part2 = tmp_path / f"{prefix}_part2.csv"
    combined = tmp_path / f"{prefix}.csv"
    assert part1.read_text(encoding="utf-8") == HEADER + "org-1,api,10\n"
    assert part2.read_text(encoding="utf-8") == HEADER + "org-2,web,5\norg-2,cli,1"
    assert combined.read_text(encoding="utf-8") == (
        HEADER + "org-1,api,10\norg-2,web,5\norg-2,cli,1\n"
    )
    assert stats.combined_path == combined
    assert stats.combined_rows == 3
    assert not list(tmp_path.glob("*.gz"))


def test_no_combine_skips_combined_file(fake_api, tmp_path: Path) -> None:
    urls = ["https://dl.example/1.csv.gz", "https://dl.example/2.csv.gz"]
    for url in urls:
        fake_api.add_download(url, HEADER)

    stats = retrieve_reports(_client(fake_api), _request(tmp_path), urls, combine=False)

    assert stats.combined_path is None
    assert len(list(tmp_path.glob("*.csv"))) == 2


def test_failed_download_continues_then_raises(fake_api, tmp_path: Path) -> None:
    urls = [
        "https://dl.example/missing.csv.gz",
        "https://dl.example/broken.csv.gz",
        "https://dl.example/good.csv.gz",
    ]
    fake_api.downloads[urls[1]] = requests.ConnectionError("connection reset")
    fake_api.add_download(urls[2], HEADER + "org-1,api,10\n")

    with pytest.raises(DownloadIncompleteError) as excinfo:
        retrieve_reports(_client(fake_api), _request(tmp_path), urls)

    stats = excinfo.value.stats
    assert stats.failures == 2
    assert stats.decompressed == 1
    assert [item.status for item in stats.files] == ["failed", "failed", "decompressed"]
    assert "connection reset" in stats.files[1].error
    assert "2 of 3" in str(excinfo.value)
    assert (tmp_path / "usage_report_2025-04-01_to_2025-04-30_org-1_org-2_part3.csv").exists()
    assert not (tmp_path / "usage_report_2025-04-01_to_2025-04-30_org-1_org-2.csv").exists()
    assert not list(tmp_path.glob("*.part"))


def test_corrupt_archive_is_kept_for_inspection(fake_api, tmp_path: Path) -> None:
    url = "https://dl.example/report.csv.gz"
    fake_api.downloads[url] = b"not gzip data"

    with pytest.raises(DownloadIncompleteError):
        retrieve_reports(_client(fake_api), _request(tmp_path), [url])

    assert (tmp_path / "usage_report_report.csv.gz").exists()
    assert not list(tmp_path.glob("*.csv"))


def test_completed_job_without_urls(fake_api, tmp_path: Path) -> None:
    stats = retrieve_reports(_client(fake_api), _request(tmp_path), [])
    assert stats.files == []
    assert fake_api.calls == []


def test_combine_keeps_rows_when_headers_differ(tmp_path: Path) -> None:
    first = tmp_path / "a.csv"
    second = tmp_path / "b.csv"
    first.write_bytes(b"a,b\r\n1,2\r\n")
    second.write_bytes(b"x,y\r\n3,4\r\n")

    rows = combine_csv_parts([first, second], tmp_path / "all.csv")

    assert rows == 3
    assert (tmp_path / "all.csv").read_bytes() == b"a,b\r\n1,2\r\nx,y\r\n3,4\r\n"


def test_combine_header_only_first_part_without_newline(tmp_path: Path) -> None:
    first = tmp_path / "a.csv"
    second = tmp_path / "b.csv"
    first.write_bytes(b"org,credits")
    second.write_bytes(b"org,credits\norg-2,5\n")

    rows = combine_csv_parts([first, second], tmp_path / "all.csv")

    assert rows == 1
    assert (tmp_path / "all.csv").read_bytes() == b"org,credits\norg-2,5\n"


def test_combine_skips_empty_later_part(tmp_path: Path) -> None:
    first = tmp_path / "a.csv"
    second = tmp_path / "b.csv"
    first.write_bytes(b"org,credits\norg-1,1\n")
    second.write_bytes(b"")

    rows = combine_csv_parts([first, second], tmp_path / "all.csv")

    assert rows == 1
    assert (tmp_path / "all.csv").read_bytes() == b"org,credits\norg-1,1\n"


def test_combine_takes_header_from_first_non_empty_part(tmp_path: Path) -> None:
    first = tmp_path / "a.csv"
    second = tmp_path / "b.csv"
    third = tmp_path / "c.csv"
    first.write_bytes(b"")
    second.write_bytes(b"org,credits\norg-1,1\n")
    third.write_bytes(b"org,credits\norg-2,2\n")

    rows = combine_csv_parts([first, second, third], tmp_path / "all.csv")

    assert rows == 2
    assert (tmp_path / "all.csv").read_bytes() == b"org,credits\norg-1,1\norg-2,2\n"


@pytest.mark.parametrize("length", ["not-a-number", "-5", ""])
def test_bad_content_length_still_downloads(fake_api, tmp_path: Path, length: str) -> None:
    url = "https://dl.example/exports/report.csv.gz"
    fake_api.add_download(url, HEADER + "org-1,api,10\n")
    fake_api.download_headers["Content-Length"] = length

    stats = retrieve_reports(_client(fake_api), _request(tmp_path), [url])

    assert stats.decompressed == 1
    assert stats.failures == 0


def test_content_length_parsing() -> None:
    assert content_length({"Content-Length": "42"}) == 42
    assert content_length({"Content-Length": "abc"}) is None
    assert content_length({"Content-Length": "-1"}) is None
    assert content_length({}) is None
