#!/usr/bin/env python3
"""Input validation and normalization for CircleCI usage export requests."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

DATE_PATTERN = re.compile(
    r"^(?P<year>[0-9]{4})-(?P<month>0?[1-9]|1[0-2])-(?P<day>0?[1-9]|[12][0-9]|3[01])"
    r"(?P<time>T[0-9]{2}:[0-9]{2}:[0-9]{2}Z)?$"
)
START_TIME_SUFFIX = "T00:00:00Z"
END_TIME_SUFFIX = "T23:59:59Z"
ACCEPTED_DATE_FORMATS = "YYYY-MM-DD or YYYY-MM-DDThh:mm:ssZ"
DATE_EXAMPLES = "2025-4-15, 2025-04-15, or 2025-04-15T00:00:00Z"

ENV_TOKEN = "CIRCLE_TOKEN"
ENV_ORG_ID = "ORG_ID"
ENV_START_DATE = "START_DATE"
ENV_END_DATE = "END_DATE"


class UsageError(ValueError):
    """Missing or malformed command-line input."""


class InvalidDateError(UsageError):
    def __init__(self, name: str, value: str) -> None:
        super().__init__(
            f"{name} date format is invalid: '{value}'. Please use {ACCEPTED_DATE_FORMATS}. "
            f"Examples: {DATE_EXAMPLES}"
        )
        self.name = name
        self.value = value


@dataclass(frozen=True)
class ExportRequest:
    org_ids: Tuple[str, ...]
    token: str = field(repr=False)
    start: str
    end: str
    start_label: str
    end_label: str
    output_dir: Path = Path(".")
    debug: bool = False

    @property
    def home_org_id(self) -> str:
        return self.org_ids[0]

    def payload(self) -> Dict[str, object]:
        return build_payload(self.start, self.end, self.org_ids)


def validate_date(value: str, name: str) -> str:
    """Check the accepted date shapes and zero-pad month and day.

    A ``Thh:mm:ssZ`` suffix is kept exactly as given. Impossible calendar
    dates such as ``2025-02-30`` are rejected as well.
    """
    candidate = (value or "").strip()
    match = DATE_PATTERN.match(candidate)
    if match is None:
        raise InvalidDateError(name, value)
    year = int(match.group("year"))
    month = int(match.group("month"))
    day = int(match.group("day"))
    time_part = match.group("time") or ""
    try:
        datetime(year, month, day)
        if time_part:
            datetime.strptime(time_part, "T%H:%M:%SZ")
    except ValueError as exc:
        raise InvalidDateError(name, value) from exc
    return f"{year:04d}-{month:02d}-{day:02d}{time_part}"


def format_date(value: str, kind: str) -> str:
    if "T" in value:
        return value
    if kind == "start":
        return value + START_TIME_SUFFIX
    if kind == "end":
        return value + END_TIME_SUFFIX
    raise ValueError(f"Unknown date kind '{kind}'. Use 'start' or 'end'.")


def parse_org_ids(raw: str) -> Tuple[str, ...]:
    cleaned = re.sub(r"\s+", "", raw or "")
    return tuple(token for token in cleaned.split(",") if token)


def build_payload(start: str, end: str, org_ids: Tuple[str, ...]) -> Dict[str, object]:
    return {"start": start, "end": end, "shared_org_ids": list(org_ids)}


def encode_payload(payload: Mapping[str, object]) -> str:
    return json.dumps(payload, separators=(",", ":"))


def safe_filename(value: str) -> str:
    trimmed = value.strip()
    trimmed = trimmed.replace("\\", "_").replace("/", "_")
    return re.sub(r"[^A-Za-z0-9._-]+", "_", trimmed) or "unknown"


def _filename_date(value: str) -> str:
    return value.replace(":", "-").replace("T", "_")


def report_filename(request: ExportRequest, part: Optional[int] = None) -> str:
    orgs = safe_filename("_".join(request.org_ids))
    stem = f"usage_report_{_filename_date(request.start_label)}_to_{_filename_date(request.end_label)}_{orgs}"
    if part is not None:
        stem = f"{stem}_part{part}"
    return f"{stem}.csv"


def resolve_setting(
    cli_value: Optional[str],
    environ: Mapping[str, str],
    env_name: str,
) -> Optional[str]:
    if cli_value:
        return cli_value
    value = environ.get(env_name)
    return value or None


def build_request(
    *,
    org_id: Optional[str],
    token: Optional[str],
    start: Optional[str],
    end: Optional[str],
    output_dir: str = ".",
    debug: bool = False,
) -> ExportRequest:
    if not org_id:
        raise UsageError(
            "Organization ID is required. Use --org_id or set ORG_ID environment variable."
        )
    if not token:
        raise UsageError(
            "CircleCI API token is required. Use --token or set CIRCLE_TOKEN environment variable."
        )
    if not start:
        raise UsageError(
            "Start date is required. Use --start or set START_DATE environment variable."
        )
    if not end:
        raise UsageError("End date is required. Use --end or set END_DATE environment variable.")

    org_ids = parse_org_ids(org_id)
    if not org_ids:
        raise UsageError(f"No organization IDs found in '{org_id}'.")

    start_label = validate_date(start, "Start")
    end_label = validate_date(end, "End")
    start_full = format_date(start_label, "start")
    end_full = format_date(end_label, "end")
    # Fixed-width UTC strings compare in chronological order.
    if start_full > end_full:
        raise UsageError(f"Start date {start_full} must be on or before end date {end_full}.")

    return ExportRequest(
        org_ids=org_ids,
        token=token,
        start=start_full,
        end=end_full,
        start_label=start_label,
        end_label=end_label,
        output_dir=Path(output_dir or "."),
        debug=debug,
    )


def parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    raise ValueError(f"Cannot parse boolean from value '{value}'.")


def load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise UsageError(f"Config file not found: {path}")
    suffix = path.suffix.lower()
    raw = path.read_text(encoding="utf-8")
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(raw)
    elif suffix == ".json":
        data = json.loads(raw)
    else:
        raise UsageError("Unsupported config file extension. Use .yaml/.yml or .json.")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise UsageError("Config root must be a mapping/object.")
    return data


def flatten_config(data: Dict[str, Any]) -> Dict[str, Any]:
    flattened: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            for nested_key, nested_value in value.items():
                flattened[f"{key}_{nested_key}"] = nested_value
        else:
            flattened[key] = value
    return flattened


CONFIG_SECTIONS = ("circleci", "export", "network", "polling", "output")
SCALAR_KEYS = {
    "org_id": "org_id",
    "org_ids": "org_id",
    "token": "token",
    "start": "start",
    "start_date": "start",
    "end": "end",
    "end_date": "end",
    "output": "output",
    "dir": "output",
    "api_base_url": "api_base_url",
    "logs_dir": "logs_dir",
}
INT_KEYS = {
    "timeout_seconds": "timeout_seconds",
    "poll_attempts": "poll_attempts",
    "max_attempts": "poll_attempts",
}
FLOAT_KEYS = {
    "poll_interval_seconds": "poll_interval_seconds",
    "interval_seconds": "poll_interval_seconds",
}
BOOL_KEYS = {
    "debug": "debug",
    "keep_compressed": "keep_compressed",
    "combine": "combine",
}


def _config_lookup(cfg: Dict[str, Any], key: str) -> Tuple[bool, Any]:
    if key in cfg:
        return True, cfg[key]
    for section in CONFIG_SECTIONS:
        nested = f"{section}_{key}"
        if nested in cfg:
            return True, cfg[nested]
    return False, None


def config_to_parser_defaults(config_data: Dict[str, Any]) -> Dict[str, Any]:
    cfg = flatten_config(config_data)
    defaults: Dict[str, Any] = {}
    for source_key, target_key in SCALAR_KEYS.items():
        found, value = _config_lookup(cfg, source_key)
        if not found or value is None:
            continue
        if target_key == "org_id" and isinstance(value, list):
            value = ",".join(str(item) for item in value)
        defaults[target_key] = str(value)
    for source_key, target_key in INT_KEYS.items():
        found, value = _config_lookup(cfg, source_key)
        if found:
            try:
                defaults[target_key] = int(value)
            except (TypeError, ValueError) as exc:
                raise UsageError(f"Config key '{source_key}' must be an integer.") from exc
    for source_key, target_key in FLOAT_KEYS.items():
        found, value = _config_lookup(cfg, source_key)
        if found:
            try:
                defaults[target_key] = float(value)
            except (TypeError, ValueError) as exc:
                raise UsageError(f"Config key '{source_key}' must be a number.") from exc
    for source_key, target_key in BOOL_KEYS.items():
        found, value = _config_lookup(cfg, source_key)
        if found:
            try:
                defaults[target_key] = parse_bool(value)
            except ValueError as exc:
                raise UsageError(f"Config key '{source_key}': {exc}") from exc
    return defaults


def unknown_config_keys(config_data: Dict[str, Any]) -> List[str]:
    known = set(SCALAR_KEYS) | set(INT_KEYS) | set(FLOAT_KEYS) | set(BOOL_KEYS)
    unknown: List[str] = []
    for key in flatten_config(config_data):
        bare = key
        for section in CONFIG_SECTIONS:
            if key.startswith(f"{section}_") and key[len(section) + 1 :] in known:
                bare = key[len(section) + 1 :]
                break
        if bare not in known:
            unknown.append(key)
    return sorted(unknown)
