"""Configuration loading, merging, and validation."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from strmsync.errors import InvalidScheduleError
from strmsync.models import DEFAULT_CONCURRENCY, ContentMode, MappingSpec, RefreshMode
from strmsync.schedule import parse_schedule


@dataclass(frozen=True)
class AlistConfig:
    """Connection settings for the AList server."""

    url: str
    token: str = ""
    sign_enabled: bool = False
    timeout: float = 30
    case_sensitive_extensions: bool = True


@dataclass(frozen=True)
class StrmsyncConfig:
    """Immutable service configuration."""

    alist: AlistConfig
    data_dir: Path = Path(".strmsync")
    log_level: str = "INFO"
    timezone: str | None = None
    mappings: tuple[MappingSpec, ...] = field(default_factory=tuple)


_DEFAULTS: dict[str, Any] = {
    "data_dir": ".strmsync",
    "log_level": "INFO",
    "timezone": None,
}

_ALIST_DEFAULTS: dict[str, Any] = {
    "token": "",
    "sign_enabled": False,
    "timeout": 30,
    "case_sensitive_extensions": True,
}

_DEFAULT_EXTENSIONS = ("mp4", "mkv", "avi", "mov", "wmv", "flv", "m4v", "ts")


def load_config(path: Path) -> dict[str, Any]:
    """Read a TOML config file and return a dict."""
    with path.open("rb") as f:
        return tomllib.load(f)


def merge_config(
    file_config: dict[str, Any],
    cli_overrides: dict[str, Any],
) -> StrmsyncConfig:
    """Merge defaults, file config, and CLI overrides into a validated config.

    Priority: defaults < file config < CLI overrides.
    The AList token falls back to the ALIST_TOKEN environment variable.
    """
    merged: dict[str, Any] = {**_DEFAULTS}
    merged.update({
        k: v for k, v in file_config.items()
        if v is not None and k not in ("alist", "mappings")
    })
    merged.update({k: v for k, v in cli_overrides.items() if v is not None})

    alist_section = file_config.get("alist", {})
    if not isinstance(alist_section, dict):
        raise ValueError("Configuration errors:\n  [alist] must be a table")
    alist: dict[str, Any] = {**_ALIST_DEFAULTS}
    alist.update({k: v for k, v in alist_section.items() if v is not None})

    # Resolve token from env if not in config
    if not alist.get("token"):
        env_token = os.environ.get("ALIST_TOKEN", "")
        if env_token:
            alist["token"] = env_token

    errors: list[str] = []
    if not alist.get("url"):
        errors.append("alist.url is required")
    try:
        float(alist.get("timeout", 0))
    except (TypeError, ValueError):
        errors.append(f"alist.timeout must be a number, got {alist.get('timeout')!r}")

    mappings: tuple[MappingSpec, ...] = ()
    try:
        mappings = parse_mappings(file_config)
    except ValueError as e:
        errors.extend(str(e).splitlines())

    if errors:
        raise ValueError("Configuration errors:\n  " + "\n  ".join(errors))

    return StrmsyncConfig(
        alist=AlistConfig(
            url=str(alist["url"]),
            token=str(alist.get("token", "")),
            sign_enabled=bool(alist.get("sign_enabled", False)),
            timeout=float(alist.get("timeout", _ALIST_DEFAULTS["timeout"])),
            case_sensitive_extensions=bool(
                alist.get("case_sensitive_extensions", True)
            ),
        ),
        data_dir=Path(merged["data_dir"]),
        log_level=str(merged.get("log_level", _DEFAULTS["log_level"])),
        timezone=merged.get("timezone"),
        mappings=mappings,
    )


def _parse_extensions(value: Any) -> tuple[str, ...]:
    """Accept a list or a comma-separated string; strip periods and blanks."""
    if value is None:
        return _DEFAULT_EXTENSIONS
    if isinstance(value, str):
        value = value.split(",")
    return tuple(e.strip().lstrip(".") for e in value if str(e).strip())


def parse_mappings(file_config: dict[str, Any]) -> tuple[MappingSpec, ...]:
    """Validate the [[mappings]] tables and return them as MappingSpecs.

    Missing IDs default to the table's position (1-based). All problems are
    collected and raised together as one ValueError.
    """
    raw = file_config.get("mappings", [])
    if not isinstance(raw, list):
        raise ValueError("mappings must be an array of tables")

    errors: list[str] = []
    result: list[MappingSpec] = []
    seen_names: set[str] = set()
    seen_ids: set[int] = set()

    for index, entry in enumerate(raw, start=1):
        if not isinstance(entry, dict):
            errors.append(f"mapping #{index}: must be a table, got {type(entry).__name__}")
            continue
        label = entry.get("name") or f"#{index}"
        problems: list[str] = []
        for key in ("name", "source", "target"):
            if not entry.get(key):
                problems.append(f"mapping {label}: {key} is required")

        name = str(entry.get("name", ""))
        if name and name in seen_names:
            problems.append(f"mapping {label}: duplicate name")
        mapping_id = entry.get("id", index)
        if isinstance(mapping_id, bool) or not isinstance(mapping_id, int):
            problems.append(f"mapping {label}: id must be an integer")
            mapping_id = index
        elif mapping_id in seen_ids:
            problems.append(f"mapping {label}: duplicate id {mapping_id}")

        try:
            mode = RefreshMode(entry.get("mode", RefreshMode.INCREMENTAL.value))
        except ValueError:
            problems.append(f"mapping {label}: unknown mode {entry.get('mode')!r}")
            mode = RefreshMode.INCREMENTAL
        try:
            content_mode = ContentMode.parse(entry.get("strm_mode", ContentMode.PATH.value))
        except ValueError:
            problems.append(f"mapping {label}: unknown strm_mode {entry.get('strm_mode')!r}")
            content_mode = ContentMode.PATH

        cron = str(entry.get("cron", "") or "")
        if cron.strip():
            try:
                parse_schedule(cron)
            except InvalidScheduleError as e:
                problems.append(f"mapping {label}: {e}")

        concurrent = entry.get("concurrent", DEFAULT_CONCURRENCY)
        if isinstance(concurrent, bool) or not isinstance(concurrent, int):
            problems.append(f"mapping {label}: concurrent must be an integer")
        enabled = entry.get("enabled", True)
        if not isinstance(enabled, bool):
            problems.append(f"mapping {label}: enabled must be true or false")

        if problems:
            errors.extend(problems)
            continue

        seen_names.add(name)
        seen_ids.add(mapping_id)
        result.append(MappingSpec(
            id=mapping_id,
            name=name,
            source=str(entry["source"]),
            target=str(entry["target"]),
            extensions=_parse_extensions(entry.get("extensions")),
            concurrent=concurrent,
            mode=mode,
            content_mode=content_mode,
            cron=cron,
            enabled=enabled,
        ))

    if errors:
        raise ValueError("\n".join(errors))
    return tuple(result)
