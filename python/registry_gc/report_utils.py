"""
Utility functions for report formatting and saving.

This module provides functions to:
- Format image listings and deletion results for logs
- Render a per-repository summary table
- Save run reports as timestamped JSON
"""
import json
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, List, Optional

from tabulate import tabulate

from registry_gc.logging_utils import get_logger
from registry_gc.models import DeletionResult, Image, RepositoryReport

logger = get_logger(__name__)

DIGEST_DISPLAY_LENGTH = 16


# ============================================================================
# Formatting Utilities
# ============================================================================

def sizeof_fmt(num: float, suffix: str = "B") -> str:
    """Format bytes into human-readable size.

    Args:
        num: Number of bytes
        suffix: Suffix to append (default: "B")

    Returns:
        Formatted string like "1.5GiB", "500MiB", etc.
    """
    for unit in ("", "Ki", "Mi", "Gi", "Ti", "Pi", "Ei", "Zi"):
        if abs(num) < 1024.0:
            return f"{num:3.1f}{unit}{suffix}"
        num /= 1024.0
    return f"{num:.1f}Yi{suffix}"


def short_digest(digest: str) -> str:
    return f"{digest[:DIGEST_DISPLAY_LENGTH]}..."


def format_images(heading: str, images: List[Image]) -> str:
    """Render a heading plus one line per image: push time, short digest, tags."""
    lines = [f"{heading} ({len(images)})"]
    for image in images:
        lines.append(
            f"  {image.pushed_at.strftime('%Y-%m-%d %H:%M:%S')}: "
            f"{short_digest(image.digest)} [{', '.join(image.tags)}]"
        )
    return "\n".join(lines)


def format_deletion_result(result: DeletionResult) -> str:
    """Render the deleted and failed identifiers of a deletion result."""
    lines = [f"Deleted ({len(result.deletions)})"]
    for identifier in result.deletions:
        lines.append(f"  {short_digest(identifier.digest)} ({identifier.tag or ''})")
    lines.append(f"Failures ({len(result.failures)})")
    for failure in result.failures:
        lines.append(f"  {short_digest(failure.identifier.digest)} {failure.code}: {failure.reason}")
    return "\n".join(lines)


def summary_table(reports: Iterable[RepositoryReport]) -> str:
    """Render a grid table summarising every repository of a run."""
    headers = ["Repository", "Evaluated", "Marked", "Deleted", "Failures", "Status"]
    rows = []
    total = [0, 0, 0, 0]
    for report in reports:
        if report.error:
            status = "fetch error"
        elif report.dry_run:
            status = "dry run"
        elif report.failures:
            status = "partial"
        else:
            status = "ok"
        counts = [report.evaluated, report.marked, report.deleted, len(report.failures)]
        total = [a + b for a, b in zip(total, counts)]
        rows.append([report.repository, *counts, status])
    rows.append(["TOTAL", *total, ""])
    return tabulate(rows, headers=headers, tablefmt="grid")


# ============================================================================
# Timestamp Utilities
# ============================================================================

def get_timestamp_suffix() -> str:
    """
    Generate a timestamp suffix for report filenames.

    Returns:
        String in format: YYYY-MM-DD-HH-MM-SS
    """
    return datetime.now().strftime("%Y-%m-%d-%H-%M-%S")


def add_timestamp_to_path(path: str, timestamp: Optional[str] = None) -> str:
    """
    Add a timestamp to a file path before the extension.

    Args:
        path: Original file path (e.g., 'reports/gc-report.json')
        timestamp: Optional timestamp string (defaults to current time)

    Returns:
        Path with timestamp inserted (e.g., 'reports/gc-report-2026-01-15-14-30-00.json')
    """
    if timestamp is None:
        timestamp = get_timestamp_suffix()

    p = Path(path)
    return str(p.parent / f"{p.stem}-{timestamp}{p.suffix}")


# ============================================================================
# Report Saving Functions
# ============================================================================

def _to_jsonable(data: Any) -> Any:
    """Recursively convert values json can't serialize.

    Converts:
    - dataclasses to dicts (using to_dict() where defined)
    - datetime/date objects to ISO format strings
    - set/frozenset/tuple to lists (sets sorted for deterministic output)
    - Enum members to their values
    """
    if hasattr(data, "to_dict"):
        return _to_jsonable(data.to_dict())
    if is_dataclass(data) and not isinstance(data, type):
        return _to_jsonable(asdict(data))
    if isinstance(data, (datetime, date)):
        return data.isoformat()
    if isinstance(data, Enum):
        return data.value
    if isinstance(data, (set, frozenset)):
        try:
            return [_to_jsonable(item) for item in sorted(data)]
        except TypeError:
            return [_to_jsonable(item) for item in data]
    if isinstance(data, (list, tuple)):
        return [_to_jsonable(item) for item in data]
    if isinstance(data, dict):
        return {str(key): _to_jsonable(value) for key, value in data.items()}
    return data


def save_json(path: str, data: Any, timestamp: bool = False) -> str:
    """
    Write JSON data to a file with indentation.

    Args:
        path: Path to save the JSON file
        data: Data to save
        timestamp: If True, add timestamp to filename (default: False)

    Returns:
        Path to the saved file
    """
    if timestamp:
        path = add_timestamp_to_path(path)

    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(_to_jsonable(data), f, indent=2)

    logger.info(f"Saved report to {path}")
    return path
