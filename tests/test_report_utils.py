"""Unit tests for registry_gc/report_utils.py"""

import json
import os
import tempfile
from datetime import datetime, timezone
from enum import Enum

from conftest import make_image
from registry_gc.models import DeletionFailure, DeletionResult, ImageIdentifier, RepositoryReport
from registry_gc.report_utils import (
    add_timestamp_to_path,
    format_deletion_result,
    format_images,
    save_json,
    sizeof_fmt,
    summary_table,
)


class TestSizeofFmt:
    """Tests for sizeof_fmt"""

    def test_bytes(self):
        assert sizeof_fmt(512) == "512.0B"

    def test_mebibytes(self):
        assert sizeof_fmt(5 * 1024 * 1024) == "5.0MiB"


class TestFormatImages:
    """Tests for format_images"""

    def test_lists_each_image(self):
        images = [
            make_image("sha256:0123456789abcdef0123", tags=["release-1", "latest"], pushed=0),
            make_image("sha256:fedcba9876543210fedc", pushed=60),
        ]

        text = format_images("Images to delete", images)

        lines = text.splitlines()
        assert lines[0] == "Images to delete (2)"
        assert lines[1] == "  2024-01-01 00:00:00: sha256:012345678... [release-1, latest]"
        assert lines[2] == "  2024-01-01 00:01:00: sha256:fedcba987... []"


class TestFormatDeletionResult:
    """Tests for format_deletion_result"""

    def test_deletions_and_failures(self):
        result = DeletionResult(
            deletions=[ImageIdentifier("sha256:aaaaaaaaaaaaaaaa")],
            failures=[DeletionFailure(ImageIdentifier("sha256:bbbbbbbbbbbbbbbb"), "ImageNotFound", "gone")],
        )

        text = format_deletion_result(result)

        assert "Deleted (1)" in text
        assert "Failures (1)" in text
        assert "ImageNotFound: gone" in text


class TestSummaryTable:
    """Tests for summary_table"""

    def test_statuses_and_total(self):
        failure = DeletionFailure(ImageIdentifier("sha256:a"), "ImageReferencedByManifestList", "in use")
        reports = [
            RepositoryReport("web", evaluated=10, marked=4, deleted=4, dry_run=False),
            RepositoryReport("api", evaluated=5, marked=2, deleted=1, failures=[failure], dry_run=False),
            RepositoryReport("jobs", error="ECR DescribeImages failed", dry_run=False),
            RepositoryReport("docs", evaluated=3, marked=1),
        ]

        table = summary_table(reports)

        rows = {line.split("|")[1].strip(): line for line in table.splitlines() if line.startswith("|")}
        assert "ok" in rows["web"]
        assert "partial" in rows["api"]
        assert "fetch error" in rows["jobs"]
        assert "dry run" in rows["docs"]
        total = [cell.strip() for cell in rows["TOTAL"].split("|")[2:6]]
        assert total == ["18", "7", "5", "1"]


class TestAddTimestampToPath:
    """Tests for add_timestamp_to_path"""

    def test_inserts_before_extension(self):
        path = add_timestamp_to_path("reports/gc-report.json", timestamp="2024-01-01-00-00-00")
        assert path == os.path.join("reports", "gc-report-2024-01-01-00-00-00.json")


class TestSaveJson:
    """Tests for save_json function"""

    def test_save_simple_dict(self):
        """Test saving a simple dictionary"""
        with tempfile.TemporaryDirectory() as tmpdir:
            file_path = os.path.join(tmpdir, "test.json")
            data = {"key1": "value1", "key2": 42}

            save_json(file_path, data)

            assert os.path.exists(file_path)
            with open(file_path, 'r') as f:
                loaded = json.load(f)
            assert loaded == data

    def test_creates_parent_directories(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            file_path = os.path.join(tmpdir, "nested", "dir", "test.json")
            save_json(file_path, [1, 2, 3])
            assert os.path.exists(file_path)

    def test_timestamp_adds_suffix(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = save_json(os.path.join(tmpdir, "gc-report.json"), {}, timestamp=True)
            name = os.path.basename(path)
            assert name.startswith("gc-report-")
            assert name.endswith(".json")
            assert name != "gc-report.json"

    def test_converts_models_and_datetimes(self):
        class Color(Enum):
            RED = "red"

        data = {
            "report": RepositoryReport("web", evaluated=1),
            "when": datetime(2024, 1, 1, tzinfo=timezone.utc),
            "color": Color.RED,
            "digests": {"sha256:b", "sha256:a"},
        }

        with tempfile.TemporaryDirectory() as tmpdir:
            file_path = save_json(os.path.join(tmpdir, "test.json"), data)
            with open(file_path) as f:
                loaded = json.load(f)

        assert loaded["report"]["repository"] == "web"
        assert loaded["when"] == "2024-01-01T00:00:00+00:00"
        assert loaded["color"] == "red"
        assert loaded["digests"] == ["sha256:a", "sha256:b"]
