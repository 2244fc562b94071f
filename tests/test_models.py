"""Unit tests for registry_gc/models.py"""

from datetime import datetime, timezone

import pytest

from registry_gc.error_utils import ConfigurationError, DeletionBatchError
from registry_gc.models import (
    BATCH_FAILED_CODE,
    DeletionFailure,
    DeletionResult,
    Image,
    ImageIdentifier,
    RepositoryReport,
    RetentionPolicy,
    parse_keep_count,
    parse_keep_counts,
)


class TestImage:
    """Tests for the Image record"""

    def test_untagged_image(self):
        """Test that an image without tags is untagged"""
        image = Image(digest="sha256:a", tags=(), pushed_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert image.is_untagged

    def test_has_tag_prefix_matches_any_tag(self):
        """Test that a prefix matching any one tag counts"""
        image = Image(
            digest="sha256:a",
            tags=("latest", "release-7"),
            pushed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        assert not image.is_untagged
        assert image.has_tag_prefix("release")
        assert image.has_tag_prefix("lat")
        assert not image.has_tag_prefix("build")

    def test_empty_prefix_matches_tagged_images(self):
        """Test that the empty prefix matches any tag but not an untagged image"""
        tagged = Image(digest="sha256:a", tags=("x",), pushed_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        untagged = Image(digest="sha256:b", tags=(), pushed_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert tagged.has_tag_prefix("")
        assert not untagged.has_tag_prefix("")

    def test_from_ecr(self):
        """Test building an Image from a DescribeImages imageDetails entry"""
        pushed = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        image = Image.from_ecr(
            {
                "imageDigest": "sha256:abc",
                "imageTags": ["release-1", "latest"],
                "imagePushedAt": pushed,
                "imageSizeInBytes": 1024,
            },
            repository="web",
        )
        assert image.digest == "sha256:abc"
        assert image.tags == ("release-1", "latest")
        assert image.pushed_at == pushed
        assert image.size_bytes == 1024
        assert image.repository == "web"

    def test_from_ecr_untagged_and_naive_timestamp(self):
        """Test that missing tags become () and naive timestamps are treated as UTC"""
        image = Image.from_ecr({"imageDigest": "sha256:abc", "imagePushedAt": datetime(2024, 3, 1)})
        assert image.tags == ()
        assert image.pushed_at.tzinfo == timezone.utc


class TestImageIdentifier:
    """Tests for ImageIdentifier conversion"""

    def test_to_ecr_digest_only(self):
        assert ImageIdentifier("sha256:a").to_ecr() == {"imageDigest": "sha256:a"}

    def test_to_ecr_with_tag(self):
        assert ImageIdentifier("sha256:a", "v1").to_ecr() == {"imageDigest": "sha256:a", "imageTag": "v1"}

    def test_from_ecr(self):
        identifier = ImageIdentifier.from_ecr({"imageDigest": "sha256:a", "imageTag": "v1"})
        assert identifier == ImageIdentifier("sha256:a", "v1")


class TestDeletionResult:
    """Tests for DeletionResult bookkeeping"""

    def test_merge(self):
        """Test that merging concatenates deletions and failures"""
        first = DeletionResult(deletions=[ImageIdentifier("sha256:a")])
        second = DeletionResult(
            deletions=[ImageIdentifier("sha256:b")],
            failures=[DeletionFailure(ImageIdentifier("sha256:c"), "ImageNotFound", "gone")],
        )
        first.merge(second)
        assert [d.digest for d in first.deletions] == ["sha256:a", "sha256:b"]
        assert len(first.failures) == 1

    def test_images_deleted_counts_distinct_digests(self):
        """Test that tags removed from the same digest count as one image"""
        result = DeletionResult(
            deletions=[
                ImageIdentifier("sha256:a", tag="v1"),
                ImageIdentifier("sha256:a", tag="latest"),
                ImageIdentifier("sha256:b"),
            ]
        )
        assert len(result.deletions) == 3
        assert result.images_deleted == 2

    def test_record_batch_failure(self):
        """Test that every digest of a failed batch becomes a BatchFailed failure"""
        error = DeletionBatchError("batch failed", repository="repo", digests=["sha256:a", "sha256:b"])
        result = DeletionResult()
        result.record_batch_failure(error)

        assert [f.identifier.digest for f in result.failures] == ["sha256:a", "sha256:b"]
        assert all(f.code == BATCH_FAILED_CODE for f in result.failures)
        assert all(f.reason == "batch failed" for f in result.failures)


class TestRetentionPolicy:
    """Tests for RetentionPolicy validation"""

    def test_defaults_are_empty(self):
        assert RetentionPolicy().is_empty()

    def test_not_empty_with_any_rule(self):
        assert not RetentionPolicy(delete_untagged=True).is_empty()
        assert not RetentionPolicy(keep_counts={"release": 1}).is_empty()
        assert not RetentionPolicy(max_images=0).is_empty()

    @pytest.mark.parametrize("count", [-1, 1.5, "3", True])
    def test_rejects_invalid_keep_count(self, count):
        """Test that keep counts must be non-negative integers"""
        with pytest.raises(ConfigurationError):
            RetentionPolicy(keep_counts={"release": count})

    @pytest.mark.parametrize("max_images", [-1, 2.0, False])
    def test_rejects_invalid_max_images(self, max_images):
        with pytest.raises(ConfigurationError):
            RetentionPolicy(max_images=max_images)

    def test_rejects_non_bool_delete_untagged(self):
        with pytest.raises(ConfigurationError):
            RetentionPolicy(delete_untagged="yes")

    def test_keep_counts_are_copied(self):
        """Test that changing the caller's dict doesn't change the policy"""
        keep = {"release": 2}
        policy = RetentionPolicy(keep_counts=keep)
        keep["build"] = 1
        assert policy.keep_counts == {"release": 2}

    def test_describe_and_to_dict(self):
        policy = RetentionPolicy(delete_untagged=True, keep_counts={"release": 4, "build": 8}, max_images=900)
        assert policy.describe() == "delete_untagged=True keep={build=8, release=4} max_images=900"
        assert policy.to_dict() == {
            "delete_untagged": True,
            "keep": {"release": 4, "build": 8},
            "max_images": 900,
        }


class TestRepositoryReport:
    """Tests for RepositoryReport"""

    def test_ok_without_error_or_failures(self):
        assert RepositoryReport(repository="web").ok

    def test_not_ok_with_error(self):
        assert not RepositoryReport(repository="web", error="boom").ok

    def test_to_dict_flattens_failures(self):
        failure = DeletionFailure(ImageIdentifier("sha256:a"), "ImageNotFound", "gone")
        report = RepositoryReport(repository="web", evaluated=3, marked=1, failures=[failure], dry_run=False)
        data = report.to_dict()
        assert data["repository"] == "web"
        assert data["failures"] == [{"digest": "sha256:a", "tag": None, "code": "ImageNotFound", "reason": "gone"}]
        assert data["dry_run"] is False


class TestParseKeepCount:
    """Tests for PREFIX=COUNT parsing"""

    def test_parses_prefix_and_count(self):
        assert parse_keep_count("release=4") == ("release", 4)

    def test_empty_prefix_is_allowed(self):
        assert parse_keep_count("=3") == ("", 3)

    def test_missing_separator(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_keep_count("release")
        assert "PREFIX=COUNT" in exc_info.value.message

    @pytest.mark.parametrize("value", ["release=", "release=-1", "release=abc", "release=1.5"])
    def test_invalid_count(self, value):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_keep_count(value)
        assert "non-negative integer" in exc_info.value.message

    def test_parse_keep_counts_last_wins(self):
        assert parse_keep_counts(["release=4", "build=8", "release=2"]) == {"release": 2, "build": 8}
