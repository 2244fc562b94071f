"""
Data model shared by the catalog adapter, the retention engine and the deletion executor.

Images are fetched fresh every run and never mutated; retention policies are
validated once at construction; deletion results are built per repository pass.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from registry_gc.error_utils import ConfigurationError, DeletionBatchError, create_config_error

# Failure code used when a whole batch could not be submitted
BATCH_FAILED_CODE = "BatchFailed"


@dataclass(frozen=True)
class Image:
    """A single image in a repository, identified by its digest."""

    digest: str
    tags: Tuple[str, ...]
    pushed_at: datetime
    size_bytes: Optional[int] = None
    repository: Optional[str] = None

    @property
    def is_untagged(self) -> bool:
        return not self.tags

    def has_tag_prefix(self, prefix: str) -> bool:
        return any(tag.startswith(prefix) for tag in self.tags)

    @classmethod
    def from_ecr(cls, detail: Mapping[str, Any], repository: Optional[str] = None) -> "Image":
        """Build an Image from an ECR DescribeImages ``imageDetails`` entry."""
        pushed_at = detail["imagePushedAt"]
        if pushed_at.tzinfo is None:
            pushed_at = pushed_at.replace(tzinfo=timezone.utc)
        return cls(
            digest=detail["imageDigest"],
            tags=tuple(detail.get("imageTags") or ()),
            pushed_at=pushed_at,
            size_bytes=detail.get("imageSizeInBytes"),
            repository=repository or detail.get("repositoryName"),
        )


@dataclass(frozen=True)
class ImageIdentifier:
    """What gets submitted for deletion. Deleting by digest removes every tag on it."""

    digest: str
    tag: Optional[str] = None

    def to_ecr(self) -> Dict[str, str]:
        ecr_id = {"imageDigest": self.digest}
        if self.tag:
            ecr_id["imageTag"] = self.tag
        return ecr_id

    @classmethod
    def from_ecr(cls, image_id: Mapping[str, Any]) -> "ImageIdentifier":
        return cls(digest=image_id.get("imageDigest", ""), tag=image_id.get("imageTag"))


@dataclass(frozen=True)
class DeletionFailure:
    """A registry-reported failure for one image."""

    identifier: ImageIdentifier
    code: str
    reason: str


@dataclass
class DeletionResult:
    """Outcome of submitting a deletion set for one repository.

    ``batch_errors`` holds whole-batch failures the caller has not resolved
    yet; they are kept apart from per-item ``failures``.
    """

    deletions: List[ImageIdentifier] = field(default_factory=list)
    failures: List[DeletionFailure] = field(default_factory=list)
    batch_errors: List[DeletionBatchError] = field(default_factory=list)

    @property
    def images_deleted(self) -> int:
        """Distinct digests removed; ECR lists a digest once per tag it untagged."""
        return len({identifier.digest for identifier in self.deletions})

    def merge(self, other: "DeletionResult") -> None:
        self.deletions.extend(other.deletions)
        self.failures.extend(other.failures)
        self.batch_errors.extend(other.batch_errors)

    def record_batch_failure(self, error: DeletionBatchError) -> None:
        """Record every digest of a failed batch as a permanent failure."""
        for digest in error.digests:
            self.failures.append(
                DeletionFailure(
                    identifier=ImageIdentifier(digest=digest),
                    code=BATCH_FAILED_CODE,
                    reason=error.message,
                )
            )


@dataclass(frozen=True)
class RetentionPolicy:
    """Retention rules for one run.

    Attributes:
        delete_untagged: Every untagged image is a deletion candidate.
        keep_counts: Tag prefix -> number of most recently pushed matching images to keep.
        max_images: Global cap on images per repository; None disables it.
    """

    delete_untagged: bool = False
    keep_counts: Mapping[str, int] = field(default_factory=dict)
    max_images: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.delete_untagged, bool):
            raise create_config_error("delete_untagged", self.delete_untagged, "must be true or false")
        for prefix, count in self.keep_counts.items():
            if not isinstance(prefix, str):
                raise create_config_error("keep", prefix, "tag prefix must be a string")
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise create_config_error(f"keep.{prefix}", count, "count must be a non-negative integer")
        if self.max_images is not None:
            if isinstance(self.max_images, bool) or not isinstance(self.max_images, int) or self.max_images < 0:
                raise create_config_error("max_images", self.max_images, "must be a non-negative integer")
        # Freeze a private copy so callers can't change the rules mid-run
        object.__setattr__(self, "keep_counts", dict(self.keep_counts))

    def is_empty(self) -> bool:
        return not self.delete_untagged and not self.keep_counts and self.max_images is None

    def describe(self) -> str:
        keep = ", ".join(f"{prefix}={count}" for prefix, count in sorted(self.keep_counts.items()))
        cap = self.max_images if self.max_images is not None else "none"
        return f"delete_untagged={self.delete_untagged} keep={{{keep}}} max_images={cap}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delete_untagged": self.delete_untagged,
            "keep": dict(self.keep_counts),
            "max_images": self.max_images,
        }


@dataclass
class RepositoryReport:
    """What happened to one repository during a run."""

    repository: str
    evaluated: int = 0
    marked: int = 0
    deleted: int = 0
    failures: List[DeletionFailure] = field(default_factory=list)
    error: Optional[str] = None
    dry_run: bool = True

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failures

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["failures"] = [
            {"digest": f.identifier.digest, "tag": f.identifier.tag, "code": f.code, "reason": f.reason}
            for f in self.failures
        ]
        return data


def parse_keep_count(value: str) -> Tuple[str, int]:
    """Parse a ``PREFIX=COUNT`` keep rule, e.g. ``release=4``.

    Raises:
        ConfigurationError: if the value is not of that form or COUNT is not a non-negative integer
    """
    prefix, sep, count_str = value.partition("=")
    if not sep:
        raise ConfigurationError(
            f"Invalid keep rule '{value}': expected PREFIX=COUNT e.g. release=4",
            suggestions=["Write keep rules as PREFIX=COUNT, e.g. --keep release=4 --keep build=8"],
            details={"value": value},
        )
    count_str = count_str.strip()
    if not (count_str.isascii() and count_str.isdigit()):
        raise ConfigurationError(
            f"Invalid keep rule '{value}': expected N in {prefix}=N to be a non-negative integer",
            suggestions=["Use a whole number of images to keep, e.g. release=4"],
            details={"value": value},
        )
    return prefix, int(count_str)


def parse_keep_counts(values) -> Dict[str, int]:
    """Parse several ``PREFIX=COUNT`` rules; a repeated prefix takes the last count."""
    keep_counts: Dict[str, int] = {}
    for value in values or ():
        prefix, count = parse_keep_count(value)
        keep_counts[prefix] = count
    return keep_counts
