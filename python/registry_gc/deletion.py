"""
Deletion executor: submits a deletion set to ECR in batches.

Each batch is one BatchDeleteImage call. Per-image rejections reported by the
registry are collected as failures and never stop the run. A batch that
fails as a whole is captured as a DeletionBatchError so the caller can
decide whether to resubmit it; the executor itself never retries.
"""

import logging
from typing import Iterator, List, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from registry_gc.ecr_client import MAX_BATCH_DELETE
from registry_gc.error_utils import DeletionBatchError, create_deletion_batch_error
from registry_gc.models import DeletionFailure, DeletionResult, Image, ImageIdentifier

# Deleting an already-absent digest is harmless
TOLERATED_FAILURE_CODES = {"ImageNotFound"}


def chunked(items: Sequence, size: int) -> Iterator[Sequence]:
    """Split a sequence into consecutive chunks of at most ``size`` items."""
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield items[start:start + size]


class DeletionExecutor:
    """Deletes images from one repository at a time, in fixed-size batches."""

    def __init__(self, client, batch_size: int = MAX_BATCH_DELETE, logger: Optional[logging.Logger] = None):
        if batch_size < 1 or batch_size > MAX_BATCH_DELETE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_DELETE}, got {batch_size}")
        self.client = client
        self.batch_size = batch_size
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    def delete_batch(self, repository: str, identifiers: Sequence[ImageIdentifier],
                     batch_number: Optional[int] = None) -> DeletionResult:
        """Submit a single batch.

        Raises:
            DeletionBatchError: if the call failed as a whole (transport or auth)
        """
        digests = [identifier.digest for identifier in identifiers]
        try:
            response = self.client.batch_delete(repository, identifiers)
        except (ClientError, BotoCoreError, ConnectionError, TimeoutError) as e:
            raise create_deletion_batch_error(repository, digests, e, batch_number=batch_number) from e

        result = DeletionResult()
        for image_id in response.get("imageIds", []):
            result.deletions.append(ImageIdentifier.from_ecr(image_id))
        for failure in response.get("failures", []):
            code = failure.get("failureCode", "Unknown")
            reason = failure.get("failureReason", "")
            identifier = ImageIdentifier.from_ecr(failure.get("imageId", {}))
            result.failures.append(DeletionFailure(identifier=identifier, code=code, reason=reason))
            if code in TOLERATED_FAILURE_CODES:
                self.logger.warning(f"{repository}: {identifier.digest[:16]}... already gone ({code}: {reason})")
            else:
                self.logger.error(f"{repository}: failed to delete {identifier.digest[:16]}... {code}: {reason}")
        return result

    def execute(self, repository: str, images: Sequence[Image]) -> DeletionResult:
        """Delete the given images by digest, batch by batch.

        Whole-batch failures land in ``result.batch_errors``; the remaining
        batches are still submitted.
        """
        identifiers: List[ImageIdentifier] = [ImageIdentifier(digest=image.digest) for image in images]
        result = DeletionResult()
        batches = list(chunked(identifiers, self.batch_size))

        for number, batch in enumerate(batches, 1):
            self.logger.debug(f"{repository}: submitting batch {number}/{len(batches)} ({len(batch)} images)")
            try:
                result.merge(self.delete_batch(repository, batch, batch_number=number))
            except DeletionBatchError as e:
                self.logger.error(f"{repository}: batch {number}/{len(batches)} failed: {e.message}")
                result.batch_errors.append(e)

        self.logger.info(
            f"{repository}: {len(result.deletions)} deleted, {len(result.failures)} failed, "
            f"{len(result.batch_errors)} batch errors"
        )
        return result
