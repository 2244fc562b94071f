"""
Registry garbage collection run.

Ties the catalog adapter, retention engine and deletion executor together:
every repository gets its own pass (fetch images, compute the deletion set,
delete) on a bounded worker pool, and the run waits for all passes before
summarising. A repository whose images cannot be listed is reported and
skipped; the others carry on.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Sequence

from registry_gc.deletion import DeletionExecutor
from registry_gc.error_utils import CatalogFetchError, DeletionBatchError
from registry_gc.logging_utils import log_exception
from registry_gc.models import DeletionResult, ImageIdentifier, RepositoryReport, RetentionPolicy
from registry_gc.report_utils import format_deletion_result, format_images, save_json, sizeof_fmt, summary_table
from registry_gc.retention import Action, compute_deletion_set, deletion_rule_counts, explain_decisions
from registry_gc.retry_utils import retry_operation


class RegistryGarbageCollector:
    """Applies a retention policy to every repository of a registry"""

    def __init__(
        self,
        config_manager,
        client,
        policy: RetentionPolicy,
        dry_run: bool = True,
        repositories: Optional[Sequence[str]] = None,
        max_workers: Optional[int] = None,
        executor: Optional[DeletionExecutor] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize the garbage collector

        Args:
            config_manager: ConfigManager instance for retry and output settings
            client: Catalog adapter (EcrClient)
            policy: Retention policy to apply
            dry_run: If True, compute and report deletions without deleting
            repositories: Restrict the run to these repositories (default: all)
            max_workers: Concurrent repository passes (default: from config)
            executor: Deletion executor (default: built from config)
            logger: Logger to report through
        """
        self.config_manager = config_manager
        self.client = client
        self.policy = policy
        self.dry_run = dry_run
        self.repositories = list(repositories or [])
        self.max_workers = max_workers or config_manager.get_max_workers()
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.executor = executor or DeletionExecutor(
            client, batch_size=config_manager.get_batch_size(), logger=self.logger
        )

    def resolve_repositories(self) -> List[str]:
        """Repositories to process; listing them failing aborts the run.

        Raises:
            CatalogFetchError: if the registry's repositories cannot be listed
        """
        if self.repositories:
            return list(self.repositories)
        return self.client.repositories()

    def _retry_batch(self, repository: str, error: DeletionBatchError) -> DeletionResult:
        """Resubmit a failed batch; digests of a batch that never succeeds become failures."""
        retries = self.config_manager.get_max_batch_retries()
        identifiers = [ImageIdentifier(digest=digest) for digest in error.digests]
        result = DeletionResult()

        if retries < 1:
            result.record_batch_failure(error)
            return result

        try:
            result.merge(
                retry_operation(
                    lambda: self.executor.delete_batch(repository, identifiers),
                    max_retries=retries - 1,
                    initial_delay=self.config_manager.get_retry_initial_delay(),
                    max_delay=self.config_manager.get_retry_max_delay(),
                    exponential_base=self.config_manager.get_retry_exponential_base(),
                    jitter=self.config_manager.get_retry_jitter(),
                    operation_name=f"delete batch in {repository}",
                )
            )
        except DeletionBatchError as final_error:
            self.logger.error(f"{repository}: giving up on batch of {len(identifiers)} images")
            result.record_batch_failure(final_error)
        return result

    def delete(self, repository: str, images) -> DeletionResult:
        """Run the executor and settle any whole-batch failures."""
        result = self.executor.execute(repository, images)
        batch_errors, result.batch_errors = result.batch_errors, []
        for error in batch_errors:
            result.merge(self._retry_batch(repository, error))
        return result

    def process_repository(self, repository: str) -> RepositoryReport:
        """One garbage collection pass over a single repository."""
        report = RepositoryReport(repository=repository, dry_run=self.dry_run)

        try:
            images = self.client.images(repository)
        except CatalogFetchError as e:
            self.logger.error(f"Skipping {repository}: {e.message}")
            report.error = e.message
            return report

        report.evaluated = len(images)
        decisions = explain_decisions(images, self.policy)
        to_delete = compute_deletion_set(images, self.policy)
        report.marked = len(to_delete)

        for decision in sorted(decisions.values(), key=lambda d: (d.image.pushed_at, d.image.digest)):
            self.logger.debug(
                f"{repository}: {decision.action.value.upper():6} {decision.image.digest[:16]}... "
                f"[{', '.join(decision.image.tags)}] ({decision.rule})"
            )

        reclaimable = sum(image.size_bytes or 0 for image in to_delete)
        rules = deletion_rule_counts(decisions, Action.DELETE)
        self.logger.info(
            f"{repository}: {report.evaluated} images evaluated, {report.marked} marked for deletion "
            f"({sizeof_fmt(reclaimable)}) {rules or ''}".rstrip()
        )

        if not to_delete:
            return report

        self.logger.info(f"{repository}\n" + format_images("Images to delete", to_delete))

        if self.dry_run:
            return report

        result = self.delete(repository, to_delete)
        report.deleted = result.images_deleted
        report.failures = list(result.failures)
        self.logger.info(f"{repository}\n" + format_deletion_result(result))
        return report

    def run(self) -> List[RepositoryReport]:
        """Process every repository concurrently and wait for all of them.

        Raises:
            CatalogFetchError: if the repository list cannot be fetched
        """
        repositories = self.resolve_repositories()
        mode = "DRY RUN" if self.dry_run else "DELETE"
        self.logger.info(
            f"[{mode}] Garbage collecting {len(repositories)} repositories with policy: {self.policy.describe()}"
        )

        reports: Dict[str, RepositoryReport] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            future_to_repo = {pool.submit(self.process_repository, repo): repo for repo in repositories}
            for future in as_completed(future_to_repo):
                repo = future_to_repo[future]
                try:
                    reports[repo] = future.result()
                except Exception as e:
                    log_exception(self.logger, f"Unexpected error processing {repo}", e)
                    reports[repo] = RepositoryReport(repository=repo, error=str(e), dry_run=self.dry_run)

        ordered = [reports[repo] for repo in sorted(reports)]
        self.logger.info("\n" + summary_table(ordered))
        return ordered

    def save_report(self, reports: List[RepositoryReport], output_dir: Optional[str] = None) -> str:
        """Write the run report to a timestamped JSON file and return its path."""
        output_dir = output_dir or self.config_manager.get_output_dir()
        return save_json(
            os.path.join(output_dir, "gc-report.json"),
            {
                "dry_run": self.dry_run,
                "policy": self.policy.to_dict(),
                "repositories": reports,
            },
            timestamp=True,
        )
