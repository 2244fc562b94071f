"""
ECR client for registry catalog and deletion operations.

This module wraps boto3's ECR API behind a small adapter that yields uniform
Image records, with support for rate limiting and retries. Reads are
idempotent and retried with backoff; batch deletion is submitted once and
failures are left to the caller.
"""

import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from registry_gc.error_utils import create_catalog_fetch_error
from registry_gc.models import Image, ImageIdentifier
from registry_gc.retry_utils import retry_with_backoff

# ECR BatchDeleteImage accepts at most this many image ids per call
MAX_BATCH_DELETE = 100

T = TypeVar("T")


class EcrClient:
    """Standardized ECR client for registry operations."""

    def __init__(self, config_manager, session: Optional[boto3.session.Session] = None, client: Any = None,
                 logger: Optional[logging.Logger] = None):
        """Initialize EcrClient.

        Args:
            config_manager: ConfigManager instance for accessing configuration
            session: boto3 session to build the ECR client from (defaults to a new session)
            client: Prebuilt ECR client, mostly for tests
            logger: Logger to report through (defaults to this module's logger)
        """
        self.config_manager = config_manager
        self.region = config_manager.get_region()
        self.registry_id = config_manager.get_registry_id()
        self.logger = logger or logging.getLogger(__name__)

        if client is None:
            session = session or boto3.session.Session()
            client = session.client("ecr", region_name=self.region)
        self.client = client

        # Rate limiting
        self.rate_limit_enabled = config_manager.get_rate_limit_enabled()
        self.rate_limit_rps = config_manager.get_rate_limit_rps()
        self.rate_limit_burst = config_manager.get_rate_limit_burst()
        self._rate_limiter_lock = Lock()

        if self.rate_limit_enabled:
            self._init_rate_limiter()

    def _init_rate_limiter(self):
        """Initialize token bucket rate limiter."""
        self._tokens = float(self.rate_limit_burst)
        self._last_update = time.time()
        self._token_refill_rate = self.rate_limit_rps

    def _acquire_rate_limit_token(self):
        """Acquire a token from the rate limiter, waiting if necessary."""
        if not self.rate_limit_enabled:
            return

        with self._rate_limiter_lock:
            now = time.time()
            elapsed = now - self._last_update

            # Refill tokens based on elapsed time
            self._tokens = min(self.rate_limit_burst, self._tokens + elapsed * self._token_refill_rate)
            self._last_update = now

            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return

            wait_time = (1.0 - self._tokens) / self._token_refill_rate

            if wait_time > 0:
                self.logger.debug(f"Rate limiting: waiting {wait_time:.2f}s (tokens: {self._tokens:.2f})")
                time.sleep(wait_time)
                self._tokens = 0.0
                self._last_update = time.time()

    def _registry_kwargs(self) -> Dict[str, str]:
        return {"registryId": self.registry_id} if self.registry_id else {}

    def _paginate(self, operation: str, result_key: str, **kwargs) -> List[Dict[str, Any]]:
        """Collect every item of a paginated ECR call, taking a token before each page request."""
        paginator = self.client.get_paginator(operation)
        items: List[Dict[str, Any]] = []
        self._acquire_rate_limit_token()
        for page in paginator.paginate(**self._registry_kwargs(), **kwargs):
            items.extend(page.get(result_key, []))
            # the paginator requests the next page only when a token came back
            if page.get("nextToken"):
                self._acquire_rate_limit_token()
        return items

    def _read(self, operation_name: str, func: Callable[[], T], repository: Optional[str] = None) -> T:
        """Run an idempotent read with retries, raising CatalogFetchError when it gives up."""

        @retry_with_backoff(
            max_retries=self.config_manager.get_max_retries(),
            initial_delay=self.config_manager.get_retry_initial_delay(),
            max_delay=self.config_manager.get_retry_max_delay(),
            exponential_base=self.config_manager.get_retry_exponential_base(),
            jitter=self.config_manager.get_retry_jitter(),
        )
        def _execute():
            return func()

        try:
            return _execute()
        except (ClientError, BotoCoreError) as e:
            raise create_catalog_fetch_error(operation_name, e, repository=repository, region=self.region) from e

    def repositories(self) -> List[str]:
        """List every repository name in the registry."""
        repos = self._read(
            "DescribeRepositories",
            lambda: self._paginate("describe_repositories", "repositories"),
        )
        names = [repo["repositoryName"] for repo in repos]
        self.logger.debug(f"Found {len(names)} repositories")
        return names

    def images(self, repository: str) -> List[Image]:
        """List every image in a repository."""
        details = self._read(
            "DescribeImages",
            lambda: self._paginate("describe_images", "imageDetails", repositoryName=repository),
            repository=repository,
        )
        images = [Image.from_ecr(detail, repository=repository) for detail in details]
        self.logger.debug(f"Found {len(images)} images in {repository}")
        return images

    def image_count(self, repository: str) -> int:
        """Count the image ids in a repository without describing each image."""
        image_ids = self._read(
            "ListImages",
            lambda: self._paginate("list_images", "imageIds", repositoryName=repository),
            repository=repository,
        )
        return len(image_ids)

    def batch_delete(self, repository: str, identifiers: Sequence[ImageIdentifier]) -> Dict[str, Any]:
        """Submit one BatchDeleteImage call and return the raw response.

        Raises:
            ValueError: if more than MAX_BATCH_DELETE identifiers are given
            botocore ClientError/BotoCoreError: if the call as a whole fails
        """
        if len(identifiers) > MAX_BATCH_DELETE:
            raise ValueError(f"BatchDeleteImage accepts at most {MAX_BATCH_DELETE} images, got {len(identifiers)}")
        self._acquire_rate_limit_token()
        return self.client.batch_delete_image(
            repositoryName=repository,
            imageIds=[identifier.to_ecr() for identifier in identifiers],
            **self._registry_kwargs(),
        )
