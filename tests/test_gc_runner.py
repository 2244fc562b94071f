"""Unit tests for registry_gc/gc_runner.py"""

import json
import os
import tempfile
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import EndpointConnectionError

from conftest import make_image
from registry_gc.error_utils import CatalogFetchError
from registry_gc.gc_runner import RegistryGarbageCollector
from registry_gc.models import BATCH_FAILED_CODE, RetentionPolicy

ENDPOINT = "https://api.ecr.us-east-1.amazonaws.com"


def echo_success(repository, identifiers):
    return {"imageIds": [identifier.to_ecr() for identifier in identifiers], "failures": []}


@pytest.fixture
def catalog():
    """Fake catalog with two repositories"""
    images = {
        "web": [
            make_image("sha256:w1", pushed=1, size=100, repository="web"),
            make_image("sha256:w2", tags=["release-1"], pushed=2, repository="web"),
            make_image("sha256:w3", tags=["release-2"], pushed=3, repository="web"),
        ],
        "api": [
            make_image("sha256:a1", tags=["release-1"], pushed=1, repository="api"),
        ],
    }
    client = MagicMock()
    client.repositories.return_value = ["web", "api"]
    client.images.side_effect = lambda repo: list(images[repo])
    client.batch_delete.side_effect = echo_success
    return client


@pytest.fixture
def policy():
    return RetentionPolicy(delete_untagged=True, keep_counts={"release": 1})


class TestProcessRepository:
    """Tests for a single repository pass"""

    def test_dry_run_does_not_delete(self, fast_config, catalog, policy):
        gc = RegistryGarbageCollector(fast_config, catalog, policy, dry_run=True)

        report = gc.process_repository("web")

        catalog.batch_delete.assert_not_called()
        assert report.evaluated == 3
        assert report.marked == 2
        assert report.deleted == 0
        assert report.dry_run

    def test_deletes_marked_images(self, fast_config, catalog, policy):
        gc = RegistryGarbageCollector(fast_config, catalog, policy, dry_run=False)

        report = gc.process_repository("web")

        submitted = [i.digest for call in catalog.batch_delete.call_args_list for i in call.args[1]]
        assert submitted == ["sha256:w1", "sha256:w2"]
        assert report.deleted == 2
        assert report.failures == []
        assert report.ok

    def test_fetch_error_is_reported_not_raised(self, fast_config, catalog, policy):
        catalog.images.side_effect = CatalogFetchError("ECR DescribeImages failed", repository="web")
        gc = RegistryGarbageCollector(fast_config, catalog, policy, dry_run=False)

        report = gc.process_repository("web")

        assert report.error == "ECR DescribeImages failed"
        assert not report.ok
        catalog.batch_delete.assert_not_called()

    def test_item_failures_recorded(self, fast_config, catalog, policy):
        catalog.batch_delete.side_effect = lambda repo, ids: {
            "imageIds": [ids[0].to_ecr()],
            "failures": [
                {
                    "imageId": ids[1].to_ecr(),
                    "failureCode": "ImageReferencedByManifestList",
                    "failureReason": "in use",
                }
            ],
        }
        gc = RegistryGarbageCollector(fast_config, catalog, policy, dry_run=False)

        report = gc.process_repository("web")

        assert report.deleted == 1
        assert [f.code for f in report.failures] == ["ImageReferencedByManifestList"]

    def test_multi_tag_image_counts_once(self, fast_config):
        """ECR lists a digest once per removed tag; the report counts images"""
        client = MagicMock()
        client.images.return_value = [
            make_image("sha256:aaaa", tags=["build-1", "build-1-alias", "latest-x"], pushed=1),
            make_image("sha256:bbbb", tags=["build-2"], pushed=2),
        ]
        client.batch_delete.return_value = {
            "imageIds": [
                {"imageDigest": "sha256:aaaa", "imageTag": "build-1"},
                {"imageDigest": "sha256:aaaa", "imageTag": "build-1-alias"},
                {"imageDigest": "sha256:aaaa", "imageTag": "latest-x"},
            ],
            "failures": [],
        }
        policy = RetentionPolicy(keep_counts={"build": 1})
        gc = RegistryGarbageCollector(fast_config, client, policy, dry_run=False)

        report = gc.process_repository("repo")

        assert report.evaluated == 2
        assert report.marked == 1
        assert report.deleted == 1


class TestBatchRetries:
    """Tests for resubmitting failed batches"""

    def test_failed_batch_is_retried_then_succeeds(self, fast_config, catalog, policy):
        fast_config.override("deletion", "max_batch_retries", 3)
        attempts = []

        def flaky(repo, ids):
            attempts.append(ids)
            if len(attempts) == 1:
                raise EndpointConnectionError(endpoint_url=ENDPOINT)
            return echo_success(repo, ids)

        catalog.batch_delete.side_effect = flaky
        gc = RegistryGarbageCollector(fast_config, catalog, policy, dry_run=False)

        with patch("registry_gc.retry_utils.time.sleep"):
            report = gc.process_repository("web")

        assert len(attempts) == 2
        assert report.deleted == 2
        assert report.failures == []

    def test_batch_failing_every_attempt_marks_each_digest(self, fast_config, catalog, policy):
        fast_config.override("deletion", "max_batch_retries", 2)
        catalog.batch_delete.side_effect = EndpointConnectionError(endpoint_url=ENDPOINT)
        gc = RegistryGarbageCollector(fast_config, catalog, policy, dry_run=False)

        with patch("registry_gc.retry_utils.time.sleep"):
            report = gc.process_repository("web")

        # one submission by the executor plus two by the retry loop
        assert catalog.batch_delete.call_count == 3
        assert report.deleted == 0
        assert [(f.identifier.digest, f.code) for f in report.failures] == [
            ("sha256:w1", BATCH_FAILED_CODE),
            ("sha256:w2", BATCH_FAILED_CODE),
        ]

    def test_no_retries_configured(self, fast_config, catalog, policy):
        fast_config.override("deletion", "max_batch_retries", 0)
        catalog.batch_delete.side_effect = EndpointConnectionError(endpoint_url=ENDPOINT)
        gc = RegistryGarbageCollector(fast_config, catalog, policy, dry_run=False)

        report = gc.process_repository("web")

        assert catalog.batch_delete.call_count == 1
        assert len(report.failures) == 2


class TestRun:
    """Tests for the full concurrent run"""

    def test_processes_every_repository(self, fast_config, catalog, policy):
        gc = RegistryGarbageCollector(fast_config, catalog, policy, dry_run=True, max_workers=2)

        reports = gc.run()

        assert [r.repository for r in reports] == ["api", "web"]
        assert [r.marked for r in reports] == [0, 2]

    def test_one_failing_repository_does_not_stop_others(self, fast_config, catalog, policy):
        def images(repo):
            if repo == "api":
                raise CatalogFetchError("ECR DescribeImages failed", repository="api")
            return [make_image("sha256:w1", pushed=1, repository="web")]

        catalog.images.side_effect = images
        gc = RegistryGarbageCollector(fast_config, catalog, policy, dry_run=False)

        reports = {r.repository: r for r in gc.run()}

        assert reports["api"].error
        assert reports["web"].deleted == 1

    def test_unexpected_error_becomes_report(self, fast_config, catalog, policy):
        catalog.images.side_effect = RuntimeError("boom")
        gc = RegistryGarbageCollector(fast_config, catalog, policy, dry_run=True)

        reports = gc.run()

        assert all(r.error == "boom" for r in reports)

    def test_restricted_repositories(self, fast_config, catalog, policy):
        gc = RegistryGarbageCollector(fast_config, catalog, policy, repositories=["web"])

        reports = gc.run()

        catalog.repositories.assert_not_called()
        assert [r.repository for r in reports] == ["web"]

    def test_listing_failure_propagates(self, fast_config, catalog, policy):
        catalog.repositories.side_effect = CatalogFetchError("ECR DescribeRepositories failed")
        gc = RegistryGarbageCollector(fast_config, catalog, policy)

        with pytest.raises(CatalogFetchError):
            gc.run()


class TestSaveReport:
    """Tests for the JSON run report"""

    def test_writes_timestamped_report(self, fast_config, catalog, policy):
        gc = RegistryGarbageCollector(fast_config, catalog, policy, dry_run=True)
        reports = gc.run()

        with tempfile.TemporaryDirectory() as tmpdir:
            path = gc.save_report(reports, output_dir=tmpdir)

            assert os.path.basename(path).startswith("gc-report-")
            with open(path) as f:
                data = json.load(f)

        assert data["dry_run"] is True
        assert data["policy"] == {"delete_untagged": True, "keep": {"release": 1}, "max_images": None}
        assert [r["repository"] for r in data["repositories"]] == ["api", "web"]
