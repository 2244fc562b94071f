"""
Prometheus exporter for ECR image counts.

Serves two gauges on every scrape:
- ecr_up: whether listing the registry's repositories succeeded
- ecr_images{repository}: how many images each repository holds

Image counts are fetched concurrently, one request per repository, and the
scrape waits for all of them before answering.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Dict, Iterable, Optional, Tuple

from flask import Flask, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import GaugeMetricFamily

from registry_gc.error_utils import CatalogFetchError
from registry_gc.logging_utils import log_exception

NAMESPACE = "ecr"

LANDING_PAGE = """<html>
             <head><title>ECR Exporter</title></head>
             <body>
             <h1>ECR Exporter</h1>
             <p><a href='{path}'>Metrics</a></p>
             </body>
             </html>"""


def _up_family() -> GaugeMetricFamily:
    return GaugeMetricFamily(f"{NAMESPACE}_up", "Was the last query of ECR successful")


def _images_family() -> GaugeMetricFamily:
    return GaugeMetricFamily(
        f"{NAMESPACE}_images", "How many images are in the repository", labels=["repository"]
    )


class EcrCollector:
    """Custom collector that queries ECR on every scrape"""

    def __init__(self, client, max_workers: int = 4, logger: Optional[logging.Logger] = None):
        self.client = client
        self.max_workers = max_workers
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    def describe(self) -> Iterable[GaugeMetricFamily]:
        return [_up_family(), _images_family()]

    def count_images(self, repositories: Iterable[str]) -> Dict[str, int]:
        """Count images in every repository concurrently; failed repositories are left out."""
        counts: Dict[str, int] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            future_to_repo = {pool.submit(self.client.image_count, repo): repo for repo in repositories}
            for future in as_completed(future_to_repo):
                repo = future_to_repo[future]
                try:
                    counts[repo] = future.result()
                except CatalogFetchError as e:
                    self.logger.error(f"error counting images in {repo}: {e.message}")
                except Exception as e:
                    log_exception(self.logger, f"Unexpected error counting images in {repo}", e)
        return counts

    def collect(self) -> Iterable[GaugeMetricFamily]:
        up = _up_family()
        try:
            repositories = self.client.repositories()
        except CatalogFetchError as e:
            self.logger.error(f"error listing repositories: {e.message}")
            up.add_metric([], 0)
            yield up
            return

        counts = self.count_images(repositories)
        up.add_metric([], 1)
        yield up

        images = _images_family()
        for repo in sorted(counts):
            images.add_metric([repo], counts[repo])
        yield images


def create_app(collector: EcrCollector, telemetry_path: str = "/metrics") -> Flask:
    """Build the Flask app serving the collector's metrics."""
    registry = CollectorRegistry()
    registry.register(collector)

    app = Flask(__name__)

    def metrics():
        return Response(generate_latest(registry), headers={"Content-Type": CONTENT_TYPE_LATEST})

    app.add_url_rule(telemetry_path, "metrics", metrics)

    @app.route("/")
    def index():
        return LANDING_PAGE.format(path=telemetry_path)

    @app.route("/health")
    def health():
        """Health check endpoint"""
        return jsonify({"status": "healthy", "timestamp": datetime.now().isoformat()})

    return app


def parse_listen_address(address: str) -> Tuple[str, int]:
    """Split ``host:port`` (host optional, e.g. ``:8070``) into its parts."""
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"listen address must look like host:port, got: {address}")
    return host or "0.0.0.0", int(port)


def serve(app: Flask, listen_address: str) -> None:
    """Serve the app with waitress until interrupted."""
    from waitress import serve as waitress_serve

    host, port = parse_listen_address(listen_address)
    logging.info(f"Listening on {host}:{port}")
    waitress_serve(app, host=host, port=port)
