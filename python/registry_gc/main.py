#!/usr/bin/env python3
"""
Command line entry point for the ECR registry garbage collector.

Subcommands:
  gc        Apply the retention policy to every repository (dry run by default)
  exporter  Serve per-repository image counts as Prometheus metrics
  config    Print the effective configuration
"""

import argparse
import logging
import sys
from typing import List, Optional, Tuple

from registry_gc import __version__
from registry_gc.auth import CredentialWaitOutcome, create_session, provider_from_environment, wait_for_credentials
from registry_gc.config_manager import ConfigManager
from registry_gc.ecr_client import EcrClient
from registry_gc.error_utils import CatalogFetchError, ConfigurationError, CredentialError
from registry_gc.gc_runner import RegistryGarbageCollector
from registry_gc.logging_utils import get_logger, setup_logging
from registry_gc.metrics_exporter import EcrCollector, create_app, serve
from registry_gc.models import parse_keep_count

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def keep_rule(value: str) -> Tuple[str, int]:
    """argparse type for --keep PREFIX=COUNT"""
    try:
        return parse_keep_count(value)
    except ConfigurationError as e:
        raise argparse.ArgumentTypeError(e.message)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="registry-gc",
        description="Garbage collect images in AWS ECR according to a retention policy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show what would be deleted (dry run is the default)
  registry-gc gc --delete-untagged --keep release=4 --keep build=8

  # Cap every repository at 900 images and actually delete
  registry-gc gc --max-images 900 --keep release=4 --apply

  # Only one repository
  registry-gc gc --repo web-express --keep release=4

  # Serve image counts for Prometheus
  registry-gc exporter --web.listen-address :8070 --aws.region us-west-2
        """,
    )
    parser.add_argument("--version", action="version", version=f"registry-gc {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="Path to config.yaml (default: CONFIG_FILE env var or ./config.yaml)")
    common.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help="Log level (default: logging.level from config or LOG_LEVEL)",
    )
    common.add_argument("--debug", action="store_true", help="Shorthand for --log-level DEBUG")

    subparsers = parser.add_subparsers(dest="command", required=True)

    gc_parser = subparsers.add_parser("gc", parents=[common], help="Apply the retention policy to the registry")
    gc_parser.add_argument(
        "--repo",
        action="append",
        dest="repositories",
        metavar="NAME",
        help="ECR repository to process; repeat for several (default: all repositories)",
    )
    untagged = gc_parser.add_mutually_exclusive_group()
    untagged.add_argument(
        "--delete-untagged",
        action="store_const",
        const=True,
        dest="delete_untagged",
        help="Delete untagged images",
    )
    untagged.add_argument(
        "--keep-untagged",
        action="store_const",
        const=False,
        dest="delete_untagged",
        help="Keep untagged images even when retention.delete_untagged is set in config",
    )
    gc_parser.add_argument(
        "--keep",
        action="append",
        type=keep_rule,
        metavar="PREFIX=COUNT",
        help="Keep the COUNT most recent images with a tag starting with PREFIX, e.g. --keep release=4 --keep build=8",
    )
    gc_parser.add_argument(
        "--max-images",
        type=int,
        metavar="N",
        help="Delete the oldest unprotected images beyond N images per repository",
    )
    mode = gc_parser.add_mutually_exclusive_group()
    mode.add_argument("--apply", action="store_true", help="Actually delete images (default is a dry run)")
    mode.add_argument("--dry-run", action="store_true", help="Only report what would be deleted")
    gc_parser.add_argument("--max-workers", type=int, help="Repositories processed in parallel")
    gc_parser.add_argument("--region", help="AWS region (default: ECR_REGION, AWS_DEFAULT_REGION or config)")
    gc_parser.add_argument("--registry-id", help="ECR registry id (default: the caller's account)")

    exporter_parser = subparsers.add_parser("exporter", parents=[common], help="Serve image counts as Prometheus metrics")
    exporter_parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        help="Address to listen on for web interface and telemetry (default: 0.0.0.0:8070)",
    )
    exporter_parser.add_argument(
        "--web.telemetry-path",
        dest="telemetry_path",
        help="Path under which to expose metrics (default: /metrics)",
    )
    exporter_parser.add_argument("--aws.region", dest="region", help="The AWS region")
    exporter_parser.add_argument("--aws.registry-id", dest="registry_id", help="The AWS registry id")

    subparsers.add_parser("config", parents=[common], help="Print the effective configuration")

    return parser


def cli_log_level(args: argparse.Namespace) -> Optional[str]:
    if args.debug:
        return "DEBUG"
    return args.log_level


def load_config(args: argparse.Namespace) -> ConfigManager:
    """Load config.yaml, layer command line values on top and validate."""
    config = ConfigManager(config_file=args.config, validate=False)
    config.override("logging", "level", cli_log_level(args))
    config.override("registry", "region", getattr(args, "region", None))
    config.override("registry", "registry_id", getattr(args, "registry_id", None))
    config.override("analysis", "max_workers", getattr(args, "max_workers", None))
    config.override("web", "listen_address", getattr(args, "listen_address", None))
    config.override("web", "telemetry_path", getattr(args, "telemetry_path", None))
    config.validate_config()
    return config


def build_client(config: ConfigManager, logger: logging.Logger) -> EcrClient:
    """Create the ECR client, waiting for Vault-issued credentials when needed.

    Raises:
        CredentialError: if credentials can't be obtained or never become valid
    """
    provider = provider_from_environment()
    session = create_session(provider, config.get_region())
    client = EcrClient(config, session=session, logger=logger)

    if config.is_vault_enabled():
        def credentials_work() -> bool:
            client.repositories()
            return True

        outcome = wait_for_credentials(
            credentials_work,
            timeout=config.get_credentials_wait_timeout(),
            poll_interval=config.get_credentials_poll_interval(),
        )
        if outcome is CredentialWaitOutcome.TIMED_OUT:
            raise CredentialError(
                "timed out waiting for IAM creds",
                suggestions=[
                    "Increase credentials.wait_timeout; new IAM users can take a while to propagate",
                    "Check the Vault AWS role grants ECR permissions",
                ],
            )
    return client


def run_gc(args: argparse.Namespace, config: ConfigManager, logger: logging.Logger) -> int:
    keep_counts = dict(args.keep or [])
    policy = config.get_retention_policy(
        delete_untagged=args.delete_untagged,
        keep_counts=keep_counts,
        max_images=args.max_images,
    )
    if policy.is_empty():
        logger.warning("No retention rules configured; nothing will be deleted")

    dry_run = args.dry_run or (config.is_dry_run_by_default() and not args.apply)
    repositories = args.repositories or config.get_repositories()

    client = build_client(config, logger)
    collector = RegistryGarbageCollector(
        config,
        client,
        policy,
        dry_run=dry_run,
        repositories=repositories,
        logger=logger,
    )
    reports = collector.run()
    collector.save_report(reports)

    if all(report.ok for report in reports):
        return EXIT_OK
    return EXIT_FAILURE


def run_exporter(config: ConfigManager, logger: logging.Logger) -> int:
    logger.info(f"aws region: {config.get_region()}")
    logger.info(f"aws registry id: {config.get_registry_id() or 'default'}")

    client = build_client(config, logger)
    collector = EcrCollector(client, max_workers=config.get_max_workers(), logger=logger)
    app = create_app(collector, telemetry_path=config.get_telemetry_path())
    serve(app, config.get_listen_address())
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(cli_log_level(args))
    logger = get_logger("registry-gc")

    try:
        config = load_config(args)
        setup_logging(config.get_log_level())

        if args.command == "config":
            config.print_config()
            return EXIT_OK
        if args.command == "exporter":
            return run_exporter(config, logger)
        return run_gc(args, config, logger)

    except ConfigurationError as e:
        logger.error(str(e))
        return EXIT_USAGE
    except (CatalogFetchError, CredentialError) as e:
        logger.error(str(e))
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
