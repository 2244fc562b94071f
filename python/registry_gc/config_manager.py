#!/usr/bin/env python3
"""
Configuration Manager for the ECR registry garbage collector

This module handles loading and managing configuration from config.yaml
and environment variables. Command line flags are layered on top by the CLI.
"""

import logging
import os
from typing import Any, Dict, List, Mapping, Optional

import yaml

from registry_gc.error_utils import ConfigurationError
from registry_gc.logging_utils import VALID_LOG_LEVELS
from registry_gc.models import RetentionPolicy


class ConfigValidationError(ConfigurationError):
    """Raised when configuration validation fails"""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        super().__init__(
            message,
            suggestions=["Check config.yaml against config-example.yaml"],
            details={"errors": len(self.errors)} if self.errors else None,
        )


def default_config() -> Dict[str, Any]:
    return {
        "registry": {"region": "us-east-1", "registry_id": None, "repositories": []},
        "retention": {"delete_untagged": False, "keep": {}, "max_images": None},
        "deletion": {"batch_size": 100, "max_batch_retries": 3},
        "analysis": {"max_workers": 4, "output_dir": "reports"},
        "retry": {
            "max_retries": 3,
            "initial_delay": 1.0,
            "max_delay": 60.0,
            "exponential_base": 2.0,
            "jitter": True,
        },
        "rate_limit": {
            "enabled": True,
            "requests_per_second": 10.0,  # Max requests per second
            "burst_size": 20,  # Allow burst of up to N requests
        },
        "credentials": {"wait_timeout": 30, "poll_interval": 1.0},
        "web": {"listen_address": "0.0.0.0:8070", "telemetry_path": "/metrics"},
        "security": {"dry_run_by_default": True},
        "logging": {"level": "INFO"},
    }


class ConfigManager:
    """Manages configuration for the registry garbage collector"""

    def __init__(self, config_file: str = None, validate: bool = True):
        """Initialize ConfigManager

        Args:
            config_file: Path to configuration YAML file (defaults to CONFIG_FILE env var or config.yaml)
            validate: If True, validate configuration on initialization
        """
        if config_file is None:
            config_file = os.environ.get("CONFIG_FILE", "config.yaml")
        self.config_file = config_file
        self.config = self._load_config()
        self._overrides: Dict[str, Dict[str, Any]] = {}

        if validate:
            self.validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file with defaults"""
        defaults = default_config()

        if not os.path.exists(self.config_file):
            logging.warning(f"Config file {self.config_file} not found, using defaults")
            return defaults

        try:
            with open(self.config_file, "r") as f:
                user_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigValidationError(f"Error loading config file {self.config_file}: {e}") from e

        if not isinstance(user_config, dict):
            raise ConfigValidationError(f"Config file {self.config_file} must contain a YAML mapping")
        return self._merge_config(defaults, user_config)

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge user config with defaults"""
        result = default.copy()
        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def override(self, section: str, key: str, value: Any) -> None:
        """Layer a command line value over the config file and environment; None is ignored"""
        if value is not None:
            self._overrides.setdefault(section, {})[key] = value

    def _override(self, section: str, key: str) -> Any:
        return self._overrides.get(section, {}).get(key)

    def _section(self, name: str) -> Dict[str, Any]:
        section = dict(self.config.get(name) or {})
        section.update(self._overrides.get(name, {}))
        return section

    def _get_int(self, section: str, key: str, default: int) -> int:
        value = self._section(section).get(key, default)
        try:
            if isinstance(value, bool):
                raise TypeError
            return int(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"{section}.{key} must be an integer, got: {value} (type: {type(value).__name__})"
            )

    def _get_float(self, section: str, key: str, default: float) -> float:
        value = self._section(section).get(key, default)
        try:
            if isinstance(value, bool):
                raise TypeError
            return float(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"{section}.{key} must be a number, got: {value} (type: {type(value).__name__})"
            )

    # Registry configuration
    def get_region(self) -> str:
        """Get AWS region from environment or config"""
        return (
            self._override("registry", "region")
            or os.environ.get("ECR_REGION")
            or os.environ.get("AWS_DEFAULT_REGION")
            or self._section("registry").get("region")
        )

    def get_registry_id(self) -> Optional[str]:
        """Get ECR registry (account) id; None means the caller's own registry"""
        registry_id = (
            self._override("registry", "registry_id")
            or os.environ.get("ECR_REGISTRY_ID")
            or self._section("registry").get("registry_id")
        )
        return str(registry_id) if registry_id else None

    def get_repositories(self) -> List[str]:
        """Get the repositories to restrict a run to; empty means all"""
        repos = self._section("registry").get("repositories") or []
        if isinstance(repos, str):
            repos = [repos]
        return list(repos)

    # Retention configuration
    def get_delete_untagged(self) -> bool:
        return self._section("retention").get("delete_untagged", False)

    def get_keep_counts(self) -> Dict[str, int]:
        keep = self._section("retention").get("keep") or {}
        if not isinstance(keep, Mapping):
            raise ConfigValidationError(f"retention.keep must be a mapping of prefix to count, got: {keep}")
        return {str(prefix): count for prefix, count in keep.items()}

    def get_max_images(self) -> Optional[int]:
        value = self._section("retention").get("max_images")
        if value is None:
            return None
        return self._get_int("retention", "max_images", 0)

    def get_retention_policy(
        self,
        delete_untagged: Optional[bool] = None,
        keep_counts: Optional[Mapping[str, int]] = None,
        max_images: Optional[int] = None,
    ) -> RetentionPolicy:
        """Build the retention policy; explicit arguments override the config file.

        Raises:
            ConfigurationError: if the resulting policy is invalid
        """
        keep = dict(self.get_keep_counts())
        if keep_counts:
            keep.update(keep_counts)
        return RetentionPolicy(
            delete_untagged=self.get_delete_untagged() if delete_untagged is None else delete_untagged,
            keep_counts=keep,
            max_images=self.get_max_images() if max_images is None else max_images,
        )

    # Deletion configuration
    def get_batch_size(self) -> int:
        return self._get_int("deletion", "batch_size", 100)

    def get_max_batch_retries(self) -> int:
        return self._get_int("deletion", "max_batch_retries", 3)

    # Analysis configuration
    def get_max_workers(self) -> int:
        return self._get_int("analysis", "max_workers", 4)

    def get_output_dir(self) -> str:
        return self._section("analysis").get("output_dir", "reports")

    # Retry configuration
    def get_max_retries(self) -> int:
        return self._get_int("retry", "max_retries", 3)

    def get_retry_initial_delay(self) -> float:
        return self._get_float("retry", "initial_delay", 1.0)

    def get_retry_max_delay(self) -> float:
        return self._get_float("retry", "max_delay", 60.0)

    def get_retry_exponential_base(self) -> float:
        return self._get_float("retry", "exponential_base", 2.0)

    def get_retry_jitter(self) -> bool:
        return self._section("retry").get("jitter", True)

    # Rate limiting
    def get_rate_limit_enabled(self) -> bool:
        return self._section("rate_limit").get("enabled", True)

    def get_rate_limit_rps(self) -> float:
        return self._get_float("rate_limit", "requests_per_second", 10.0)

    def get_rate_limit_burst(self) -> int:
        return self._get_int("rate_limit", "burst_size", 20)

    # Credentials
    def get_credentials_wait_timeout(self) -> float:
        return self._get_float("credentials", "wait_timeout", 30)

    def get_credentials_poll_interval(self) -> float:
        return self._get_float("credentials", "poll_interval", 1.0)

    def is_vault_enabled(self) -> bool:
        return bool(os.environ.get("VAULT_TOKEN"))

    # Metrics exporter
    def get_listen_address(self) -> str:
        return self._section("web").get("listen_address", "0.0.0.0:8070")

    def get_telemetry_path(self) -> str:
        return self._section("web").get("telemetry_path", "/metrics")

    # Security / logging
    def is_dry_run_by_default(self) -> bool:
        return self._section("security").get("dry_run_by_default", True)

    def get_log_level(self) -> str:
        return (
            self._override("logging", "level")
            or os.environ.get("LOG_LEVEL")
            or self._section("logging").get("level", "INFO")
        )

    def validate_config(self) -> None:
        """Validate configuration values

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        errors = []
        warnings = []

        def collect(getter):
            try:
                return getter()
            except ConfigurationError as e:
                errors.append(e.message)
                return None

        region = self.get_region()
        if not region or not str(region).strip():
            errors.append("AWS region is required (registry.region, ECR_REGION or AWS_DEFAULT_REGION)")

        # Retention policy
        try:
            self.get_retention_policy()
        except ConfigurationError as e:
            errors.append(f"{e.message}: {e.details.get('reason', '')}".rstrip(": "))

        batch_size = collect(self.get_batch_size)
        if batch_size is not None and not 1 <= batch_size <= 100:
            errors.append(f"deletion.batch_size must be between 1 and 100, got: {batch_size}")

        batch_retries = collect(self.get_max_batch_retries)
        if batch_retries is not None and batch_retries < 0:
            errors.append(f"deletion.max_batch_retries must be a non-negative integer, got: {batch_retries}")

        max_workers = collect(self.get_max_workers)
        if max_workers is not None:
            if max_workers < 1:
                errors.append(f"max_workers must be a positive integer, got: {max_workers}")
            elif max_workers > 32:
                warnings.append(f"max_workers is very high ({max_workers}), this may trip ECR API throttling")

        output_dir = self.get_output_dir()
        if not output_dir or not str(output_dir).strip():
            errors.append("output_dir is required and cannot be empty")

        max_retries = collect(self.get_max_retries)
        if max_retries is not None:
            if max_retries < 0:
                errors.append(f"retry.max_retries must be a non-negative integer, got: {max_retries}")
            elif max_retries > 10:
                warnings.append(f"max_retries is very high ({max_retries}), operations may take a long time")

        initial_delay = collect(self.get_retry_initial_delay)
        if initial_delay is not None and initial_delay < 0:
            errors.append(f"retry.initial_delay must be a non-negative number, got: {initial_delay}")

        max_delay = collect(self.get_retry_max_delay)
        if max_delay is not None:
            if max_delay < 0:
                errors.append(f"retry.max_delay must be a non-negative number, got: {max_delay}")
            elif initial_delay is not None and max_delay < initial_delay:
                errors.append(f"retry.max_delay ({max_delay}) must be >= retry.initial_delay ({initial_delay})")

        exponential_base = collect(self.get_retry_exponential_base)
        if exponential_base is not None and exponential_base < 1.0:
            errors.append(f"retry.exponential_base must be >= 1.0, got: {exponential_base}")

        if self.get_rate_limit_enabled():
            rps = collect(self.get_rate_limit_rps)
            if rps is not None and rps <= 0:
                errors.append(f"rate_limit.requests_per_second must be positive, got: {rps}")
            burst = collect(self.get_rate_limit_burst)
            if burst is not None and burst < 1:
                errors.append(f"rate_limit.burst_size must be at least 1, got: {burst}")

        wait_timeout = collect(self.get_credentials_wait_timeout)
        if wait_timeout is not None and wait_timeout <= 0:
            errors.append(f"credentials.wait_timeout must be positive, got: {wait_timeout}")

        telemetry_path = self.get_telemetry_path()
        if not str(telemetry_path).startswith("/"):
            errors.append(f"web.telemetry_path must start with '/', got: {telemetry_path}")

        if str(self.get_log_level()).upper() not in VALID_LOG_LEVELS:
            warnings.append(f"Unknown log level '{self.get_log_level()}', INFO will be used")

        for warning in warnings:
            logging.warning(f"Configuration warning: {warning}")

        if errors:
            error_msg = "Configuration validation failed:\n  " + "\n  ".join(errors)
            logging.error(error_msg)
            raise ConfigValidationError(error_msg, errors=errors)

    def print_config(self):
        """Print current configuration"""
        print("Current Configuration:")
        print(f"  Config File: {self.config_file}")
        print(f"  Region: {self.get_region()}")
        print(f"  Registry ID: {self.get_registry_id() or 'default'}")
        repos = self.get_repositories()
        print(f"  Repositories: {', '.join(repos) if repos else 'all'}")
        print(f"  Retention Policy: {self.get_retention_policy().describe()}")
        print(f"  Batch Size: {self.get_batch_size()}")
        print(f"  Max Batch Retries: {self.get_max_batch_retries()}")
        print(f"  Max Workers: {self.get_max_workers()}")
        print(f"  Output Directory: {self.get_output_dir()}")
        print(f"  Dry Run Default: {self.is_dry_run_by_default()}")
        print(f"  Vault Credentials: {'enabled' if self.is_vault_enabled() else 'disabled'}")
        print(f"  Metrics Listen Address: {self.get_listen_address()}{self.get_telemetry_path()}")
