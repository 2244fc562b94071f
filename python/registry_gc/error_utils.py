"""
Error types and message utilities for providing actionable guidance to users.

Every failure the garbage collector surfaces to an operator is an
ActionableError: a primary message, a category, suggested fixes and a
dictionary of details. The concrete subclasses map onto the stages of a run:

- ConfigurationError: policy or configuration input is invalid (raised before any deletion)
- CatalogFetchError: listing repositories or images failed
- DeletionBatchError: a whole BatchDeleteImage call failed
- CredentialError: registry credentials could not be obtained
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class ErrorCategory(Enum):
    """Categories of errors for better error handling"""
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    PERMISSION = "permission"
    RESOURCE = "resource"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# ECR error codes that mean the caller is not allowed to do what it asked
AUTH_ERROR_CODES = {
    "AccessDeniedException",
    "UnrecognizedClientException",
    "InvalidSignatureException",
    "ExpiredTokenException",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
}


class ActionableError(Exception):
    """Exception with actionable guidance for users"""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        """Initialize actionable error

        Args:
            message: Primary error message
            category: Error category for classification
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        self.category = category
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message with suggestions"""
        lines = [f"❌ {self.message}"]

        if self.suggestions:
            lines.append("\n💡 Suggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        if self.details:
            lines.append("\n📋 Additional details:")
            for key, value in self.details.items():
                lines.append(f"   {key}: {value}")

        return "\n".join(lines)


class ConfigurationError(ActionableError):
    """Raised when the retention policy or configuration is malformed"""

    def __init__(self, message: str, suggestions: Optional[List[str]] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.CONFIGURATION, suggestions, details)


class CatalogFetchError(ActionableError):
    """Raised when repositories or images cannot be listed"""

    def __init__(self, message: str, repository: Optional[str] = None,
                 category: ErrorCategory = ErrorCategory.CONNECTION,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        self.repository = repository
        super().__init__(message, category, suggestions, details)


class DeletionBatchError(ActionableError):
    """Raised when an entire batch deletion call fails (transport or auth)"""

    def __init__(self, message: str, repository: str, digests: Sequence[str],
                 category: ErrorCategory = ErrorCategory.NETWORK, cause: Optional[Exception] = None,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        self.repository = repository
        self.digests = list(digests)
        self.cause = cause
        super().__init__(message, category, suggestions, details)


class CredentialError(ActionableError):
    """Raised when registry credentials cannot be obtained or never become valid"""

    def __init__(self, message: str, suggestions: Optional[List[str]] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.AUTHENTICATION, suggestions, details)


def aws_error_code(error: Exception) -> Optional[str]:
    """Return the AWS error code of a botocore ClientError, if there is one"""
    response = getattr(error, "response", None)
    if isinstance(response, dict):
        return response.get("Error", {}).get("Code")
    return None


def categorize_aws_error(error: Exception) -> ErrorCategory:
    """Pick an error category for an exception raised by a boto3 call"""
    code = aws_error_code(error)
    if code in AUTH_ERROR_CODES:
        return ErrorCategory.AUTHENTICATION
    if code == "RepositoryNotFoundException":
        return ErrorCategory.RESOURCE
    if code in ("ThrottlingException", "TooManyRequestsException"):
        return ErrorCategory.NETWORK
    error_str = str(error).lower()
    if "timeout" in error_str or "timed out" in error_str:
        return ErrorCategory.TIMEOUT
    return ErrorCategory.CONNECTION


def _aws_suggestions(category: ErrorCategory, region: Optional[str]) -> List[str]:
    if category == ErrorCategory.AUTHENTICATION:
        return [
            "Verify AWS credentials are configured (aws configure, or AWS_ACCESS_KEY_ID/AWS_SECRET_ACCESS_KEY)",
            "If using Vault, check VAULT_TOKEN and VAULT_AWS_SECRETS_ROLE",
            "Check the IAM policy allows ecr:DescribeRepositories, ecr:DescribeImages and ecr:BatchDeleteImage",
        ]
    if category == ErrorCategory.RESOURCE:
        return [
            "Verify the repository name is spelled correctly",
            f"Check the repository exists in region {region or 'the configured region'}",
            "Verify the registry ID if the repository lives in another account",
        ]
    if category == ErrorCategory.NETWORK:
        return [
            "Reduce the number of parallel workers (--max-workers)",
            "Lower rate_limit.requests_per_second in config.yaml",
            "Wait before retrying the operation",
        ]
    return [
        f"Check network connectivity to the ECR endpoint in {region or 'the configured region'}",
        "Verify the region is correct (ECR_REGION or AWS_DEFAULT_REGION)",
        "Check if AWS is reporting an ECR service event",
    ]


def create_catalog_fetch_error(operation: str, error: Exception, repository: Optional[str] = None,
                               region: Optional[str] = None) -> CatalogFetchError:
    """Create actionable error for failures listing repositories or images"""
    category = categorize_aws_error(error)
    target = f" for repository {repository}" if repository else ""
    return CatalogFetchError(
        message=f"ECR {operation} failed{target}",
        repository=repository,
        category=category,
        suggestions=_aws_suggestions(category, region),
        details={
            "operation": operation,
            "region": region,
            "error_type": type(error).__name__,
            "error_code": aws_error_code(error),
            "error_message": str(error),
        },
    )


def create_deletion_batch_error(repository: str, digests: Sequence[str], error: Exception,
                                batch_number: Optional[int] = None) -> DeletionBatchError:
    """Create actionable error for a batch deletion call that failed as a whole"""
    category = categorize_aws_error(error)
    label = f"batch {batch_number}" if batch_number is not None else "batch"
    return DeletionBatchError(
        message=f"Deletion {label} of {len(digests)} images in {repository} failed",
        repository=repository,
        digests=digests,
        category=category,
        cause=error,
        suggestions=_aws_suggestions(category, None),
        details={
            "repository": repository,
            "batch_size": len(digests),
            "error_type": type(error).__name__,
            "error_code": aws_error_code(error),
            "error_message": str(error),
        },
    )


def create_config_error(field: str, value: Any, reason: str) -> ConfigurationError:
    """Create actionable error for configuration validation failures"""
    suggestions = [
        f"Check the '{field}' value in config.yaml or on the command line",
        "Verify the value matches the expected format",
        "Check config-example.yaml for the correct format",
    ]

    if "keep" in field.lower():
        suggestions.insert(1, "Keep counts are written as PREFIX=COUNT, e.g. --keep release=4")
    elif "timeout" in field.lower() or "delay" in field.lower():
        suggestions.insert(1, "Time values must be positive numbers")

    return ConfigurationError(
        message=f"Configuration error: Invalid value for '{field}'",
        suggestions=suggestions,
        details={
            "field": field,
            "value": value,
            "reason": reason,
        },
    )

