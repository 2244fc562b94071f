"""
Credential providers for AWS ECR.

This module provides the credential capability used to build boto3 sessions:
- Vault-issued AWS credentials (aws/creds/<role>)
- The default AWS credential chain (environment, shared config, instance role)
and a helper that waits for freshly issued credentials to become usable.
"""

from registry_gc.auth.providers import (
    AwsCredentials,
    CredentialProvider,
    CredentialWaitOutcome,
    EnvironmentCredentialProvider,
    VaultCredentialProvider,
    create_session,
    provider_from_environment,
    wait_for_credentials,
)

__all__ = [
    "AwsCredentials",
    "CredentialProvider",
    "CredentialWaitOutcome",
    "EnvironmentCredentialProvider",
    "VaultCredentialProvider",
    "create_session",
    "provider_from_environment",
    "wait_for_credentials",
]
