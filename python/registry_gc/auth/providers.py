"""
Credential provider implementations for AWS ECR.

This module contains the actual credential logic. The garbage collector only
needs a boto3 session; where its keys come from is decided here.
"""

import json
import logging
import os
import time
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import boto3

from registry_gc.error_utils import CredentialError

DEFAULT_VAULT_ADDR = "http://127.0.0.1:8200"


@dataclass(frozen=True)
class AwsCredentials:
    access_key: str
    secret_key: str
    session_token: Optional[str] = None


class CredentialProvider(ABC):
    """Capability for obtaining AWS credentials."""

    @abstractmethod
    def fetch(self) -> Optional[AwsCredentials]:
        """Return credentials, or None to defer to boto3's default chain."""

    @abstractmethod
    def is_expired(self) -> bool:
        """Whether previously fetched credentials need fetching again."""


class EnvironmentCredentialProvider(CredentialProvider):
    """Defers to boto3's default chain (env vars, shared config, instance role)."""

    def fetch(self) -> Optional[AwsCredentials]:
        return None

    def is_expired(self) -> bool:
        return False


class VaultCredentialProvider(CredentialProvider):
    """Issues a dynamic IAM user through Vault's AWS secrets engine.

    Reads ``aws/creds/<role>`` with the token in VAULT_TOKEN. The issued
    credentials are treated as never expiring for the life of the process;
    IAM may take a few seconds before it accepts them, see wait_for_credentials.
    """

    def __init__(self, token: str, role: str, address: str = DEFAULT_VAULT_ADDR, timeout: int = 30,
                 mount: str = "aws"):
        if not token:
            raise CredentialError(
                "must set VAULT_TOKEN",
                suggestions=["Export VAULT_TOKEN with a token allowed to read the AWS secrets engine"],
            )
        if not role:
            raise CredentialError(
                "must set VAULT_AWS_SECRETS_ROLE",
                suggestions=["Export VAULT_AWS_SECRETS_ROLE with the Vault AWS role to issue credentials for"],
            )
        self.token = token
        self.role = role
        self.address = address.rstrip("/")
        self.timeout = timeout
        self.mount = mount
        self._credentials: Optional[AwsCredentials] = None

    @property
    def url(self) -> str:
        return f"{self.address}/v1/{self.mount}/creds/{self.role}"

    def fetch(self) -> AwsCredentials:
        if self._credentials is not None:
            return self._credentials

        req = urllib.request.Request(self.url, method="GET")
        req.add_header("X-Vault-Token", self.token)

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                secret = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            logging.error(f"Vault credential request failed: {e}")
            raise CredentialError(
                f"Vault refused to issue AWS credentials for role '{self.role}' (HTTP {e.code})",
                suggestions=[
                    "Verify VAULT_TOKEN is valid and not expired",
                    f"Check the token's policy allows read on {self.mount}/creds/{self.role}",
                    "Verify VAULT_AWS_SECRETS_ROLE names an existing role",
                ],
                details={"url": self.url, "status": e.code},
            ) from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            logging.error(f"Could not reach Vault at {self.address}: {e}")
            raise CredentialError(
                f"Could not read AWS credentials from Vault at {self.address}",
                suggestions=["Verify VAULT_ADDR points at a reachable Vault server"],
                details={"url": self.url, "error": str(e)},
            ) from e

        data = secret.get("data") or {}
        access_key = data.get("access_key")
        secret_key = data.get("secret_key")
        if not access_key or not secret_key:
            raise CredentialError(
                f"Vault response for role '{self.role}' is missing access_key/secret_key",
                details={"url": self.url},
            )

        logging.info("created iam user through vault")
        self._credentials = AwsCredentials(
            access_key=access_key,
            secret_key=secret_key,
            session_token=data.get("security_token"),
        )
        return self._credentials

    def is_expired(self) -> bool:
        return False


def provider_from_environment(environ=None) -> CredentialProvider:
    """Use Vault when VAULT_TOKEN is set, otherwise the default AWS chain."""
    environ = os.environ if environ is None else environ
    token = environ.get("VAULT_TOKEN")
    if token:
        return VaultCredentialProvider(
            token=token,
            role=environ.get("VAULT_AWS_SECRETS_ROLE", ""),
            address=environ.get("VAULT_ADDR", DEFAULT_VAULT_ADDR),
        )
    return EnvironmentCredentialProvider()


def create_session(provider: CredentialProvider, region: Optional[str]) -> boto3.session.Session:
    """Build a boto3 session from whatever the provider hands out."""
    credentials = provider.fetch()
    if credentials is None:
        return boto3.session.Session(region_name=region)
    return boto3.session.Session(
        aws_access_key_id=credentials.access_key,
        aws_secret_access_key=credentials.secret_key,
        aws_session_token=credentials.session_token,
        region_name=region,
    )


class CredentialWaitOutcome(Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"


def wait_for_credentials(
    check: Callable[[], bool],
    timeout: float = 30.0,
    poll_interval: float = 1.0,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> CredentialWaitOutcome:
    """Poll ``check`` until it passes or ``timeout`` seconds have gone by.

    An exception from ``check`` counts as not ready yet.

    Args:
        check: Returns True once the credentials work
        timeout: Overall deadline in seconds
        poll_interval: Fixed delay between attempts in seconds
        clock: Monotonic time source
        sleep: Sleep function

    Returns:
        CredentialWaitOutcome.READY or CredentialWaitOutcome.TIMED_OUT
    """
    deadline = clock() + timeout
    attempt = 0
    while True:
        attempt += 1
        try:
            if check():
                if attempt > 1:
                    logging.info(f"Credentials became valid after {attempt} attempts")
                return CredentialWaitOutcome.READY
        except Exception as e:
            logging.debug(f"Credential check attempt {attempt} failed: {e}")

        remaining = deadline - clock()
        if remaining <= 0:
            logging.error(f"Timed out after {timeout}s waiting for credentials")
            return CredentialWaitOutcome.TIMED_OUT
        sleep(min(poll_interval, remaining))
