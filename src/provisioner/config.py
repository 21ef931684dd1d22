"""Configuration management with validation.

Credentials and the control-plane endpoint are passed explicitly into the
client and reconciler through this object. Nothing in the engine reads the
environment on its own; only ``Config.from_env`` does.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field

from azure.core.credentials import AzureNamedKeyCredential


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_API_ENDPOINT = "https://api.bonsai.io"

DEFAULT_CONVERGENCE_TIMEOUT_SECONDS = 300
MIN_CONVERGENCE_TIMEOUT_SECONDS = 10
MAX_CONVERGENCE_TIMEOUT_SECONDS = 3600

DEFAULT_POLL_INTERVAL_SECONDS = 10
MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 300

DEFAULT_HTTP_RETRY_TOTAL = 3
MAX_HTTP_RETRY_TOTAL = 10

DEFAULT_HTTP_TIMEOUT_SECONDS = 30

# Manifest limits
MAX_MANIFEST_FILE_SIZE_BYTES = 64 * 1024  # 64KB max cluster manifest
MAX_CLUSTER_NAME_LENGTH = 128

# Input validation patterns
VALID_ENDPOINT_PATTERN = r"^https?://[A-Za-z0-9.-]+(:[0-9]{1,5})?(/.*)?$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-operation.
    """

    # Required fields
    api_key: str
    api_token: str

    # Control plane
    endpoint: str = DEFAULT_API_ENDPOINT
    http_retry_total: int = DEFAULT_HTTP_RETRY_TOTAL
    http_timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS

    # Convergence
    convergence_timeout_seconds: float = DEFAULT_CONVERGENCE_TIMEOUT_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_poll_attempts: int | None = None

    # Emit one structured audit record per operation
    enable_audit_logging: bool = True

    application: str = field(default="clusterctl")

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        All errors are collected so a misconfigured environment is reported
        in one pass.
        """
        errors: list[str] = []

        if not self.api_key:
            errors.append("BONSAI_API_KEY is required")
        if not self.api_token:
            errors.append("BONSAI_API_TOKEN is required")

        if not re.match(VALID_ENDPOINT_PATTERN, self.endpoint):
            errors.append(f"BONSAI_API_ENDPOINT must be an http(s) URL: {self.endpoint}")

        if not (
            MIN_CONVERGENCE_TIMEOUT_SECONDS
            <= self.convergence_timeout_seconds
            <= MAX_CONVERGENCE_TIMEOUT_SECONDS
        ):
            errors.append(
                f"CONVERGENCE_TIMEOUT must be between {MIN_CONVERGENCE_TIMEOUT_SECONDS} "
                f"and {MAX_CONVERGENCE_TIMEOUT_SECONDS} seconds"
            )

        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )
        elif self.poll_interval_seconds > self.convergence_timeout_seconds:
            errors.append("POLL_INTERVAL cannot exceed CONVERGENCE_TIMEOUT")

        if self.max_poll_attempts is not None and self.max_poll_attempts < 1:
            errors.append("MAX_POLL_ATTEMPTS must be at least 1")

        if not (0 <= self.http_retry_total <= MAX_HTTP_RETRY_TOTAL):
            errors.append(f"HTTP_RETRY_TOTAL must be between 0 and {MAX_HTTP_RETRY_TOTAL}")

        if self.http_timeout_seconds < 1:
            errors.append("HTTP_TIMEOUT must be at least 1 second")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def credential(self) -> AzureNamedKeyCredential:
        """Key/token pair used for HTTP basic authentication."""
        return AzureNamedKeyCredential(self.api_key, self.api_token)

    def __repr__(self) -> str:
        # Never render the token, even in debug output
        return (
            f"Config(endpoint={self.endpoint!r}, "
            f"convergence_timeout_seconds={self.convergence_timeout_seconds}, "
            f"poll_interval_seconds={self.poll_interval_seconds}, "
            f"max_poll_attempts={self.max_poll_attempts})"
        )

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            BONSAI_API_KEY: API access key (used as the basic-auth user)
            BONSAI_API_TOKEN: API access token (used as the basic-auth password)
            BONSAI_API_ENDPOINT: Control plane base URL (default: https://api.bonsai.io)
            CONVERGENCE_TIMEOUT: Seconds to wait for an operation to converge (default: 300)
            POLL_INTERVAL: Seconds between state polls (default: 10)
            MAX_POLL_ATTEMPTS: Optional cap on polls per operation (default: unbounded)
            HTTP_RETRY_TOTAL: Transport-level retries for transient HTTP failures (default: 3)
            HTTP_TIMEOUT: Per-request connect and read timeout in seconds (default: 30)
            ENABLE_AUDIT_LOGGING: Emit provenance records (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        max_attempts = os.environ.get("MAX_POLL_ATTEMPTS")

        return cls(
            api_key=os.environ.get("BONSAI_API_KEY", ""),
            api_token=os.environ.get("BONSAI_API_TOKEN", ""),
            endpoint=os.environ.get("BONSAI_API_ENDPOINT", DEFAULT_API_ENDPOINT),
            http_retry_total=get_int("HTTP_RETRY_TOTAL", DEFAULT_HTTP_RETRY_TOTAL),
            http_timeout_seconds=get_int("HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS),
            convergence_timeout_seconds=get_float(
                "CONVERGENCE_TIMEOUT", DEFAULT_CONVERGENCE_TIMEOUT_SECONDS
            ),
            poll_interval_seconds=get_float("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            max_poll_attempts=get_int("MAX_POLL_ATTEMPTS", 0) if max_attempts else None,
            enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
        )
