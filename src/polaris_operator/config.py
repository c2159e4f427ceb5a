"""Configuration management with validation.

Bounds are enforced at configuration load time so a misconfigured operator
fails at startup rather than mid-reconciliation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 60
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_POLL_INTERVAL_SECONDS = 5
MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 60

# 0 disables the convergence deadline; the wait then ends only on shutdown
DEFAULT_CONVERGENCE_TIMEOUT_SECONDS = 1800
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60

# Security constraints - enforced limits to prevent abuse
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file
DEFAULT_MAX_MEMBERS_PER_GROUPING = 1000
MAX_MEMBERS_PER_GROUPING_LIMIT = 10000


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    Service account settings are read separately by credentials.py.
    """

    # Paths
    specs_dir: Path = field(default_factory=lambda: Path("/specs"))

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    convergence_timeout_seconds: int = DEFAULT_CONVERGENCE_TIMEOUT_SECONDS
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Behavior
    dry_run: bool = False

    # Limits
    max_members_per_grouping: int = DEFAULT_MAX_MEMBERS_PER_GROUPING

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if self.convergence_timeout_seconds < 0:
            errors.append("CONVERGENCE_TIMEOUT must not be negative")
        elif 0 < self.convergence_timeout_seconds < self.poll_interval_seconds:
            errors.append("CONVERGENCE_TIMEOUT must be 0 or at least POLL_INTERVAL")

        if self.request_timeout_seconds < 1:
            errors.append("REQUEST_TIMEOUT must be at least 1 second")

        if not (1 <= self.max_members_per_grouping <= MAX_MEMBERS_PER_GROUPING_LIMIT):
            errors.append(
                f"MAX_MEMBERS_PER_GROUPING must be between 1 and {MAX_MEMBERS_PER_GROUPING_LIMIT}"
            )

        # Path validation
        if not self.specs_dir.exists():
            errors.append(f"Specs directory does not exist: {self.specs_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def convergence_timeout(self) -> float | None:
        """Convergence deadline in seconds, or None when disabled."""
        return float(self.convergence_timeout_seconds) or None

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            SPECS_DIR: Path to YAML manifests (default: /specs)
            RECONCILE_INTERVAL: Seconds between reconciliation loops (default: 300)
            POLL_INTERVAL: Seconds between convergence polls (default: 5)
            CONVERGENCE_TIMEOUT: Seconds to wait for convergence, 0 to disable
                (default: 1800)
            REQUEST_TIMEOUT: Timeout for a single API request in seconds (default: 60)
            DRY_RUN: If "true", only plan without applying (default: false)
            MAX_MEMBERS_PER_GROUPING: Max declared members per grouping (default: 1000)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            specs_dir=Path(os.environ.get("SPECS_DIR", "/specs")),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            poll_interval_seconds=get_int("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            convergence_timeout_seconds=get_int(
                "CONVERGENCE_TIMEOUT", DEFAULT_CONVERGENCE_TIMEOUT_SECONDS
            ),
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            dry_run=get_bool("DRY_RUN", False),
            max_members_per_grouping=get_int(
                "MAX_MEMBERS_PER_GROUPING", DEFAULT_MAX_MEMBERS_PER_GROUPING
            ),
        )
