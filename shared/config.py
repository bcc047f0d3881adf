# shared/config.py
import os
from dataclasses import dataclass, field
from typing import List


class ConfigurationError(Exception):
    """Raised when the service cannot start with the given settings"""


def _split_endpoints(raw: str) -> List[str]:
    return [e.strip() for e in raw.split(",") if e.strip()]


@dataclass
class Config:
    # Service Configuration
    ENVIRONMENT: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))
    LOG_LEVEL: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    # Gateway Configuration
    GATEWAY_HOST: str = field(default_factory=lambda: os.getenv("GATEWAY_HOST", "0.0.0.0"))
    GATEWAY_PORT: int = field(default_factory=lambda: int(os.getenv("GATEWAY_PORT", "3001")))

    # Database URLs
    POSTGRES_URL: str = field(default_factory=lambda: os.getenv("POSTGRES_URL", ""))
    # Empty disables the metrics cache
    REDIS_URL: str = field(default_factory=lambda: os.getenv("REDIS_URL", ""))

    # pRPC Endpoints
    PRPC_ENDPOINTS: List[str] = field(
        default_factory=lambda: _split_endpoints(os.getenv("PRPC_ENDPOINTS", ""))
    )
    API_TIMEOUT_MS: int = field(default_factory=lambda: int(os.getenv("API_TIMEOUT_MS", "10000")))
    MAX_RETRIES: int = field(default_factory=lambda: int(os.getenv("MAX_RETRIES", "3")))
    RETRY_BASE_DELAY_MS: int = field(default_factory=lambda: int(os.getenv("RETRY_BASE_DELAY_MS", "1000")))

    # pRPC method names
    PRPC_METHOD_VERSION: str = field(default_factory=lambda: os.getenv("PRPC_METHOD_VERSION", "get-version"))
    PRPC_METHOD_STATS: str = field(default_factory=lambda: os.getenv("PRPC_METHOD_STATS", "get-stats"))
    PRPC_METHOD_PODS: str = field(default_factory=lambda: os.getenv("PRPC_METHOD_PODS", "get-pods"))
    PRPC_METHOD_PODS_WITH_STATS: str = field(
        default_factory=lambda: os.getenv("PRPC_METHOD_PODS_WITH_STATS", "get-pods-with-stats")
    )

    # Credits API
    CREDITS_API_URL: str = field(
        default_factory=lambda: os.getenv(
            "CREDITS_API_URL", "https://podcredits.xandeum.network/api/pods-credits"
        )
    )

    # Sync
    SYNC_INTERVAL_SECONDS: int = field(default_factory=lambda: int(os.getenv("SYNC_INTERVAL_SECONDS", "60")))

    @classmethod
    def from_env(cls) -> "Config":
        return cls()

    @property
    def api_timeout_seconds(self) -> float:
        return self.API_TIMEOUT_MS / 1000

    @property
    def retry_base_delay_seconds(self) -> float:
        return self.RETRY_BASE_DELAY_MS / 1000

    def validate(self) -> None:
        """Raise ConfigurationError listing every problem found"""
        errors = []

        if not self.PRPC_ENDPOINTS:
            errors.append("PRPC_ENDPOINTS is required (comma-separated list)")
        if not self.POSTGRES_URL:
            errors.append("POSTGRES_URL is required")
        if self.SYNC_INTERVAL_SECONDS <= 0:
            errors.append("SYNC_INTERVAL_SECONDS must be positive")
        if self.API_TIMEOUT_MS <= 0:
            errors.append("API_TIMEOUT_MS must be positive")
        if self.MAX_RETRIES < 0:
            errors.append("MAX_RETRIES cannot be negative")

        if errors:
            raise ConfigurationError("Configuration errors:\n" + "\n".join(errors))
