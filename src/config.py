"""Centralized configuration management for PledgeMatch.

Loads all configuration from environment variables with sensible defaults.
"""

from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings

# Load environment variables from .env file
load_dotenv()


class Config(BaseSettings):
    """Main configuration class for the reconciliation service."""

    # Service
    service_host: str = Field(default="0.0.0.0")
    service_port: int = Field(default=4030)

    # Webhook payload encryption (AES-256-CBC, hex encoded)
    webhook_aes_key: SecretStr = Field(
        default=SecretStr(""), description="64 hex chars (32 bytes)"
    )
    webhook_aes_iv: SecretStr = Field(
        default=SecretStr(""), description="32 hex chars (16 bytes)"
    )
    webhook_max_event_age_seconds: int = Field(
        default=3600, description="Events older than this are rejected"
    )

    # Idempotency
    idempotency_claim_lease_seconds: int = Field(
        default=300,
        description="Unfinished claims older than this may be reclaimed by a redelivery",
    )

    # Database
    database_path: str = Field(default="./pledgematch.db")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Matching donor directory
    matching_donor_source: Literal["json", "payload"] = Field(default="json")
    matching_donor_data_path: str = Field(default="data/matching_donors.json")
    payload_api_url: str = Field(default="http://localhost:3001/api")
    payload_api_token: SecretStr = Field(default=SecretStr(""))
    payload_request_timeout_seconds: float = Field(default=10.0)

    # Matching engine
    matching_donor_order: Literal["listing", "remaining_budget_asc", "priority"] = Field(
        default="listing",
        description="Order in which eligible donors' budgets are consumed",
    )

    # Post-webhook matching trigger
    matching_trigger_enabled: bool = Field(default=True)
    matching_trigger_max_attempts: int = Field(default=3)
    matching_trigger_backoff_seconds: float = Field(default=1.0)

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global config instance
config = Config()


def _hex_length(value: str) -> int:
    try:
        return len(bytes.fromhex(value))
    except ValueError:
        return -1


def validate_config_for_service(service: Literal["webhook", "matching"]) -> None:
    """Validate that required configuration is present for a specific service.

    Args:
        service: The service name to validate configuration for.

    Raises:
        ValueError: If required configuration is missing.
    """
    errors = []

    if service == "webhook":
        if _hex_length(config.webhook_aes_key.get_secret_value()) != 32:
            errors.append("WEBHOOK_AES_KEY must be 64 hex chars (32 bytes)")
        if _hex_length(config.webhook_aes_iv.get_secret_value()) != 16:
            errors.append("WEBHOOK_AES_IV must be 32 hex chars (16 bytes)")
        if config.webhook_max_event_age_seconds <= 0:
            errors.append("WEBHOOK_MAX_EVENT_AGE_SECONDS must be positive")

    if service in ["webhook", "matching"]:
        if config.matching_donor_source == "payload" and not config.payload_api_url:
            errors.append("PAYLOAD_API_URL must be set when MATCHING_DONOR_SOURCE=payload")
        if config.matching_donor_source == "json" and not config.matching_donor_data_path:
            errors.append("MATCHING_DONOR_DATA_PATH must be set when MATCHING_DONOR_SOURCE=json")
        if config.matching_trigger_max_attempts < 1:
            errors.append("MATCHING_TRIGGER_MAX_ATTEMPTS must be at least 1")

    if errors:
        error_msg = f"Configuration errors for {service} service:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
