"""Harness settings loaded from the environment."""
from __future__ import annotations

import os
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class HarnessSettings(BaseModel):
    """Configuration injected into provisioning, Terraform and scenario helpers."""

    remote_state_bucket: Optional[str] = Field(
        None, description="Existing S3 bucket holding Terraform remote state"
    )
    remote_state_region: str = Field("us-east-1", description="Region of the remote state bucket")
    key_bits: int = Field(2048, ge=1024, description="RSA key size for generated key pairs")
    approved_regions: List[str] = Field(
        default_factory=list, description="Regions to pick from; empty means all enabled regions"
    )
    forbidden_regions: List[str] = Field(
        default_factory=list, description="Regions never picked"
    )
    terraform_binary: str = Field("terraform", description="Terraform executable")
    max_attempts: int = Field(3, ge=1, description="Apply attempts when retrying transient errors")
    retry_delay_seconds: float = Field(10.0, ge=0, description="Delay between retried applies")
    retry_backoff: Literal["fixed", "exponential"] = Field(
        "fixed", description="fixed or exponential retry delay"
    )
    command_timeout_seconds: Optional[int] = Field(
        None, description="Per-command timeout; unset means no timeout"
    )
    ledger_url: Optional[str] = Field(
        None, description="SQLAlchemy URL for the run ledger; unset disables it"
    )
    log_level: str = Field("INFO", description="Level for scenario loggers")

    @field_validator("approved_regions", "forbidden_regions", mode="before")
    @classmethod
    def _split_regions(cls, value: object) -> object:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @classmethod
    def from_env(cls) -> "HarnessSettings":
        """Build settings from TERRATEST_* environment variables."""
        values: dict = {}
        for field_name in cls.model_fields:
            raw = os.getenv(f"TERRATEST_{field_name.upper()}")
            if raw is not None and raw != "":
                values[field_name] = raw
        return cls.model_validate(values)
