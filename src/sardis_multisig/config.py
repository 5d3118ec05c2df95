"""Configuration surface for multisig governance services."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class GovernanceSettings(BaseSettings):
    """Multisig governance configuration."""

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Database - PostgreSQL for production, in-memory store when empty
    database_url: str = Field(default="", validate_default=True)

    # Proposals
    allowed_currencies: List[str] = Field(default_factory=lambda: ["USDC", "SOL"])
    proposal_ttl_hours: int = 7 * 24  # 0 disables stale-proposal expiry

    # Signer lifecycle
    inactivity_threshold_hours: int = 24  # soft flag
    removal_threshold_hours: int = 48  # eligible for deactivation

    # Background sweep
    sweep_interval_seconds: int = 60 * 60
    scheduler_timezone: str = "UTC"

    # Logging
    log_level: str = "INFO"
    json_logs: bool = True

    class Config:
        env_prefix = "SARDIS_MULTISIG_"
        env_file = ".env"
        extra = "ignore"

    @field_validator("allowed_currencies", mode="before")
    @classmethod
    def parse_currencies(cls, v):
        """Parse comma-separated currencies from env var."""
        if isinstance(v, str):
            v = [c for c in v.split(",")]
        return [str(c).strip().upper() for c in v if str(c).strip()]

    @field_validator("inactivity_threshold_hours", "removal_threshold_hours", "sweep_interval_seconds")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("proposal_ttl_hours")
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        if v < 0:
            raise ValueError("proposal_ttl_hours must be >= 0")
        return v

    @field_validator("removal_threshold_hours")
    @classmethod
    def validate_removal_after_inactivity(cls, v: int, info) -> int:
        inactivity = info.data.get("inactivity_threshold_hours")
        if inactivity is not None and v < inactivity:
            raise ValueError(
                "removal_threshold_hours must be >= inactivity_threshold_hours "
                f"({v} < {inactivity})"
            )
        return v

    @field_validator("database_url", mode="before")
    @classmethod
    def set_database_default(cls, v: str) -> str:
        """Use DATABASE_URL when no multisig-specific DSN is set."""
        import os

        if not v:
            v = os.getenv("DATABASE_URL", "")
        return v


@lru_cache
def load_settings(env_file: str | None = None) -> GovernanceSettings:
    """Load GovernanceSettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return GovernanceSettings(_env_file=env_path)
