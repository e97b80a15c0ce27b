"""Base configuration settings."""

import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from caresync.models.enums import ConflictResolution


class Settings(BaseSettings):
    """Application settings.

    Note: the offline store holds patient data; `encryption_key` should be set
    for any deployment outside local development.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "CareSync"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "console"

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # Offline storage
    offline_storage_path: str = Field(
        default_factory=lambda: str(Path.home() / ".caresync" / "offline"),
        description="Directory holding the offline SQLite database",
    )
    encryption_key: str = Field(
        default="",
        description="Key for payload encryption at rest; empty disables it",
        validate_default=True,
    )
    encryption_salt: str = "caresync-offline-store"
    index_fields: Dict[str, List[str]] = Field(
        default_factory=lambda: {
            "admissions": ["patientId"],
            "vitalSigns": ["patientId"],
            "prescriptions": ["patientId"],
            "transfusionOrders": ["patientId"],
            "wardRounds": ["hospitalId"],
        },
        description="Payload fields indexed for secondary lookups, per entity type",
    )
    tombstone_retention_hours: int = 7 * 24

    # Remote backend
    remote_base_url: str = "http://localhost:54321"
    remote_api_key: Optional[str] = None
    remote_timeout_seconds: float = 30.0
    remote_health_path: str = "/rest/v1/"
    remote_table_overrides: Dict[str, str] = Field(default_factory=dict)
    pull_cursor_fields: Dict[str, str] = Field(
        default_factory=lambda: {
            "auditLogs": "timestamp",
            "investigationApprovalLogs": "created_at",
        }
    )

    # Sync behaviour
    sync_interval_seconds: float = 30.0
    sync_batch_size: int = 50
    sync_fan_out: int = 4
    sync_max_attempts: int = 5
    sync_backoff_base_seconds: float = 2.0
    sync_backoff_max_seconds: float = 300.0
    pull_page_size: int = 500
    conflict_resolution: ConflictResolution = ConflictResolution.LAST_WRITE_WINS
    sync_entity_types: List[str] = Field(
        default_factory=lambda: [
            "users",
            "hospitals",
            "patients",
            "vitalSigns",
            "admissions",
            "prescriptions",
            "treatmentPlans",
            "wardRounds",
            "transfusionOrders",
            "transfusionMonitoringCharts",
            "medicationCharts",
            "clinicSessions",
        ]
    )

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: str) -> str:
        """Require an AES-256 sized key when encryption is enabled."""
        env = os.getenv("ENVIRONMENT", "development").lower()
        if not v:
            if env in ["production", "staging"]:
                raise ValueError(
                    "encryption_key must be set in production: the offline store holds patient data"
                )
            return v
        if len(v) != 32:
            raise ValueError(f"encryption_key must be exactly 32 characters, got {len(v)}")
        return v

    @field_validator("sync_fan_out", "sync_batch_size", "sync_max_attempts", "pull_page_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Reject zero or negative limits."""
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def offline_db_path(self) -> Path:
        """Location of the SQLite file backing the local record store."""
        return Path(self.offline_storage_path) / "offline_data.db"
