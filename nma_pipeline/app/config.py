"""
Pipeline Configuration Management
Centralized settings using Pydantic Settings with environment variable support.
"""

from datetime import date
from typing import Dict, List, Optional
from functools import lru_cache
from pathlib import Path
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables.
    Supports .env file loading in development.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================
    # Application Settings
    # ============================================
    app_name: str = Field(default="nma-pipeline")
    app_version: str = Field(default="1.0.0")
    environment: str = Field(default="development", pattern="^(development|staging|production)$")
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_format: str = Field(default="json", pattern="^(json|text)$")

    # ============================================
    # Processing Window
    # ============================================
    processing_start_date: date = Field(
        default=date(2020, 1, 1),
        description="Entity mappings starting before this date are ignored"
    )
    processing_end_date: date = Field(
        default=date(2099, 12, 31),
        description="Entity mappings ending after this date are ignored"
    )

    # ============================================
    # Retry / Run Behaviour
    # ============================================
    max_retries: int = Field(default=3, ge=1, le=10, description="Attempts per stage on transient errors")
    retry_backoff_min_seconds: float = Field(default=5.0, ge=0)
    retry_backoff_max_seconds: float = Field(default=60.0, ge=0)
    save_intermediate: bool = Field(
        default=False,
        description="Keep intermediate stage tables after a successful run"
    )
    pipeline_global_concurrent_limit: int = Field(default=2, ge=1, le=50)

    # ============================================
    # Hierarchy Rules
    # ============================================
    max_hierarchy_levels: int = Field(default=12, ge=1, le=12)
    manager_account_id_marker: Optional[str] = Field(
        default=None,
        description="When set, only relationship ids containing this marker are kept (e.g. 'amzn1.ads1.ma')"
    )
    agency_type_markers: List[str] = Field(default=["agency", "partner"])
    source_priority: Dict[str, int] = Field(
        default={
            "GSO-DSP-SS": 1,
            "PN": 2,
            "API": 3,
            "RODEO": 4,
            "MANUAL": 5,
            "LCARS": 6,
            "GSO-DSP-MS": 7,
        }
    )
    unknown_source_priority: int = Field(default=999)

    # ============================================
    # Storage
    # ============================================
    storage_backend: str = Field(default="parquet", pattern="^(memory|parquet|bigquery)$")
    parquet_base_path: str = Field(default="./data/nma")
    gcp_project_id: Optional[str] = Field(default=None, description="Google Cloud Project ID")
    bigquery_dataset: str = Field(default="nma")
    bigquery_location: str = Field(default="US", description="BigQuery dataset location")
    bigquery_page_size: int = Field(default=50000, ge=1000)

    # ============================================
    # Engine
    # ============================================
    polars_max_threads: int = Field(default=4, ge=1, le=64)
    pipeline_max_parallel_steps: int = Field(default=4, ge=1, le=100)

    # ============================================
    # Data Quality
    # ============================================
    dq_min_score: float = Field(default=95.0, ge=0, le=100)
    dq_fail_on_unhealthy: bool = Field(default=False)

    # ============================================
    # Pipeline Configs
    # ============================================
    pipelines_config_path: str = Field(default="./configs/pipelines")
    default_pipeline_id: str = Field(default="nested_manager_accounts")

    @field_validator("source_priority")
    @classmethod
    def normalize_source_priority(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Source names are compared upper-cased."""
        return {name.upper(): rank for name, rank in v.items()}

    @field_validator("agency_type_markers")
    @classmethod
    def normalize_type_markers(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("agency_type_markers must not be empty")
        return [marker.lower() for marker in v]

    @model_validator(mode="after")
    def validate_processing_window(self):
        if self.processing_start_date > self.processing_end_date:
            raise ValueError(
                f"processing_start_date {self.processing_start_date} is after "
                f"processing_end_date {self.processing_end_date}"
            )
        if self.storage_backend == "bigquery" and not self.gcp_project_id:
            raise ValueError("gcp_project_id is required when storage_backend is 'bigquery'")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    def find_pipeline_path(self, pipeline_id: str) -> str:
        """
        Locate a pipeline YAML under pipelines_config_path.

        Raises:
            FileNotFoundError: If no {pipeline_id}.yml exists
        """
        base = Path(self.pipelines_config_path)
        for suffix in (".yml", ".yaml"):
            matches = sorted(base.rglob(f"{pipeline_id}{suffix}"))
            if matches:
                return str(matches[0])
        raise FileNotFoundError(f"Pipeline '{pipeline_id}' not found under {base}")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Use LRU cache to avoid reloading environment variables.
    """
    return Settings()


# Convenience export
settings = get_settings()
