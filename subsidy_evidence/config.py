"""Application configuration loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration – values are read from `.env` or the environment."""

    # Paths
    base_dir: Path = Path(__file__).resolve().parent.parent
    storage_dir: Path = base_dir / "storage" / "evidence"
    sqlite_path: Path = base_dir / "storage" / "sqlite" / "evidence.db"
    storage_base_url: str = "file://" + str(base_dir / "storage" / "evidence")

    # Processing queue
    queue_max_concurrent_jobs: int = 3
    queue_max_ocr_concurrent: int = 2
    queue_tick_seconds: float = 1.0
    queue_default_timeout_seconds: float = 60.0
    queue_default_max_retries: int = 3

    # Cost model (currency units, governance defaults)
    daily_cost_limit: float = 15.0
    cost_per_ocr_mb: float = 0.5
    min_ocr_cost: float = 0.1
    cost_per_transform_table: float = 0.1
    compression_cost: float = 0.05
    storage_cost_per_gb_day: float = 0.02

    # Storage governance
    storage_limit_gb: float = 20.0
    storage_max_file_mb: float = 50.0
    compression_quality: int = 85
    image_max_dimension: int = 2048
    storage_monitor_interval_seconds: float = 3600.0
    storage_warn_ratio: float = 0.8
    storage_cleanup_ratio: float = 0.9
    auto_cleanup_older_than_days: int = 30
    cleanup_older_than_days: int = 90

    model_config = {
        "env_prefix": "EVIDENCE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


settings = Settings()
