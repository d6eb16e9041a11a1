from typing import Optional

from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Worker pool and jobs
    worker_pool_size: int = 10
    job_timeout_seconds: float = 600.0
    job_max_attempts: int = 2
    retry_base_delay: float = 5.0
    retry_max_delay: float = 300.0
    stop_mode: str = "abort"  # abort, drain
    scheduler_timezone: str = "UTC"
    scheduler_autostart: bool = True
    job_history_size: int = 500

    # Device sessions
    expect_timeout_seconds: float = 30.0
    read_poll_interval: float = 0.05

    # Inventory and device scripts
    inventory_path: str = "inventory.yaml"
    scripts_path: Optional[str] = None

    # Result reporting
    report_api_url: Optional[str] = None
    report_api_token: Optional[str] = None
    report_api_endpoint: str = "/api/v1/worker/results"
    report_api_timeout: float = 30.0
    artifact_storage_path: Optional[str] = None
    artifact_compression: bool = True

    # Application Settings
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "http://localhost:3000,http://localhost:8080"
    log_level: str = "INFO"
    log_file: Optional[str] = None

    class Config:
        env_file = ".env"
        env_prefix = "NETBACKUP_"
        extra = "ignore"

settings = Settings()
