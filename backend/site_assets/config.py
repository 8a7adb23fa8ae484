from pydantic_settings import BaseSettings
from functools import lru_cache
import os


BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class Settings(BaseSettings):
    downloads_dir: str = os.path.join(BACKEND_DIR, "downloads")
    log_level: str = "INFO"

    # Browser pool
    max_browsers: int = 3
    max_pages_per_browser: int = 5
    pool_acquire_timeout: float = 30.0  # seconds
    browser_launch_timeout: float = 30.0  # seconds
    browser_executable_path: str | None = None
    headless: bool = True

    # Extraction
    navigation_timeout: float = 30.0  # seconds
    settle_delay: float = 2.0  # seconds after load before scanning
    probe_media: bool = True  # HEAD each candidate for size/type
    probe_concurrency: int = 8

    # Downloads
    concurrent_downloads: int = 5
    download_timeout: float = 30.0  # seconds
    max_file_size: int = 100 * 1024 * 1024
    max_job_bytes: int = 1024 * 1024 * 1024
    max_redirects: int = 5
    stagger_delay: float = 0.1  # seconds, multiplied by item index
    max_bulk_files: int = 100

    # Retry policy for page loads, probes and downloads
    max_retries: int = 3
    retry_initial_delay: float = 1.0  # seconds
    retry_backoff: float = 2.0

    # Job registry
    max_active_jobs: int = 50
    max_completed_jobs: int = 200
    job_retention: float = 2 * 60 * 60  # seconds
    sweep_interval: float = 30 * 60  # seconds

    class Config:
        # Look for .env in the repo root (two levels up from backend/site_assets/)
        env_file = os.path.join(os.path.dirname(__file__), "..", "..", ".env")
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings():
    return Settings()
