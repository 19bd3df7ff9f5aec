"""Configuration management for MediaForge.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the MEDIAFORGE_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (MEDIAFORGE_* prefix)
2. .env file in the project root
3. Default values defined in MediaforgeConfig

Example .env file:
    MEDIAFORGE_RATE_LIMIT_MAX_JOBS=20
    MEDIAFORGE_WORKERS_PER_MODE={"image": 8, "video": 1, "audio": 2, "web": 2}
    MEDIAFORGE_BACKENDS={"image": "diffusers", "video": "http"}
    MEDIAFORGE_BACKEND_URLS={"video": "http://gpu-box:9000/invoke"}

Mapping fields (workers, timeouts, backends, backend URLs) are keyed by mode
name and are parsed from JSON when supplied through the environment.  Modes
missing from a mapping fall back to the defaults below.

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
The FastAPI application and the CLI entry point both read from it.

Usage Example
-------------
    from mediaforge.core.config import config

    print(config.timeout_for(Mode.VIDEO))
    print(config.assets_dir)
"""

import secrets
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .jobs import Mode

BackendKind = Literal["placeholder", "http", "diffusers"]

DEFAULT_WORKERS: dict[str, int] = {"image": 4, "video": 1, "audio": 2, "web": 2}
DEFAULT_TIMEOUTS: dict[str, float] = {"image": 60.0, "video": 600.0, "audio": 300.0, "web": 120.0}


class MediaforgeConfig(BaseSettings):
    """Main configuration for the MediaForge orchestrator.

    Attributes
    ----------
    Server:
        server_host, server_port : bind address for the uvicorn server
        log_level : root logging level used by ``main()``

    Paths:
        data_dir : Path
            Holds ``jobs.json`` (the persisted job table)
        assets_dir : Path
            Local object store for generated assets

    Admission:
        rate_limit_max_jobs : int
            Jobs a single user may submit inside one window
        rate_limit_window_seconds : float
            Length of the sliding admission window

    Dispatch:
        workers_per_mode : dict[str, int]
            Size of each mode's worker pool
        timeout_seconds : dict[str, float]
            Hard wall-clock budget per job, per mode
        retry_max_attempts, retry_base_delay, retry_multiplier, retry_max_delay
            Exponential backoff policy for transient backend errors
        progress_interval_seconds : float
            Minimum spacing between relayed progress updates

    Assets and retention:
        url_ttl_seconds, job_retention_seconds, purge_interval_seconds,
        signing_secret

    Backends:
        backends : dict[str, str]
            Backend kind per mode (placeholder, http, diffusers)
        backend_urls : dict[str, str]
            Inference endpoint per mode for the http backend
        backend_request_timeout : float
            Per-request transport timeout used by the http backend
        diffusers_model_id, diffusers_steps, device, torch_dtype
            Settings for the local diffusers image backend

    Notes
    -----
    - ``signing_secret`` defaults to a random value per process, so signed URLs
      do not survive a restart unless the secret is pinned in the environment.
    - Directories are created on initialization.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MEDIAFORGE_",
        case_sensitive=False,
    )

    # Server
    server_host: str = Field(default="0.0.0.0", description="Server bind address")
    server_port: int = Field(default=8000, ge=1024, le=65535, description="Server port")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    # Paths
    data_dir: Path = Field(default=Path("data"), description="Directory for jobs.json")
    assets_dir: Path = Field(default=Path("data/assets"), description="Local object store")
    persist_jobs: bool = Field(
        default=True,
        description="Flush the job table to jobs.json on shutdown and reload it on startup",
    )

    # Admission
    rate_limit_max_jobs: int = Field(default=10, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    max_prompt_length: int = Field(default=2000, ge=1)

    # Dispatch
    workers_per_mode: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_WORKERS))
    timeout_seconds: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_TIMEOUTS))
    retry_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_multiplier: float = Field(default=2.0, ge=1.0)
    retry_max_delay: float = Field(default=8.0, ge=0)
    progress_interval_seconds: float = Field(default=1.0, ge=0)

    # Assets and retention
    url_ttl_seconds: int = Field(default=900, ge=1)
    job_retention_seconds: float = Field(default=3600.0, ge=0)
    purge_interval_seconds: float = Field(default=60.0, gt=0)
    signing_secret: str = Field(default_factory=lambda: secrets.token_hex(32))

    # Moderation
    moderation_extra_terms: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Extra blocked terms per category (explicit, violent, identity-abuse)",
    )

    # Backends
    backends: dict[str, BackendKind] = Field(default_factory=dict)
    backend_urls: dict[str, str] = Field(default_factory=dict)
    backend_request_timeout: float = Field(default=30.0, gt=0)
    diffusers_model_id: str = Field(default="stabilityai/sdxl-turbo")
    diffusers_steps: int = Field(default=4, ge=1, le=50)
    device: str = Field(default="cuda", description="Device for the diffusers backend")
    torch_dtype: Literal["bfloat16", "float16", "float32"] = Field(default="bfloat16")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories."""
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.assets_dir.mkdir(parents=True, exist_ok=True)

    def workers_for(self, mode: Mode) -> int:
        """Return the worker pool size for *mode* (at least one)."""
        return max(1, self.workers_per_mode.get(mode.value, DEFAULT_WORKERS[mode.value]))

    def timeout_for(self, mode: Mode) -> float:
        """Return the wall-clock timeout in seconds for one job of *mode*."""
        return self.timeout_seconds.get(mode.value, DEFAULT_TIMEOUTS[mode.value])

    def backend_for(self, mode: Mode) -> str:
        """Return the configured backend kind for *mode*."""
        return self.backends.get(mode.value, "placeholder")

    @property
    def jobs_file(self) -> Path:
        """Location of the persisted job table."""
        return self.data_dir / "jobs.json"


# Global configuration instance, loaded from MEDIAFORGE_* variables and .env.
config = MediaforgeConfig()
