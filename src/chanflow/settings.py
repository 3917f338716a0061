"""
Engine settings with environment variable overrides (``CHANFLOW_*``).
"""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings using Pydantic for validation
    and environment variable support.
    """

    # Task work directories live below this root
    work_dir: Path = Field(default_factory=lambda: Path.cwd() / "work")

    # Persisted cache entries, defaults to <work_dir>/.cache
    cache_dir: Optional[Path] = Field(default=None, validate_default=True)

    max_workers: int = Field(
        default=4, description="Maximum number of tasks running in parallel"
    )

    default_executor: str = Field(
        default="local", description="Executor used when a process names none"
    )

    shell: str = Field(default="bash", description="Shell running task scripts")

    log_level: str = Field(default="INFO", description="Logging level")

    model_config = {
        "env_prefix": "CHANFLOW_",
        "case_sensitive": False,
    }

    @field_validator("cache_dir")
    @classmethod
    def set_cache_dir(cls, v, info):
        work_dir = info.data.get("work_dir") or Path.cwd() / "work"
        return v or Path(work_dir) / ".cache"

    @field_validator("max_workers")
    @classmethod
    def check_max_workers(cls, v):
        if v < 1:
            raise ValueError("max_workers must be at least 1")
        return v

    def create_directories(self) -> None:
        """Create the work and cache directories if they don't exist."""
        for directory in (self.work_dir, self.cache_dir):
            if directory:
                directory.mkdir(parents=True, exist_ok=True)


settings = Settings()
