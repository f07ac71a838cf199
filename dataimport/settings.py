"""Process-wide engine settings read from the environment."""

import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {value!r}") from e


@dataclass
class EngineSettings:
    """Host-level limits applied to every job."""
    default_batch_size: int = 200
    max_records: int = 100000
    max_concurrent_jobs: int = 4
    error_page_size: int = 100
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, prefix: str = "DATAIMPORT_") -> "EngineSettings":
        """Load settings, falling back to defaults for unset variables."""
        return cls(
            default_batch_size=_env_int(f"{prefix}BATCH_SIZE", 200),
            max_records=_env_int(f"{prefix}MAX_RECORDS", 100000),
            max_concurrent_jobs=_env_int(f"{prefix}MAX_CONCURRENT_JOBS", 4),
            error_page_size=_env_int(f"{prefix}ERROR_PAGE_SIZE", 100),
            log_level=os.environ.get(f"{prefix}LOG_LEVEL", "INFO").upper(),
        )


_settings: Optional[EngineSettings] = None


def get_settings() -> EngineSettings:
    """Get the cached settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = EngineSettings.from_env()
    return _settings
