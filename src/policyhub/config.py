"""Global configuration: XDG paths, env vars, defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _default_data_dir() -> Path:
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "policyhub"
    return Path.home() / ".local" / "share" / "policyhub"


@dataclass
class PolicyHubConfig:
    """Application-wide configuration."""

    data_dir: Path = field(default_factory=_default_data_dir)
    sample_limit: int = 5
    chunk_size: int = 1000
    workers: int = 1
    consolidation_threshold: int = 80
    default_hours: int = 24
    verbose: bool = False

    @property
    def db_path(self) -> Path:
        return self.data_dir / "policyhub.db"

    @classmethod
    def load(cls) -> PolicyHubConfig:
        """Load config from environment variables with XDG defaults."""
        config = cls()

        env_data_dir = os.environ.get("POLICYHUB_DATA_DIR")
        if env_data_dir:
            config.data_dir = Path(env_data_dir)

        for attr, env in (
            ("sample_limit", "POLICYHUB_SAMPLE_LIMIT"),
            ("chunk_size", "POLICYHUB_CHUNK_SIZE"),
            ("workers", "POLICYHUB_WORKERS"),
            ("consolidation_threshold", "POLICYHUB_CONSOLIDATION_THRESHOLD"),
            ("default_hours", "POLICYHUB_DEFAULT_HOURS"),
        ):
            value = os.environ.get(env)
            if value:
                setattr(config, attr, int(value))

        # Keep chunking and the worker pool usable even with bad overrides
        config.chunk_size = max(config.chunk_size, 1)
        config.workers = max(config.workers, 1)
        return config
