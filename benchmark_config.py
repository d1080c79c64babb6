#!/usr/bin/env python3

"""
Configuration for benchmark runs.

Defines timeouts, concurrency and file selection parameters for a
call-hierarchy benchmark run, plus the JSON file format that also carries
per-language server overrides.
"""

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from errors import ConfigurationError

DEFAULT_SKIP_DIRS: tuple[str, ...] = (
    "node_modules",
    "target",
    ".git",
    "dist",
    "build",
    "__pycache__",
    ".next",
    "vendor",
    ".venv",
    "venv",
)


@dataclass
class BenchmarkConfig:
    """Configuration for a benchmark run."""

    # Timeouts (seconds)
    request_timeout: float = 30.0
    startup_timeout: float = 60.0
    shutdown_grace: float = 5.0
    spawn_probe: float = 0.2

    # Some servers resolve more call hierarchy items once indexing has settled
    warmup_delay: float = 0.0

    # Concurrency
    max_concurrency: int = 4

    # Symbol selection
    max_symbols: int | None = None
    include_glob: str | None = None
    exclude_glob: str | None = None
    skip_dirs: tuple[str, ...] = DEFAULT_SKIP_DIRS
    max_depth: int | None = None

    # Document sync
    close_documents: bool = True

    # Per-language server overrides, see language_config.build_language_table
    servers: dict[str, dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        """Normalize and validate configuration."""
        if isinstance(self.skip_dirs, list):
            self.skip_dirs = tuple(self.skip_dirs)
        self.validate()

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> "BenchmarkConfig":
        """Create configuration from dictionary.

        Args:
            config_dict: Configuration dictionary

        Returns:
            BenchmarkConfig instance

        Raises:
            ConfigurationError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = set(config_dict) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(**config_dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, tuple):
                value = list(value)
            result[f.name] = value
        return result

    def validate(self) -> None:
        """Validate configuration parameters.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        errors = []
        if self.request_timeout <= 0:
            errors.append("request_timeout must be positive")
        if self.startup_timeout <= 0:
            errors.append("startup_timeout must be positive")
        if self.shutdown_grace < 0:
            errors.append("shutdown_grace must be non-negative")
        if self.spawn_probe < 0:
            errors.append("spawn_probe must be non-negative")
        if self.warmup_delay < 0:
            errors.append("warmup_delay must be non-negative")
        if self.max_concurrency <= 0:
            errors.append("max_concurrency must be positive")
        if self.max_symbols is not None and self.max_symbols <= 0:
            errors.append("max_symbols must be positive")
        if self.max_depth is not None and self.max_depth <= 0:
            errors.append("max_depth must be positive")
        if not isinstance(self.servers, dict):
            errors.append("servers must be an object")

        if errors:
            raise ConfigurationError(f"Invalid configuration: {', '.join(errors)}")

    def merge_with(self, overrides: dict[str, Any]) -> "BenchmarkConfig":
        """Return a new configuration with the given values replaced.

        ``None`` values in ``overrides`` are ignored so unset command-line
        options keep the file or default value.
        """
        merged = self.to_dict()
        merged.update({k: v for k, v in overrides.items() if v is not None})
        return BenchmarkConfig.from_dict(merged)

    def save_to_file(self, file_path: str) -> None:
        """Save configuration to JSON file."""
        with open(file_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load_from_file(cls, file_path: str | Path) -> "BenchmarkConfig":
        """Load configuration from JSON file.

        Args:
            file_path: Path to load configuration from

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If file cannot be read or parsed
        """
        try:
            with open(file_path) as f:
                data = json.load(f)
        except (FileNotFoundError, OSError) as e:
            raise ConfigurationError(f"Failed to load config from {file_path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {file_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {file_path} must contain a JSON object")
        return cls.from_dict(data)
