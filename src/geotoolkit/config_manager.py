"""Configuration management system for geotoolkit.

Provides layered configuration from built-in defaults, YAML files and
environment variables, with ``${VAR}`` substitution inside YAML, typed
sections for logging and analysis defaults, and pydantic validation of
the merged tree.
"""

import os
import re
import time
import threading
from pathlib import Path
from typing import Any, Dict, Optional
from enum import Enum
from dataclasses import dataclass, fields

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, validator, root_validator
from pydantic import ValidationError as PydanticValidationError


class LogLevel(str, Enum):
    """Supported logging levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class LoggingConfig:
    """Structured logging configuration."""
    level: LogLevel = LogLevel.INFO
    file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    console_output: bool = True
    enable_metrics: bool = True

    def __post_init__(self):
        """Validate logging configuration."""
        if self.max_file_size <= 0:
            raise ValueError(f"max_file_size must be positive, got {self.max_file_size}")
        if self.backup_count < 0:
            raise ValueError(f"backup_count must be non-negative, got {self.backup_count}")


@dataclass
class AnalysisConfig:
    """Default parameters for geometry and analysis engines."""
    earth_radius: float = 6371000.0
    circle_steps: int = 64
    buffer_steps: int = 64
    rtree_max_entries: int = 9
    rtree_min_entries: int = 4
    kmeans_max_iterations: int = 100
    dbscan_epsilon: float = 100.0
    dbscan_min_points: int = 3
    cluster_k: int = 5
    max_paths: int = 10
    max_path_depth: int = 64
    spike_angle: float = 160.0
    random_seed: Optional[int] = None

    def __post_init__(self):
        """Validate analysis defaults."""
        if self.earth_radius <= 0:
            raise ValueError(f"earth_radius must be positive, got {self.earth_radius}")
        if self.circle_steps < 3:
            raise ValueError(f"circle_steps must be at least 3, got {self.circle_steps}")
        if self.buffer_steps < 3:
            raise ValueError(f"buffer_steps must be at least 3, got {self.buffer_steps}")
        if self.rtree_min_entries < 1 or self.rtree_min_entries * 2 > self.rtree_max_entries + 1:
            raise ValueError(
                f"rtree_min_entries must be between 1 and (max_entries + 1) / 2, "
                f"got {self.rtree_min_entries} for max {self.rtree_max_entries}"
            )
        if self.kmeans_max_iterations <= 0:
            raise ValueError(f"kmeans_max_iterations must be positive, got {self.kmeans_max_iterations}")
        if self.dbscan_epsilon <= 0:
            raise ValueError(f"dbscan_epsilon must be positive, got {self.dbscan_epsilon}")
        if self.dbscan_min_points <= 0:
            raise ValueError(f"dbscan_min_points must be positive, got {self.dbscan_min_points}")
        if self.cluster_k <= 0:
            raise ValueError(f"cluster_k must be positive, got {self.cluster_k}")
        if self.max_paths <= 0:
            raise ValueError(f"max_paths must be positive, got {self.max_paths}")
        if self.max_path_depth <= 0:
            raise ValueError(f"max_path_depth must be positive, got {self.max_path_depth}")
        if not 0 < self.spike_angle <= 180:
            raise ValueError(f"spike_angle must be in (0, 180], got {self.spike_angle}")


class GeoToolkitConfig(BaseModel):
    """Root configuration model with validation."""

    logging: Dict[str, Any] = Field(default_factory=dict)
    analysis: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "allow"

    @root_validator(pre=True)
    def validate_structure(cls, values):
        """Validate overall configuration structure."""
        if not isinstance(values, dict):
            raise ValueError("Configuration must be a dictionary")
        return values

    @validator('analysis')
    def validate_analysis(cls, v):
        """Reject analysis keys that AnalysisConfig does not define."""
        known = {f.name for f in fields(AnalysisConfig)}
        unknown = sorted(set(v) - known)
        if unknown:
            raise ValueError(f"Unknown analysis settings: {unknown}")
        return v


class ConfigManager:
    """Centralized configuration manager supporting environment variables and YAML files."""

    DEFAULT_CONFIG_FILES = [
        "./geotoolkit.yaml",
        "~/.geotoolkit.yaml",
        "/etc/geotoolkit.yaml"
    ]

    ENV_PREFIX = "GEOTOOLKIT_"

    def __init__(self, config_file: Optional[str] = None):
        """Initialize configuration manager.

        Args:
            config_file: Specific config file to load. If None, searches default locations.
        """
        self._config_file = config_file
        self._config_data: Dict[str, Any] = {}
        self._last_reload = 0.0
        self._file_mtimes: Dict[str, float] = {}
        self._validation_errors: Optional[str] = None
        self._lock = threading.Lock()

        load_dotenv()

        self.reload_config()

    def reload_config(self) -> None:
        """Reload configuration from all sources with proper precedence."""
        with self._lock:
            self._config_data = {}

            # 1. Load defaults
            self._apply_defaults()

            # 2. Load from YAML files (discovery order)
            yaml_data = self._load_yaml_config()
            if yaml_data:
                self._merge_config(yaml_data)

            # 3. Override with environment variables
            env_data = self._load_env_config()
            if env_data:
                self._merge_config(env_data)

            # 4. Validate final configuration
            self._validate_config()

            self._last_reload = time.time()

    def get_logging_config(self) -> LoggingConfig:
        """Get logging configuration."""
        logging_data = self._config_data.get('logging', {})
        return LoggingConfig(
            level=LogLevel(logging_data.get('level', LogLevel.INFO.value)),
            file_path=logging_data.get('file_path'),
            max_file_size=logging_data.get('max_file_size', 10 * 1024 * 1024),
            backup_count=logging_data.get('backup_count', 5),
            console_output=logging_data.get('console_output', True),
            enable_metrics=logging_data.get('enable_metrics', True)
        )

    def get_analysis_config(self) -> AnalysisConfig:
        """Get analysis defaults."""
        analysis_data = self._config_data.get('analysis', {})
        known = {f.name for f in fields(AnalysisConfig)}
        return AnalysisConfig(**{k: v for k, v in analysis_data.items() if k in known})

    @property
    def validation_errors(self) -> Optional[str]:
        """Errors reported by the last validation pass, if any."""
        return self._validation_errors

    def has_config_changed(self) -> bool:
        """Check if any configuration files have been modified since last reload."""
        for file_path, last_mtime in self._file_mtimes.items():
            try:
                current_mtime = os.path.getmtime(file_path)
                if current_mtime > last_mtime:
                    return True
            except OSError:
                # File might have been deleted
                continue
        return False

    def _apply_defaults(self) -> None:
        """Apply default configuration values."""
        self._config_data = {
            'logging': {
                'level': LogLevel.INFO.value,
                'console_output': True
            },
            'analysis': {}
        }

    def _load_yaml_config(self) -> Optional[Dict[str, Any]]:
        """Load configuration from the first YAML file found."""
        config_files = [self._config_file] if self._config_file else self.DEFAULT_CONFIG_FILES

        for file_path in config_files:
            if not file_path:
                continue

            expanded_path = Path(file_path).expanduser()

            if expanded_path.exists():
                try:
                    with open(expanded_path, 'r') as f:
                        content = f.read()

                    content = self._substitute_env_vars(content)
                    yaml_data = yaml.safe_load(content)

                    self._file_mtimes[str(expanded_path)] = os.path.getmtime(expanded_path)

                    return yaml_data
                except (OSError, yaml.YAMLError) as e:
                    print(f"Warning: Could not load config file {file_path}: {e}")
                    continue

        return None

    def _load_env_config(self) -> Dict[str, Any]:
        """Load configuration overrides from GEOTOOLKIT_* environment variables."""
        env_config: Dict[str, Any] = {
            'logging': {},
            'analysis': {}
        }

        log_level = os.getenv(f'{self.ENV_PREFIX}LOG_LEVEL')
        if log_level:
            env_config['logging']['level'] = log_level.lower()

        log_file = os.getenv(f'{self.ENV_PREFIX}LOG_FILE')
        if log_file:
            env_config['logging']['file_path'] = log_file

        # GEOTOOLKIT_ANALYSIS_<field>=value
        analysis_pattern = re.compile(rf'^{self.ENV_PREFIX}ANALYSIS_([A-Z0-9_]+)$')
        field_types = {f.name: f.type for f in fields(AnalysisConfig)}

        for key, value in os.environ.items():
            match = analysis_pattern.match(key)
            if not match:
                continue
            name = match.group(1).lower()
            if name not in field_types:
                print(f"Warning: Unknown analysis setting {key}")
                continue
            try:
                if name == 'random_seed' or field_types[name] in (int, 'int'):
                    env_config['analysis'][name] = int(value)
                else:
                    env_config['analysis'][name] = float(value)
            except ValueError:
                print(f"Warning: Invalid numeric value for {key}: {value}")

        return env_config

    def _substitute_env_vars(self, content: str) -> str:
        """Substitute environment variables in YAML content using ${VAR} syntax."""
        pattern = re.compile(r'\$\{([^}]+)\}')

        def replace_var(match):
            var_name = match.group(1)
            # Support default values: ${VAR:default_value}
            if ':' in var_name:
                var_name, default = var_name.split(':', 1)
                return os.getenv(var_name, default)
            return os.getenv(var_name, match.group(0))

        return pattern.sub(replace_var, content)

    def _merge_config(self, new_config: Dict[str, Any]) -> None:
        """Deep merge new configuration into existing configuration."""
        def deep_merge(target, source):
            for key, value in source.items():
                if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                    deep_merge(target[key], value)
                else:
                    target[key] = value

        deep_merge(self._config_data, new_config)

    def _validate_config(self) -> None:
        """Validate the final merged configuration."""
        self._validation_errors = None
        try:
            GeoToolkitConfig(**self._config_data)
        except PydanticValidationError as e:
            self._validation_errors = str(e)
            print(f"Configuration validation errors: {e}")
            # Partial configs keep working with defaults for the invalid parts


# Global configuration manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get or create global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def initialize_config(config_file: Optional[str] = None) -> ConfigManager:
    """Initialize global configuration manager with specific settings."""
    global _config_manager
    _config_manager = ConfigManager(config_file=config_file)
    return _config_manager


def get_analysis_defaults() -> AnalysisConfig:
    """Shortcut for the analysis section of the global configuration."""
    return get_config_manager().get_analysis_config()
