"""Tests for configuration management system."""

import os
from unittest.mock import patch

import pytest
import yaml

from geotoolkit import logging_manager
from geotoolkit.config_manager import (
    AnalysisConfig,
    ConfigManager,
    LoggingConfig,
    LogLevel,
    get_analysis_defaults,
    get_config_manager,
    initialize_config,
)
from geotoolkit.domains.network_analysis import NetworkAnalyzer
from geotoolkit.geometry.factory import GeometryFactory


class TestLoggingConfig:
    """Test LoggingConfig dataclass validation."""

    def test_valid_logging_config(self):
        """Test creation of valid logging configuration."""
        config = LoggingConfig(level=LogLevel.DEBUG, file_path="/var/log/geotoolkit.log")
        assert config.level == LogLevel.DEBUG
        assert config.file_path == "/var/log/geotoolkit.log"
        assert config.console_output is True
        assert config.max_file_size == 10 * 1024 * 1024
        assert config.backup_count == 5
        assert config.enable_metrics is True

    def test_invalid_file_size(self):
        """Test validation of max_file_size field."""
        with pytest.raises(ValueError, match="max_file_size must be positive"):
            LoggingConfig(max_file_size=-1)

    def test_invalid_backup_count(self):
        """Test validation of backup_count field."""
        with pytest.raises(ValueError, match="backup_count must be non-negative"):
            LoggingConfig(backup_count=-1)


class TestAnalysisConfig:
    """Test AnalysisConfig defaults and validation."""

    def test_defaults(self):
        """Test default analysis parameters."""
        config = AnalysisConfig()
        assert config.earth_radius == 6371000.0
        assert config.circle_steps == 64
        assert config.rtree_max_entries == 9
        assert config.rtree_min_entries == 4
        assert config.kmeans_max_iterations == 100
        assert config.spike_angle == 160.0
        assert config.random_seed is None

    def test_invalid_earth_radius(self):
        """Test that a non-positive radius is rejected."""
        with pytest.raises(ValueError, match="earth_radius must be positive"):
            AnalysisConfig(earth_radius=0)

    def test_invalid_rtree_fill(self):
        """Test that min entries cannot exceed half the node capacity."""
        with pytest.raises(ValueError, match="rtree_min_entries"):
            AnalysisConfig(rtree_max_entries=4, rtree_min_entries=3)

    def test_invalid_spike_angle(self):
        """Test spike angle range validation."""
        with pytest.raises(ValueError, match="spike_angle"):
            AnalysisConfig(spike_angle=200)

    def test_invalid_circle_steps(self):
        """Test that circles need at least three steps."""
        with pytest.raises(ValueError, match="circle_steps must be at least 3"):
            AnalysisConfig(circle_steps=2)


class TestConfigManager:
    """Test ConfigManager loading and precedence."""

    def test_defaults_without_files(self, tmp_path):
        """Test that defaults apply when the config file does not exist."""
        manager = ConfigManager(config_file=str(tmp_path / "missing.yaml"))
        assert manager.get_logging_config().level == LogLevel.INFO
        assert manager.get_analysis_config() == AnalysisConfig()

    def test_yaml_config_loading(self, tmp_path):
        """Test loading analysis and logging settings from YAML."""
        config_file = tmp_path / "geotoolkit.yaml"
        config_file.write_text(yaml.safe_dump({
            'logging': {'level': 'warning', 'backup_count': 2},
            'analysis': {'earth_radius': 6378137.0, 'max_paths': 25},
        }))

        manager = ConfigManager(config_file=str(config_file))
        logging_config = manager.get_logging_config()
        analysis_config = manager.get_analysis_config()

        assert logging_config.level == LogLevel.WARNING
        assert logging_config.backup_count == 2
        assert analysis_config.earth_radius == 6378137.0
        assert analysis_config.max_paths == 25
        assert manager.validation_errors is None

    def test_env_var_substitution(self, tmp_path):
        """Test ${VAR} and ${VAR:default} substitution in YAML content."""
        config_file = tmp_path / "geotoolkit.yaml"
        config_file.write_text(
            "logging:\n"
            "  file_path: ${GEOTOOLKIT_TEST_LOG_DIR}/geo.log\n"
            "analysis:\n"
            "  cluster_k: ${GEOTOOLKIT_TEST_MISSING:7}\n"
        )

        with patch.dict(os.environ, {'GEOTOOLKIT_TEST_LOG_DIR': '/tmp/logs'}):
            manager = ConfigManager(config_file=str(config_file))

        assert manager.get_logging_config().file_path == "/tmp/logs/geo.log"
        assert manager.get_analysis_config().cluster_k == 7

    def test_environment_overrides_yaml(self, tmp_path):
        """Test that environment variables take precedence over YAML."""
        config_file = tmp_path / "geotoolkit.yaml"
        config_file.write_text(yaml.safe_dump({'analysis': {'buffer_steps': 16}}))

        env = {
            'GEOTOOLKIT_LOG_LEVEL': 'ERROR',
            'GEOTOOLKIT_ANALYSIS_BUFFER_STEPS': '32',
            'GEOTOOLKIT_ANALYSIS_DBSCAN_EPSILON': '2.5',
        }
        with patch.dict(os.environ, env):
            manager = ConfigManager(config_file=str(config_file))

        assert manager.get_logging_config().level == LogLevel.ERROR
        analysis = manager.get_analysis_config()
        assert analysis.buffer_steps == 32
        assert analysis.dbscan_epsilon == 2.5

    def test_invalid_env_number_is_ignored(self, tmp_path):
        """Test that a non-numeric analysis override falls back to the default."""
        with patch.dict(os.environ, {'GEOTOOLKIT_ANALYSIS_MAX_PATHS': 'many'}):
            manager = ConfigManager(config_file=str(tmp_path / "missing.yaml"))
        assert manager.get_analysis_config().max_paths == 10

    def test_unknown_analysis_key_reported(self, tmp_path):
        """Test that pydantic validation reports unknown analysis settings."""
        config_file = tmp_path / "geotoolkit.yaml"
        config_file.write_text(yaml.safe_dump({'analysis': {'warp_factor': 9}}))

        manager = ConfigManager(config_file=str(config_file))

        assert manager.validation_errors is not None
        assert "warp_factor" in manager.validation_errors
        assert manager.get_analysis_config() == AnalysisConfig()

    def test_has_config_changed(self, tmp_path):
        """Test modification tracking of loaded files."""
        config_file = tmp_path / "geotoolkit.yaml"
        config_file.write_text(yaml.safe_dump({'analysis': {'cluster_k': 3}}))
        manager = ConfigManager(config_file=str(config_file))
        assert manager.has_config_changed() is False

        stat = config_file.stat()
        os.utime(config_file, (stat.st_atime, stat.st_mtime + 10))
        assert manager.has_config_changed() is True


class TestGlobalConfig:
    """Test the global configuration accessors."""

    def test_get_config_manager_is_cached(self):
        """Test that the global manager is created once."""
        assert get_config_manager() is get_config_manager()

    def test_initialize_config_replaces_global(self, tmp_path):
        """Test that initialize_config installs a new global manager."""
        config_file = tmp_path / "geotoolkit.yaml"
        config_file.write_text(yaml.safe_dump({'analysis': {'spike_angle': 120}}))

        manager = initialize_config(str(config_file))

        assert get_config_manager() is manager
        assert get_analysis_defaults().spike_angle == 120

    def test_engines_read_environment_overrides(self):
        """Test that engines built without a config see GEOTOOLKIT_ANALYSIS_* overrides."""
        env = {'GEOTOOLKIT_ANALYSIS_CIRCLE_STEPS': '8', 'GEOTOOLKIT_ANALYSIS_MAX_PATHS': '3'}
        with patch.dict(os.environ, env):
            initialize_config()
            circle = GeometryFactory().create_circle([0, 0], 1000)
            analyzer = NetworkAnalyzer()

        assert len(circle.exterior) == 9
        assert analyzer.config.max_paths == 3

    def test_explicit_config_wins(self):
        """Test that an injected AnalysisConfig bypasses the global defaults."""
        with patch.dict(os.environ, {'GEOTOOLKIT_ANALYSIS_CIRCLE_STEPS': '8'}):
            initialize_config()
            factory = GeometryFactory(AnalysisConfig(circle_steps=12))

        assert len(factory.create_circle([0, 0], 1000).exterior) == 13

    def test_logging_manager_reads_logging_section(self, tmp_path, monkeypatch):
        """Test that the global logging manager is built from the logging section."""
        config_file = tmp_path / "geotoolkit.yaml"
        config_file.write_text(yaml.safe_dump({'logging': {'level': 'error', 'backup_count': 1}}))
        initialize_config(str(config_file))

        created = []
        monkeypatch.setattr(logging_manager, '_logging_manager', None)
        monkeypatch.setattr(logging_manager, 'LoggingManager', created.append)
        logging_manager.get_logging_manager()

        assert created[0].level == LogLevel.ERROR
        assert created[0].backup_count == 1
