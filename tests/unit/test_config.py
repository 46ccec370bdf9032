"""
Unit tests for runner configuration from environment variables.
"""

import logging

import pytest

from ci_controller.config import (
    DEFAULT_RUNNER_IMAGES,
    RunnerConfig,
    get_environment_kind,
    parse_runner_images,
    parse_timeout,
)


class TestRunnerConfig:
    """Test suite for RunnerConfig.from_env."""

    def test_defaults(self):
        config = RunnerConfig.from_env({})

        assert config.environment == "local"
        assert config.container_prefix == "ci_"
        assert config.runner_images == DEFAULT_RUNNER_IMAGES
        assert config.db_path is None
        assert config.job_timeout_minutes is None

    def test_from_environment(self):
        config = RunnerConfig.from_env(
            {
                "CI_ENVIRONMENT": "Docker",
                "CI_CONTAINER_PREFIX": "test_",
                "CI_RUNNER_IMAGES": "ubuntu-latest=rust:1.75, alpine=rust:alpine",
                "CI_DB_PATH": "/var/lib/ci/runs.db",
                "CI_JOB_TIMEOUT_MINUTES": "45",
            }
        )

        assert config.environment == "docker"
        assert config.container_prefix == "test_"
        assert config.runner_images == {"ubuntu-latest": "rust:1.75", "alpine": "rust:alpine"}
        assert config.db_path == "/var/lib/ci/runs.db"
        assert config.job_timeout_minutes == 45.0

    def test_default_images_not_shared(self):
        config = RunnerConfig()
        config.runner_images["extra"] = "image"
        assert "extra" not in DEFAULT_RUNNER_IMAGES


class TestParsers:
    """Test suite for individual variable parsers."""

    def test_invalid_environment_kind(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert get_environment_kind("kubernetes") == "local"
        assert "CI_ENVIRONMENT" in caplog.text

    def test_malformed_image_entries_skipped(self, caplog):
        with caplog.at_level(logging.WARNING):
            images = parse_runner_images("ubuntu-latest=rust:1.75,broken,=noimage,nolabel=")
        assert images == {"ubuntu-latest": "rust:1.75"}
        assert "broken" in caplog.text

    def test_all_images_malformed_uses_default(self):
        assert parse_runner_images("broken") == DEFAULT_RUNNER_IMAGES

    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, None),
            ("", None),
            ("30", 30.0),
            ("0.5", 0.5),
            ("0", None),
            ("-5", None),
            ("soon", None),
        ],
    )
    def test_parse_timeout(self, value, expected):
        assert parse_timeout(value) == expected
