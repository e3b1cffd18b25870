"""Unit tests for configuration loading and validation."""

from pathlib import Path

from cloudflare_route53_controller.cli import (
    DEFAULT_ANNOTATION_PREFIX,
    ControllerConfig,
    load_config,
    validate_config,
)


def valid_config(**overrides) -> ControllerConfig:
    values = dict(
        hosted_zone_id="Z123",
        cloudflare_zone_name="example.com",
        cloudflare_token="token",
    )
    values.update(overrides)
    return ControllerConfig(**values)


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults_without_file_or_env(self, tmp_path: Path) -> None:
        config = load_config(environ={}, config_path=str(tmp_path / "missing.yaml"))

        assert config == ControllerConfig()
        assert config.annotation_prefix == DEFAULT_ANNOTATION_PREFIX
        assert config.workers == 1
        assert config.resync_interval_seconds == 30
        assert config.enable_additional_hosts is False

    def test_env_values(self) -> None:
        env = {
            "ANNOTATION_PREFIX": "dns.acme.io",
            "HOSTED_ZONE_ID": "Z123",
            "CLOUDFLARE_ZONE_NAME": "example.com",
            "CLOUDFLARE_TOKEN": "token",
            "CLOUDFLARE_EMAIL": "ops@example.com",
            "ENABLE_ADDITIONAL_HOSTS_ANNOTATIONS": "true",
            "WORKERS": "4",
            "FREQUENCY_SECONDS": "15",
            "PROVIDER_TIMEOUT_SECONDS": "2.5",
            "WATCH_NAMESPACE": "web",
        }

        config = load_config(environ=env, config_path="")

        assert config.annotation_prefix == "dns.acme.io"
        assert config.hosted_zone_id == "Z123"
        assert config.cloudflare_zone_name == "example.com"
        assert config.cloudflare_token == "token"
        assert config.cloudflare_email == "ops@example.com"
        assert config.enable_additional_hosts is True
        assert config.workers == 4
        assert config.resync_interval_seconds == 15
        assert config.provider_timeout_seconds == 2.5
        assert config.watch_namespace == "web"

    def test_yaml_file_values(self, tmp_path: Path) -> None:
        config_file = tmp_path / "controller.yaml"
        config_file.write_text(
            """
hosted_zone_id: ZFILE
cloudflare_zone_name: example.org
enable_additional_hosts: true
workers: 3
retry_max_delay_seconds: 60
"""
        )

        config = load_config(environ={}, config_path=str(config_file))

        assert config.hosted_zone_id == "ZFILE"
        assert config.cloudflare_zone_name == "example.org"
        assert config.enable_additional_hosts is True
        assert config.workers == 3
        assert config.retry_max_delay_seconds == 60.0

    def test_env_overrides_yaml_file(self, tmp_path: Path) -> None:
        config_file = tmp_path / "controller.yaml"
        config_file.write_text("hosted_zone_id: ZFILE\nworkers: 3\n")

        config = load_config(
            environ={"HOSTED_ZONE_ID": "ZENV", "WORKERS": ""}, config_path=str(config_file)
        )

        assert config.hosted_zone_id == "ZENV"
        assert config.workers == 3

    def test_config_path_from_env(self, tmp_path: Path) -> None:
        config_file = tmp_path / "controller.yaml"
        config_file.write_text("cloudflare_zone_name: example.net\n")

        config = load_config(environ={"CONFIG_PATH": str(config_file)})

        assert config.cloudflare_zone_name == "example.net"

    def test_invalid_yaml_is_ignored(self, tmp_path: Path) -> None:
        config_file = tmp_path / "controller.yaml"
        config_file.write_text("hosted_zone_id: [unclosed\n")

        config = load_config(environ={"HOSTED_ZONE_ID": "Z123"}, config_path=str(config_file))

        assert config.hosted_zone_id == "Z123"

    def test_non_mapping_yaml_and_unknown_keys_are_ignored(self, tmp_path: Path) -> None:
        list_file = tmp_path / "list.yaml"
        list_file.write_text("- a\n- b\n")
        unknown_file = tmp_path / "unknown.yaml"
        unknown_file.write_text("colour: blue\nworkers: 2\n")

        assert load_config(environ={}, config_path=str(list_file)) == ControllerConfig()
        assert load_config(environ={}, config_path=str(unknown_file)).workers == 2

    def test_malformed_numbers_fall_back_to_defaults(self) -> None:
        config = load_config(
            environ={"WORKERS": "many", "PROVIDER_TIMEOUT_SECONDS": "soon"}, config_path=""
        )

        assert config.workers == 1
        assert config.provider_timeout_seconds == 10.0

    def test_malformed_boolean_is_false(self) -> None:
        config = load_config(
            environ={"ENABLE_ADDITIONAL_HOSTS_ANNOTATIONS": "maybe"}, config_path=""
        )

        assert config.enable_additional_hosts is False


class TestValidateConfig:
    """Tests for validate_config."""

    def test_valid_config_has_no_errors(self) -> None:
        assert validate_config(valid_config()) == []

    def test_required_values(self) -> None:
        errors = validate_config(ControllerConfig())

        assert "HOSTED_ZONE_ID is required" in errors
        assert "CLOUDFLARE_ZONE_NAME is required" in errors
        assert "CLOUDFLARE_TOKEN is required" in errors

    def test_numeric_bounds(self) -> None:
        errors = validate_config(
            valid_config(
                workers=0,
                resync_interval_seconds=0,
                provider_timeout_seconds=0,
                retry_base_delay_seconds=5,
                retry_max_delay_seconds=1,
            )
        )

        assert len(errors) == 4
        assert any(e.startswith("WORKERS") for e in errors)
        assert any(e.startswith("FREQUENCY_SECONDS") for e in errors)
        assert any(e.startswith("PROVIDER_TIMEOUT_SECONDS") for e in errors)
        assert any(e.startswith("RETRY_BASE_DELAY_SECONDS") for e in errors)
