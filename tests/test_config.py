# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from s3mover.config import (
    DEFAULT_MAX_WORKERS,
    DEFAULT_PART_SIZE,
    DEFAULT_TIMEOUT_SECONDS,
    ClientConfig,
    ConfigError,
    Credentials,
    PayloadPolicy,
    Settings,
    TransferConfig,
    load_dotenv_once,
)
from s3mover.endpoint import Endpoint
from s3mover.logging import SecretFilter


CONFIG = """\
profiles:
  source:
    endpoint: https://s3.eu-central-1.amazonaws.com
    region: eu-central-1
    access_key: AKIASOURCE
    secret_key: !env S3M_SOURCE_SECRET
  target:
    endpoint: http://localhost:9000
    region: us-east-1
    access_key: !env S3M_TARGET_ACCESS
    secret_key: target-secret
    session_token: !env S3M_TARGET_TOKEN
    payload: signed
    timeout: 5
transfer:
  part_size: 5242880
  max_workers: !env S3M_WORKERS
"""


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "s3mover.yaml"
    path.write_text(text)
    return path


class TestSettingsFromYaml:
    """Tests for Settings.from_yaml."""

    def test_full_config(self, tmp_path: Path) -> None:
        """Profiles and transfer settings are parsed, !env resolved."""
        env = {
            "S3M_SOURCE_SECRET": "source-secret",
            "S3M_TARGET_ACCESS": "AKIATARGET",
            "S3M_TARGET_TOKEN": "token-123",
            "S3M_WORKERS": "8",
        }
        with patch.dict(os.environ, env):
            settings = Settings.from_yaml(_write(tmp_path, CONFIG))

        source = settings.profile("source")
        assert source.endpoint == Endpoint(
            "https", "s3.eu-central-1.amazonaws.com"
        )
        assert source.credentials.secret_key == "source-secret"
        assert source.credentials.session_token is None
        assert source.payload_policy is PayloadPolicy.UNSIGNED
        assert source.timeout_seconds == DEFAULT_TIMEOUT_SECONDS

        target = settings.profile("target")
        assert target.endpoint.port == 9000
        assert target.credentials.access_key == "AKIATARGET"
        assert target.credentials.session_token == "token-123"
        assert target.payload_policy is PayloadPolicy.SIGNED
        assert target.timeout_seconds == 5.0

        assert settings.transfer == TransferConfig(5242880, 8)

    def test_defaults(self, tmp_path: Path) -> None:
        """Transfer settings fall back to defaults."""
        settings = Settings.from_yaml(_write(tmp_path, "profiles: {}\n"))
        assert settings.profiles == {}
        assert settings.transfer.part_size == DEFAULT_PART_SIZE
        assert settings.transfer.max_workers == DEFAULT_MAX_WORKERS

    def test_missing_file(self, tmp_path: Path) -> None:
        """A missing file is a ConfigError."""
        with pytest.raises(ConfigError, match="not found"):
            Settings.from_yaml(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Unparseable YAML is a ConfigError."""
        with pytest.raises(ConfigError, match="Invalid YAML"):
            Settings.from_yaml(_write(tmp_path, "profiles: [unclosed\n"))

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        """The top level must be a mapping."""
        with pytest.raises(ConfigError, match="mapping"):
            Settings.from_yaml(_write(tmp_path, "- a\n- b\n"))

    def test_unset_env_var(self, tmp_path: Path) -> None:
        """A required !env value names the missing variable."""
        text = (
            "profiles:\n"
            "  p:\n"
            "    endpoint: https://s3.example.com\n"
            "    region: eu-west-1\n"
            "    access_key: AKIA\n"
            "    secret_key: !env S3M_UNSET_SECRET\n"
        )
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("S3M_UNSET_SECRET", None)
            with pytest.raises(ConfigError, match="S3M_UNSET_SECRET"):
                Settings.from_yaml(_write(tmp_path, text))

    def test_bad_payload_policy(self, tmp_path: Path) -> None:
        """Unknown payload policies are rejected with the choices."""
        text = (
            "profiles:\n"
            "  p:\n"
            "    endpoint: https://s3.example.com\n"
            "    region: eu-west-1\n"
            "    access_key: AKIA\n"
            "    secret_key: s\n"
            "    payload: chunked\n"
        )
        with pytest.raises(ConfigError, match="unsigned, signed"):
            Settings.from_yaml(_write(tmp_path, text))

    def test_bad_endpoint(self, tmp_path: Path) -> None:
        """Invalid endpoints are reported with the profile name."""
        text = (
            "profiles:\n"
            "  p:\n"
            "    endpoint: ftp://s3.example.com\n"
            "    region: eu-west-1\n"
            "    access_key: AKIA\n"
            "    secret_key: s\n"
        )
        with pytest.raises(ConfigError, match="profiles.p"):
            Settings.from_yaml(_write(tmp_path, text))

    def test_bad_transfer_values(self, tmp_path: Path) -> None:
        """Non-positive transfer settings are a ConfigError."""
        text = "transfer:\n  part_size: 0\n"
        with pytest.raises(ConfigError, match="transfer"):
            Settings.from_yaml(_write(tmp_path, text))

    def test_non_integer_part_size(self, tmp_path: Path) -> None:
        """Values that cannot be coerced are a ConfigError."""
        text = "transfer:\n  part_size: big\n"
        with pytest.raises(ConfigError, match="big"):
            Settings.from_yaml(_write(tmp_path, text))

    def test_unknown_profile(self, tmp_path: Path) -> None:
        """Looking up an unknown profile lists the configured ones."""
        settings = Settings.from_yaml(_write(tmp_path, "profiles: {}\n"))
        with pytest.raises(ConfigError, match="configured: none"):
            settings.profile("missing")

    def test_dotenv_file_loaded(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Variables from a .env file in the working directory are used."""
        (tmp_path / ".env").write_text("S3M_DOTENV_SECRET=from-dotenv\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("S3M_DOTENV_SECRET", raising=False)
        monkeypatch.setattr(
            "s3mover.config.get_dotenv_path", lambda: tmp_path / "none.env"
        )
        text = (
            "profiles:\n"
            "  p:\n"
            "    endpoint: https://s3.example.com\n"
            "    region: eu-west-1\n"
            "    access_key: AKIA\n"
            "    secret_key: !env S3M_DOTENV_SECRET\n"
        )
        try:
            settings = Settings.from_yaml(_write(tmp_path, text))
            secret = settings.profile("p").credentials.secret_key
            assert secret == "from-dotenv"
        finally:
            os.environ.pop("S3M_DOTENV_SECRET", None)

    def test_dotenv_loaded_once(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A second call does not re-read .env files."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(
            "s3mover.config.get_dotenv_path", lambda: tmp_path / "none.env"
        )
        load_dotenv_once()
        (tmp_path / ".env").write_text("S3M_LATE=1\n")
        monkeypatch.delenv("S3M_LATE", raising=False)
        load_dotenv_once()
        assert "S3M_LATE" not in os.environ


class TestCredentials:
    """Tests for Credentials."""

    def test_secrets_registered_for_redaction(self) -> None:
        """Secret key and session token are redacted from logs."""
        Credentials("AKIA", "very-secret", "eu-west-1", "tok-en")
        assert SecretFilter.redact("very-secret tok-en AKIA") == (
            "[REDACTED] [REDACTED] AKIA"
        )

    def test_repr_hides_secrets(self) -> None:
        """repr() never shows the secret key or token."""
        text = repr(Credentials("AKIA", "very-secret", "eu-west-1", "tok"))
        assert "very-secret" not in text
        assert "tok" not in text
        assert "AKIA" in text

    @pytest.mark.parametrize(
        "args",
        [("", "s", "r"), ("a", "", "r"), ("a", "s", "")],
        ids=["access-key", "secret-key", "region"],
    )
    def test_empty_fields_rejected(self, args: tuple[str, str, str]) -> None:
        """Every field except the token is required."""
        with pytest.raises(ValueError):
            Credentials(*args)


class TestClientConfig:
    """Tests for ClientConfig."""

    def test_string_endpoint_parsed(self) -> None:
        """A URL string is normalized to an Endpoint."""
        config = ClientConfig(
            "https://S3.example.com:443/",  # type: ignore[arg-type]
            Credentials("a", "s", "r"),
        )
        assert config.endpoint == Endpoint("https", "s3.example.com")

    def test_timeout_must_be_positive(self) -> None:
        """A zero timeout is rejected."""
        with pytest.raises(ValueError):
            ClientConfig(
                Endpoint("https", "s3.example.com"),
                Credentials("a", "s", "r"),
                timeout_seconds=0,
            )

    def test_frozen(self) -> None:
        """Configs cannot be modified after construction."""
        config = ClientConfig(
            Endpoint("https", "s3.example.com"), Credentials("a", "s", "r")
        )
        with pytest.raises(AttributeError):
            config.user_agent = "other"  # type: ignore[misc]


class TestTransferConfig:
    """Tests for TransferConfig."""

    @pytest.mark.parametrize(
        "kwargs", [{"part_size": 0}, {"max_workers": 0}]
    )
    def test_invalid(self, kwargs: dict[str, int]) -> None:
        """Part size and worker count must be positive."""
        with pytest.raises(ValueError):
            TransferConfig(**kwargs)
