# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Configuration for s3mover.

Profiles (endpoint + credentials) and transfer settings are loaded from a
YAML file.  The default location follows the XDG Base Directory
Specification:

    ``$XDG_CONFIG_HOME/s3mover/s3mover.yaml``
    (typically ``~/.config/s3mover/s3mover.yaml``)

``!env`` tags resolve values from environment variables, so credentials
can live in the environment (or a ``.env`` file) instead of the YAML.

Every config object is frozen: a client's credentials and endpoint do not
change after it is constructed.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from platformdirs import user_config_path

from s3mover.endpoint import Endpoint
from s3mover.logging import register_credentials


logger = logging.getLogger(__name__)

#: Application name for XDG path resolution.
_APP_NAME = "s3mover"

#: Default multipart part size (bytes).  Objects at or below it are copied
#: with a single request.
DEFAULT_PART_SIZE = 10_100_000

DEFAULT_MAX_WORKERS = 4

DEFAULT_TIMEOUT_SECONDS = 60.0


class ConfigError(Exception):
    """Base exception for configuration errors."""


def get_config_path() -> Path:
    """Return the default config file path (XDG)."""
    return user_config_path(_APP_NAME) / "s3mover.yaml"


def get_dotenv_path() -> Path:
    """Return the ``.env`` path inside the XDG config directory."""
    return user_config_path(_APP_NAME) / ".env"


# ---------------------------------------------------------------------------
# .env loading
# ---------------------------------------------------------------------------

_dotenv_loaded = False


def load_dotenv_once() -> None:
    """Load .env files once, if not already loaded.

    Loads the XDG config directory's ``.env`` first, then the current
    working directory's.  ``python-dotenv`` does not overwrite variables
    that are already set, so the XDG file wins over the CWD one and the
    real environment wins over both.
    """
    global _dotenv_loaded
    if _dotenv_loaded:
        return

    for path in (get_dotenv_path(), Path.cwd() / ".env"):
        if path.exists():
            load_dotenv(path)
            logger.debug("Loaded .env from %s", path)

    _dotenv_loaded = True


def reset_dotenv_state() -> None:
    """Reset the dotenv loaded state. For testing only."""
    global _dotenv_loaded
    _dotenv_loaded = False


# ---------------------------------------------------------------------------
# Config objects
# ---------------------------------------------------------------------------


class PayloadPolicy(Enum):
    """How streamed request bodies are signed.

    UNSIGNED sends the ``UNSIGNED-PAYLOAD`` sentinel and streams the body.
    SIGNED buffers the body up to its declared length and signs its
    SHA-256, for targets that refuse unsigned payloads.
    """

    UNSIGNED = "unsigned"
    SIGNED = "signed"


@dataclass(frozen=True)
class Credentials:
    """Access credentials for one endpoint.

    Attributes:
        access_key: Access key ID.
        secret_key: Secret access key (redacted from logs).
        region: Signing region, e.g. ``eu-central-1``.
        session_token: Temporary-credential token (redacted from logs).
    """

    access_key: str
    secret_key: str = field(repr=False)
    region: str
    session_token: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        """Validate and register secrets for log redaction.

        Raises:
            ValueError: If a required field is empty.
        """
        if not self.access_key:
            raise ValueError("access_key must not be empty")
        if not self.secret_key:
            raise ValueError("secret_key must not be empty")
        if not self.region:
            raise ValueError("region must not be empty")
        register_credentials(self)


@dataclass(frozen=True)
class ClientConfig:
    """Everything an S3Client needs, fixed at construction.

    Attributes:
        endpoint: Parsed endpoint (a URL string is parsed on construction).
        credentials: Signing credentials.
        payload_policy: Signing policy for streamed bodies.
        timeout_seconds: HTTP timeout for the default executor.
        user_agent: User-Agent header value.
    """

    endpoint: Endpoint
    credentials: Credentials
    payload_policy: PayloadPolicy = PayloadPolicy.UNSIGNED
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    user_agent: str = _APP_NAME

    def __post_init__(self) -> None:
        """Parse a string endpoint and validate.

        Raises:
            ValueError: If the endpoint or timeout is invalid.
        """
        if isinstance(self.endpoint, str):
            # Frozen dataclass: bypass __setattr__ for the normalized value
            object.__setattr__(self, "endpoint", Endpoint.parse(self.endpoint))
        if self.timeout_seconds <= 0:
            raise ValueError(
                f"Timeout must be positive: {self.timeout_seconds}"
            )


@dataclass(frozen=True)
class TransferConfig:
    """Multipart transfer settings.

    Attributes:
        part_size: Bytes per part; also the single-request threshold.
        max_workers: Parts transferred concurrently.
    """

    part_size: int = DEFAULT_PART_SIZE
    max_workers: int = DEFAULT_MAX_WORKERS

    def __post_init__(self) -> None:
        """Validate configuration.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.part_size < 1:
            raise ValueError(f"Part size must be >= 1: {self.part_size}")
        if self.max_workers < 1:
            raise ValueError(f"Max workers must be >= 1: {self.max_workers}")


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)  # type: ignore[arg-type]
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


_MISSING = object()


def _resolve(
    value: object,
    coerce: type[Any],
    *,
    default: object = _MISSING,
    required: str = "",
) -> Any:
    """Resolve a YAML value, handling ``!env`` tags and type coercion.

    Args:
        value: Raw value from YAML (may be ``_EnvVar``, None or a literal).
        coerce: Target type (``str``, ``int``, ``float``).
        default: Default when the value is absent.
        required: Human-readable field name.  When set, raises
            ``ConfigError`` if the value is absent or empty.

    Returns:
        The resolved, coerced value, or None when optional and absent.

    Raises:
        ConfigError: Required value missing, or coercion failed.
    """
    if isinstance(value, _EnvVar):
        resolved = os.environ.get(value.var_name)
    elif value is None:
        resolved = None
    elif isinstance(value, coerce) and not isinstance(value, bool):
        return value
    else:
        resolved = str(value)

    if resolved is None or (required and resolved == ""):
        if required:
            if isinstance(value, _EnvVar):
                raise ConfigError(
                    f"Required config '{required}': environment variable "
                    f"'{value.var_name}' is not set"
                )
            raise ConfigError(f"Required config '{required}' is missing")
        if default is not _MISSING:
            return default
        return None

    try:
        return coerce(resolved)
    except ValueError as exc:
        raise ConfigError(
            f"Cannot convert {resolved!r} to {coerce.__name__}"
        ) from exc


def _parse_payload_policy(value: object, where: str) -> PayloadPolicy:
    raw = _resolve(value, str, default=PayloadPolicy.UNSIGNED.value)
    try:
        return PayloadPolicy(raw.strip().lower())
    except ValueError as exc:
        choices = ", ".join(p.value for p in PayloadPolicy)
        raise ConfigError(
            f"{where}.payload must be one of {choices}, got {raw!r}"
        ) from exc


def _parse_profile(name: str, raw: dict) -> ClientConfig:
    """Parse one entry under ``profiles:``."""
    where = f"profiles.{name}"
    try:
        credentials = Credentials(
            access_key=_resolve(
                raw.get("access_key"), str, required=f"{where}.access_key"
            ),
            secret_key=_resolve(
                raw.get("secret_key"), str, required=f"{where}.secret_key"
            ),
            region=_resolve(raw.get("region"), str, required=f"{where}.region"),
            session_token=_resolve(raw.get("session_token"), str) or None,
        )
        return ClientConfig(
            endpoint=Endpoint.parse(
                _resolve(raw.get("endpoint"), str, required=f"{where}.endpoint")
            ),
            credentials=credentials,
            payload_policy=_parse_payload_policy(raw.get("payload"), where),
            timeout_seconds=_resolve(
                raw.get("timeout"), float, default=DEFAULT_TIMEOUT_SECONDS
            ),
        )
    except ValueError as exc:
        raise ConfigError(f"{where}: {exc}") from exc


@dataclass(frozen=True)
class Settings:
    """Top-level configuration: named profiles plus transfer settings.

    Attributes:
        profiles: Client configuration by profile name.
        transfer: Multipart transfer settings.
    """

    profiles: dict[str, ClientConfig] = field(default_factory=dict)
    transfer: TransferConfig = field(default_factory=TransferConfig)

    def profile(self, name: str) -> ClientConfig:
        """Return a profile by name.

        Raises:
            ConfigError: If no such profile is configured.
        """
        try:
            return self.profiles[name]
        except KeyError:
            known = ", ".join(sorted(self.profiles)) or "none"
            raise ConfigError(
                f"Unknown profile '{name}' (configured: {known})"
            ) from None

    @classmethod
    def from_yaml(cls, config_path: Path | None = None) -> "Settings":
        """Load settings from a YAML file.

        Values tagged with ``!env VAR_NAME`` are resolved from the
        environment at load time.  ``.env`` files are loaded first.

        Args:
            config_path: Path to the YAML file.  Defaults to
                ``~/.config/s3mover/s3mover.yaml`` (XDG).

        Returns:
            Settings instance.

        Raises:
            ConfigError: If the file is missing or values are invalid.
        """
        load_dotenv_once()

        if config_path is None:
            config_path = get_config_path()

        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            try:
                raw = yaml.load(f, Loader=_make_loader())  # noqa: S506
            except yaml.YAMLError as exc:
                raise ConfigError(
                    f"Invalid YAML in {config_path}: {exc}"
                ) from exc

        if not isinstance(raw, dict):
            raise ConfigError(
                f"Config file must be a YAML mapping: {config_path}"
            )

        settings = cls._from_raw(raw)
        logger.debug(
            "Loaded %d profile(s) from %s", len(settings.profiles), config_path
        )
        return settings

    @classmethod
    def _from_raw(cls, raw: dict) -> "Settings":
        """Build settings from a parsed (but unresolved) YAML dict."""
        raw_profiles = raw.get("profiles") or {}
        if not isinstance(raw_profiles, dict):
            raise ConfigError("'profiles' must be a YAML mapping")

        profiles: dict[str, ClientConfig] = {}
        for name, profile_raw in raw_profiles.items():
            name = str(name)
            if not isinstance(profile_raw, dict):
                raise ConfigError(f"profiles.{name} must be a YAML mapping")
            profiles[name] = _parse_profile(name, profile_raw)

        transfer_raw = raw.get("transfer") or {}
        if not isinstance(transfer_raw, dict):
            raise ConfigError("'transfer' must be a YAML mapping")
        try:
            transfer = TransferConfig(
                part_size=_resolve(
                    transfer_raw.get("part_size"),
                    int,
                    default=DEFAULT_PART_SIZE,
                ),
                max_workers=_resolve(
                    transfer_raw.get("max_workers"),
                    int,
                    default=DEFAULT_MAX_WORKERS,
                ),
            )
        except ValueError as exc:
            raise ConfigError(f"transfer: {exc}") from exc

        return cls(profiles=profiles, transfer=transfer)
