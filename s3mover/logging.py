# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Log redaction for S3 credentials and request signatures.

Two kinds of sensitive text can reach log output from an S3 client:

- the configured secrets (secret access key, session token), registered
  through :func:`register_credentials` when credentials are built
- SigV4 ``Authorization`` values, which the client logs at DEBUG level

:class:`SecretFilter` handles both.  Registered secrets are replaced
wherever they appear.  In authorization values (and presigned query
strings) the access key id after ``Credential=`` and the hex after
``Signature=`` are masked; the scope and signed header list stay
readable for debugging.

Usage:
    # In entry points (the CLI)
    from s3mover.logging import configure_logging
    configure_logging(logging.DEBUG)

    # In library modules
    logger = logging.getLogger(__name__)
    logger.debug("Signed %s %s: %s", method, host, authorization)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import TYPE_CHECKING, ClassVar


if TYPE_CHECKING:
    from s3mover.config import Credentials


REDACTED = "[REDACTED]"

# Credential=AKIA.../20260301/eu-central-1/s3/aws4_request, Signature=<hex>
# Also matches X-Amz-Credential= and X-Amz-Signature= query parameters.
_SIGV4_FIELDS = re.compile(
    r"(?P<name>Credential=)[A-Za-z0-9]+|(?P<sig>Signature=)[0-9a-fA-F]+"
)

#: Loggers that emit one line per HTTP request at INFO and below.
_PER_REQUEST_LOGGERS = ("httpx", "httpcore")


def _mask_field(match: re.Match[str]) -> str:
    return (match.group("name") or match.group("sig")) + REDACTED


class SecretFilter(logging.Filter):
    """Redact credentials and signatures from log records.

    The secret registry is class-level so that credentials loaded anywhere
    in the process are redacted by every installed filter.

    Example:
        SecretFilter.register_secret("wJalrXUtnFEMI/K7MDENG")
        logger.info("Using key: %s", "wJalrXUtnFEMI/K7MDENG")
        # Output: "Using key: [REDACTED]"
    """

    _secrets: ClassVar[set[str]] = set()
    _pattern: ClassVar[re.Pattern[str] | None] = None

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact the record's message and string arguments in place.

        Returns:
            Always True; records are rewritten, never dropped.
        """
        record.msg = self.redact(str(record.msg))
        if isinstance(record.args, Mapping):
            record.args = {
                k: self.redact(v) if isinstance(v, str) else v
                for k, v in record.args.items()
            }
        elif record.args:
            record.args = tuple(
                self.redact(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True

    @classmethod
    def redact(cls, text: str) -> str:
        """Return ``text`` with secrets and SigV4 fields masked."""
        if cls._pattern is not None:
            text = cls._pattern.sub(REDACTED, text)
        return _SIGV4_FIELDS.sub(_mask_field, text)

    @classmethod
    def register_secret(cls, secret: str) -> None:
        """Redact ``secret`` from all later log output.

        Empty strings are ignored.
        """
        if secret:
            cls._secrets.add(secret)
            cls._rebuild_pattern()

    @classmethod
    def clear_secrets(cls) -> None:
        cls._secrets.clear()
        cls._pattern = None

    @classmethod
    def _rebuild_pattern(cls) -> None:
        # Longest first so a secret containing another is redacted whole
        escaped = [
            re.escape(s) for s in sorted(cls._secrets, key=len, reverse=True)
        ]
        cls._pattern = re.compile("|".join(escaped)) if escaped else None


def register_credentials(credentials: Credentials) -> None:
    """Register the secret parts of a credential set for redaction.

    The access key id identifies the key rather than granting access, so it
    is not registered; it is masked only inside ``Credential=`` fields.
    """
    SecretFilter.register_secret(credentials.secret_key)
    if credentials.session_token:
        SecretFilter.register_secret(credentials.session_token)


def configure_logging(
    level: int = logging.INFO,
    format_string: str | None = None,
    add_secret_filter: bool = True,
) -> None:
    """Install a single stderr handler on the root logger.

    Below DEBUG the HTTP libraries' per-request lines are raised to WARNING
    so part uploads do not flood the output; at DEBUG they pass through.

    Args:
        level: Root logger level.
        format_string: Record format; a timestamped default if None.
        add_secret_filter: Attach :class:`SecretFilter` to the handler.
    """
    if format_string is None:
        format_string = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format_string))
    if add_secret_filter:
        handler.addFilter(SecretFilter())

    root = logging.getLogger()
    root.setLevel(level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)

    http_level = logging.NOTSET if level <= logging.DEBUG else logging.WARNING
    for name in _PER_REQUEST_LOGGERS:
        logging.getLogger(name).setLevel(http_level)
