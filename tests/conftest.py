# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across multiple test modules."""

from collections.abc import Iterator
from datetime import UTC, datetime

import pytest

from s3mover.client import S3Client
from s3mover.config import (
    ClientConfig,
    Credentials,
    PayloadPolicy,
    reset_dotenv_state,
)
from s3mover.logging import SecretFilter
from tests.fake_s3 import FakeS3
from tests.vectors import ACCESS_KEY, SECRET_KEY


FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _isolate_global_state() -> Iterator[None]:
    """Reset the secret registry and dotenv state around each test."""
    SecretFilter.clear_secrets()
    reset_dotenv_state()
    yield
    SecretFilter.clear_secrets()
    reset_dotenv_state()


def make_config(
    endpoint: str = "https://s3.test.local",
    *,
    region: str = "eu-central-1",
    session_token: str | None = None,
    payload_policy: PayloadPolicy = PayloadPolicy.UNSIGNED,
) -> ClientConfig:
    """Build a client config with the test credentials."""
    return ClientConfig(
        endpoint=endpoint,  # type: ignore[arg-type]
        credentials=Credentials(
            access_key=ACCESS_KEY,
            secret_key=SECRET_KEY,
            region=region,
            session_token=session_token,
        ),
        payload_policy=payload_policy,
    )


@pytest.fixture
def fake_s3() -> FakeS3:
    """In-memory S3 serving ``s3.test.local``."""
    return FakeS3("s3.test.local")


@pytest.fixture
def client(fake_s3: FakeS3) -> S3Client:
    """Client wired to the fake S3 with a fixed clock."""
    return S3Client(make_config(), fake_s3, clock=lambda: FIXED_NOW)
