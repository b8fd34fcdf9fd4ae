"""Fixtures for tests against a real NATS server."""

import os

import pytest
from testcontainers.nats import NatsContainer


@pytest.fixture(scope="session")
def nats_container():
    """NATS server URL: $NATS_URL when set, otherwise a throwaway container."""
    if os.getenv("SKIP_INTEGRATION_TESTS", "").lower() == "true":
        pytest.skip("Integration tests disabled")

    if os.getenv("NATS_URL"):
        yield os.getenv("NATS_URL")
        return

    container = NatsContainer("nats:2.10-alpine")
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"Cannot start NATS container: {e}")

    yield container.nats_uri()

    container.stop()
