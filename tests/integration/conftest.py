import os
import shutil

import pytest
from testcontainers.postgres import PostgresContainer


@pytest.fixture(scope="module")
def postgres_url():
    """A throwaway PostgreSQL database; skipped when Docker is unavailable."""
    if os.getenv("SKIP_DOCKER_TESTS") == "1":
        pytest.skip("SKIP_DOCKER_TESTS=1")
    if not shutil.which("docker"):
        pytest.skip("Docker CLI is not available; skipping tests that require containers")

    image = os.getenv("TEST_POSTGRES_IMAGE", "postgres:16-alpine")
    container = PostgresContainer(image)
    try:
        container.start()
    except Exception as exc:
        pytest.skip(f"Could not start Postgres test container: {exc}")
    try:
        # Normalize driver to the psycopg2 default used by the app
        yield container.get_connection_url().replace("+psycopg2", "")
    finally:
        container.stop()
