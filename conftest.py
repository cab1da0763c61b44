"""Root conftest: Postgres testcontainer fixtures shared by all test trees."""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

    from calsync.db import Database

docker_available = shutil.which("docker") is not None


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each ``provisioned_database`` usage creates a fresh database with a random
    name, so rows never leak between tests.
    """
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_database(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Database]]:
    """Create a fresh, fully migrated database and a connected :class:`Database`.

    Tests should use this as:
        async with provisioned_database() as db:
            ...
    """
    import asyncpg

    from calsync.db import Database
    from calsync.migrations import run_migrations

    @asynccontextmanager
    async def _provision() -> AsyncIterator[Database]:
        host = postgres_container.get_container_host_ip()
        port = int(postgres_container.get_exposed_port(5432))
        user = postgres_container.username
        password = postgres_container.password
        db_name = _unique_test_db_name()

        admin = await asyncpg.connect(
            host=host, port=port, user=user, password=password, database="postgres"
        )
        try:
            await admin.execute(f'CREATE DATABASE "{db_name}"')
        finally:
            await admin.close()

        run_migrations(f"postgresql://{user}:{password}@{host}:{port}/{db_name}")

        db = Database(
            db_name=db_name,
            host=host,
            port=port,
            user=user,
            password=password,
            min_pool_size=1,
            max_pool_size=3,
        )
        await db.connect()
        try:
            yield db
        finally:
            await db.close()

    return _provision
