"""Pytest configuration and shared fixtures.

WHAT THIS FILE PROVIDES:
- sqlite: file-backed SQLAlchemy engine with the account tables
- psql_docker / redis_docker: PostgreSQL and Redis containers for integration tests
- postgres: SQLAlchemy engine against the PostgreSQL container
- redis_client: redis-py client against the Redis container, flushed per test

Docker-backed fixtures skip the test when no Docker daemon is reachable.
"""
import logging

import config
import pytest
import redis
from fixtures import wait_for_condition
from sqlalchemy import create_engine, text

from accountdispatch import schema

logger = logging.getLogger(__name__)


def _docker_client():
    docker = pytest.importorskip('docker')
    try:
        client = docker.from_env()
        client.ping()
    except docker.errors.DockerException as e:
        pytest.skip(f'Docker daemon not available: {e}')
    return client


def _remove_existing(client, name: str) -> None:
    import docker
    try:
        existing = client.containers.get(name)
        existing.stop()
        existing.remove()
    except docker.errors.NotFound:
        pass


def drop_tables(engine, appname: str = ''):
    """Drop all test tables.
    """
    tables = schema.get_table_names(appname)
    with engine.connect() as conn:
        for table in tables.values():
            conn.execute(text(f'DROP TABLE IF EXISTS {table}'))
        conn.commit()


@pytest.fixture
def sqlite(tmp_path):
    """Provide SQLAlchemy engine for a throwaway SQLite database.
    """
    engine = create_engine(f'sqlite:///{tmp_path / "accounts.db"}',
                           connect_args={'check_same_thread': False})
    schema.ensure_database_ready(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(scope='module')
def psql_docker():
    """Start PostgreSQL Docker container for testing.
    """
    client = _docker_client()
    _remove_existing(client, config.postgres.container)
    container = client.containers.run(
        image=config.postgres.image,
        auto_remove=True,
        environment={
            'POSTGRES_DB': config.postgres.database,
            'POSTGRES_USER': config.postgres.username,
            'POSTGRES_PASSWORD': config.postgres.password},
        name=config.postgres.container,
        ports={'5432/tcp': ('127.0.0.1', config.postgres.port)},
        detach=True,
    )
    url = (f'postgresql+psycopg://{config.postgres.username}:{config.postgres.password}'
           f'@{config.postgres.hostname}:{config.postgres.port}/{config.postgres.database}')
    probe = create_engine(url, pool_pre_ping=True)

    def ready():
        with probe.connect() as conn:
            conn.execute(text('SELECT 1'))
        return True

    try:
        if not wait_for_condition(ready, timeout_sec=config.startup_timeout_sec, check_interval=0.5):
            pytest.fail('PostgreSQL container did not become ready')
    finally:
        probe.dispose()
    yield url
    container.stop()


@pytest.fixture(scope='module')
def redis_docker():
    """Start Redis Docker container for testing.
    """
    client = _docker_client()
    _remove_existing(client, config.redis.container)
    container = client.containers.run(
        image=config.redis.image,
        auto_remove=True,
        name=config.redis.container,
        ports={'6379/tcp': ('127.0.0.1', config.redis.port)},
        detach=True,
    )
    url = f'redis://{config.redis.hostname}:{config.redis.port}/0'
    probe = redis.Redis.from_url(url)
    try:
        if not wait_for_condition(probe.ping, timeout_sec=config.startup_timeout_sec, check_interval=0.5):
            pytest.fail('Redis container did not become ready')
    finally:
        probe.close()
    yield url
    container.stop()


@pytest.fixture
def postgres(psql_docker):
    """Provide SQLAlchemy engine for PostgreSQL tests.
    """
    engine = create_engine(psql_docker, pool_pre_ping=True, pool_size=10, max_overflow=5)
    schema.ensure_database_ready(engine)
    try:
        yield engine
    finally:
        drop_tables(engine)
        engine.dispose()


@pytest.fixture
def redis_client(redis_docker):
    """Provide a flushed Redis client.
    """
    client = redis.Redis.from_url(redis_docker)
    client.flushdb()
    try:
        yield client
    finally:
        client.flushdb()
        client.close()
