import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from bandrec.config import load_settings  # noqa: E402
from fake_store import MemoryStore  # noqa: E402

_pg = None
_docker_ready = None


def _start_postgres():
    """Start one PostgreSQL container for the session, or remember it failed."""
    global _pg, _docker_ready
    if _docker_ready is not None:
        return _docker_ready
    try:
        from testcontainers.postgres import PostgresContainer

        _pg = PostgresContainer("postgres:15")
        _pg.start()
        _docker_ready = True
    except Exception:  # pragma: no cover - handled during testing
        _pg = None
        _docker_ready = False
    return _docker_ready


@pytest.fixture(scope="session", autouse=True)
def _stop_container():
    yield
    if _pg is not None:
        _pg.stop()


@pytest.fixture
def settings():
    return load_settings("test", config_dir=os.path.join(ROOT, "config"), environ={})


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def pg_store(settings):
    from bandrec.store import PostgresStore

    dsn = (
        f"postgresql://{_pg.username}:{_pg.password}@"
        f"{_pg.get_container_host_ip()}:{_pg.get_exposed_port(5432)}/{_pg.dbname}"
    )
    pg_store = PostgresStore(dsn, settings.store.dataset)
    pg_store.init_schema()
    return pg_store


@pytest.fixture(autouse=True)
def reset_db(request):
    # Unit tests marked "nodb" run against the in-memory store and never
    # need the PostgreSQL container.
    if "nodb" in request.keywords:
        return
    if not _start_postgres():
        pytest.skip("PostgreSQL container not available")
    pg_store = request.getfixturevalue("pg_store")
    with pg_store._cursor() as cur:
        cur.execute("TRUNCATE documents, assets")
