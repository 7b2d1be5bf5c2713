import pytest


@pytest.fixture(scope="session", autouse=True)
def close_database_connections():
    """Ensure all database connections are properly closed after tests.

    Async flows reach the ORM through ``sync_to_async`` worker threads, which
    open connections of their own; close them all at the end of the session.
    """
    yield
    from django.db import connections

    for conn in connections.all():
        conn.close()
