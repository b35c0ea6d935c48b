import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor
from contextlib import contextmanager
from loguru import logger

from agrigrow.app.config import settings

# Queries run on starlette's worker threads, so the pool must be thread safe
_connection_pool = None


def initialize_connection_pool():
    global _connection_pool
    if _connection_pool is not None:
        logger.debug("PostgreSQL connection pool already initialized.")
        return

    db = settings.database
    try:
        logger.info(f"Initializing PostgreSQL connection pool for {db.host}:{db.port}/{db.dbname}...")
        _connection_pool = pool.ThreadedConnectionPool(
            minconn=db.min_connections,
            maxconn=db.max_connections,
            user=db.user,
            password=db.password,
            host=db.host,
            port=db.port,
            dbname=db.dbname,
            application_name="agrigrow-backend",
        )
        logger.success(
            f"PostgreSQL connection pool initialized (min: {db.min_connections}, max: {db.max_connections})."
        )
    except psycopg2.Error as error:
        _connection_pool = None
        logger.critical(
            f"Error while initializing PostgreSQL connection pool: {error}",
            exc_info=True,
        )
        raise ConnectionError(f"Failed to initialize DB pool: {error}") from error


def close_connection_pool():
    global _connection_pool
    if _connection_pool:
        _connection_pool.closeall()
        _connection_pool = None
        logger.info("PostgreSQL connection pool closed.")


@contextmanager
def get_db_connection():
    if _connection_pool is None:
        logger.warning("Connection pool is not initialized. Attempting to initialize now.")
        initialize_connection_pool()

    conn = _connection_pool.getconn()
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    finally:
        _connection_pool.putconn(conn)


@contextmanager
def transaction():
    """Yields a dict cursor. Commits when the block exits normally and
    rolls back when it raises."""
    with get_db_connection() as conn:
        with conn.cursor(cursor_factory=RealDictCursor) as cursor:
            yield cursor
        conn.commit()


def _run(label: str, query, params, fetch: str, commit: bool):
    try:
        with get_db_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(query, params)
                if fetch == "one":
                    result = cursor.fetchone()
                elif fetch == "all":
                    result = cursor.fetchall()
                else:
                    result = cursor.rowcount
            if commit:
                conn.commit()
            return result
    except psycopg2.Error as error:
        logger.error(
            f"DB Error in {label} for query '{query.strip()[:100]}...': {error}",
            exc_info=True,
        )
        raise


def fetch_one(query, params=None):
    return _run("fetch_one", query, params, fetch="one", commit=False)


def fetch_all(query, params=None):
    return _run("fetch_all", query, params, fetch="all", commit=False)


def execute_query(query, params=None) -> int:
    """Runs a write statement and returns the affected row count."""
    return _run("execute_query", query, params, fetch="rowcount", commit=True)


def execute_and_fetch_one(query, params=None):
    return _run("execute_and_fetch_one", query, params, fetch="one", commit=True)


def execute_and_fetch_all(query, params=None):
    return _run("execute_and_fetch_all", query, params, fetch="all", commit=True)
