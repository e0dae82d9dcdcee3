import os
import threading
from contextlib import contextmanager

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

# Service-role connection string. /sync resolves the tenant itself and scopes
# each order with app.current_tenant_id, so it never uses a per-tenant role.
DATABASE_URL_ADMIN = os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL") or "postgresql://localhost/kasse"


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE; small by default for local runs.
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 10)

# Opened on first use so importing the app (tests, tooling) needs no database.
_admin_pool = None
_pool_lock = threading.Lock()


def _get_admin_pool() -> ConnectionPool:
    global _admin_pool
    with _pool_lock:
        if _admin_pool is None:
            pool = ConnectionPool(
                conninfo=DATABASE_URL_ADMIN,
                min_size=_POOL_MIN,
                max_size=_POOL_MAX,
                kwargs={"row_factory": dict_row},
                open=False,
            )
            pool.open()
            _admin_pool = pool
        return _admin_pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # Commit when the block exits cleanly, roll back when it raises, then hand
    # the connection back to the pool.
    with pool.connection() as conn:
        with conn:
            yield conn


def get_admin_conn():
    return _pooled_conn(_get_admin_pool())


def close_pools() -> None:
    global _admin_pool
    with _pool_lock:
        if _admin_pool is not None:
            _admin_pool.close()
            _admin_pool = None


def set_tenant_context(conn, tenant_id: str):
    """Scope row-level security to `tenant_id` for the rest of the current transaction."""
    with conn.cursor() as cur:
        # set_config(..., is_local=true) instead of SET, which can't take bind parameters.
        cur.execute(
            "SELECT set_config('app.current_tenant_id', %s::text, true)",
            (tenant_id,),
        )
