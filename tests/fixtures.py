"""Shared test fixtures, utilities, and helpers.

USE THIS FILE FOR:
- Config builders
- Account row factories and readers
- In-memory stand-ins for the lease store and the queue
- Wait helpers used by threaded tests
"""
import functools
import logging
import threading
import time
from unittest.mock import MagicMock

import redis
from sqlalchemy import text

from accountdispatch import schema
from accountdispatch.client import PublishError
from accountdispatch.config import DispatchConfig

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIG BUILDERS
# ============================================================================

def make_config(**overrides) -> DispatchConfig:
    """Create DispatchConfig with test-friendly values.

    Usage:
        config = make_config()
        config = make_config(chunk_size=2, tick_interval_sec=0.05)
    """
    defaults = {
        'ready_threshold_sec': 5,
        'expired_threshold_sec': 60,
        'tick_interval_sec': 0.05,
        'stats_interval_sec': 0.2,
        'database_url': 'sqlite://',
    }
    defaults.update(overrides)
    return DispatchConfig(**defaults)


# ============================================================================
# DATABASE HELPERS
# ============================================================================

def tables() -> dict:
    return schema.get_table_names(make_config().appname)


def insert_account(engine, account_id: int, last_checked_at: float = 0.0, last_enqueued_at: float = 0.0) -> None:
    """Insert a single account row.
    """
    with engine.connect() as conn:
        conn.execute(text(f"""
            INSERT INTO {tables()["Account"]} (id, last_checked_at, last_enqueued_at)
            VALUES (:id, :checked, :enqueued)
        """), {'id': account_id, 'checked': last_checked_at, 'enqueued': last_enqueued_at})
        conn.commit()


def insert_accounts(engine, rows: list[tuple[int, float, float]]) -> None:
    """Insert (id, last_checked_at, last_enqueued_at) rows.
    """
    with engine.connect() as conn:
        conn.execute(text(f"""
            INSERT INTO {tables()["Account"]} (id, last_checked_at, last_enqueued_at)
            VALUES (:id, :checked, :enqueued)
        """), [{'id': i, 'checked': c, 'enqueued': e} for i, c, e in rows])
        conn.commit()


def get_enqueued_at(engine, account_id: int) -> float:
    with engine.connect() as conn:
        return conn.execute(text(f'SELECT last_enqueued_at FROM {tables()["Account"]} WHERE id = :id'),
                            {'id': account_id}).scalar()


def clean_tables(*table_names):
    """Decorator to clear tables before test execution.

    Usage:
        @clean_tables('Account')
        def test_something(self, postgres):
            ...
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            engine = kwargs.get('postgres') or kwargs.get('sqlite')
            if engine is None:
                raise TypeError(f"{func.__name__}() missing required 'postgres' or 'sqlite' fixture")
            with engine.connect() as conn:
                for table_key in table_names:
                    conn.execute(text(f'DELETE FROM {tables()[table_key]}'))
                conn.commit()
            return func(*args, **kwargs)
        return wrapper
    return decorator


# ============================================================================
# LEASE AND QUEUE STAND-INS
# ============================================================================

class FakeLeaseStore:
    """Reproduces the lease script's check-and-set, atomically per call.

    Replies with bytes, like redis-py does for Lua string tables.
    """

    def __init__(self, clock: callable = time.monotonic):
        self.clock = clock
        self.expires = {}
        self.calls = []
        self.lock = threading.Lock()

    def script(self, keys=None, args=None, client=None):
        namespace = keys[0]
        ttl = int(args[0])
        granted = []
        with self.lock:
            self.calls.append((list(keys), list(args)))
            now = self.clock()
            for account_id in args[1:]:
                key = f'{namespace}:{account_id}'
                if self.expires.get(key, float('-inf')) <= now:
                    self.expires[key] = now + ttl
                    granted.append(str(account_id).encode())
        return granted

    def held(self) -> set[str]:
        now = self.clock()
        return {key for key, expires in self.expires.items() if expires > now}


def make_redis_mock(store: FakeLeaseStore = None) -> MagicMock:
    """Redis client mock whose registered script is backed by ``store``.
    """
    client = MagicMock(spec=redis.Redis)
    if store is not None:
        client.register_script.return_value = store.script
    else:
        client.register_script.return_value = MagicMock()
    return client


class RecordingQueue:
    """Queue stand-in that records publishes and fails on request.

    Args:
        fail_on: Call numbers (1-based) that raise PublishError
    """

    def __init__(self, name: str = 'notifications', fail_on: set[int] = None):
        self.name = name
        self.fail_on = set(fail_on or ())
        self.published = []
        self.attempts = 0
        self.lock = threading.Lock()

    def open(self) -> None:
        pass

    def publish(self, *payloads: str) -> None:
        with self.lock:
            self.attempts += 1
            if self.attempts in self.fail_on:
                raise PublishError(f'publish {self.attempts} rejected')
            self.published.append(list(payloads))

    def published_ids(self) -> list[int]:
        return [int(p) for call in self.published for p in call]


class ManualClock:
    """Controllable clock for TTL and threshold tests.
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# WAIT HELPERS
# ============================================================================

def wait_for_condition(
    condition: callable,
    timeout_sec: float = 5.0,
    check_interval: float = 0.05
) -> bool:
    """Wait for arbitrary condition function to return True.

    Returns
        True if condition met, False if timeout
    """
    start = time.time()
    while time.time() - start < timeout_sec:
        try:
            if condition():
                return True
        except Exception:
            pass
        time.sleep(check_interval)
    return False


def wait_for(condition: callable, timeout_sec: float = 5.0) -> bool:
    """Shorter alias for wait_for_condition().
    """
    return wait_for_condition(condition, timeout_sec)
