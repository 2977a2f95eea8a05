import os
from dataclasses import dataclass

OVERLAP_POLICIES = ('skip', 'allow')


def build_connection_string(host: str, port: int, dbname: str, user: str, password: str) -> str:
    """Build PostgreSQL connection string from parameters.
    """
    return (
        f'postgresql+psycopg://{user}:{password}'
        f'@{host}:{port}/{dbname}'
    )


@dataclass
class DispatchConfig:
    """Configuration for the account dispatch scheduler.

    All timing parameters are in seconds. ``ready_threshold_sec`` is how long a
    claimed account waits before it may be claimed again, ``expired_threshold_sec``
    forces a dispatch for accounts not checked for that long and doubles as the
    lease TTL.
    """
    ready_threshold_sec: int = 5
    expired_threshold_sec: int = 60
    batch_cap: int = 1000
    chunk_size: int = 100
    tick_interval_sec: float = 1.0
    overlap_policy: str = 'skip'
    max_workers: int = 1
    stats_interval_sec: float = 60
    queue_name: str = 'notifications'
    lease_namespace: str = 'locks:accounts'

    host: str = 'localhost'
    port: int = 5432
    dbname: str = 'accountdispatch'
    user: str = 'postgres'
    password: str = 'postgres'
    appname: str = ''
    pool_size: int = 5
    database_url: str = None

    redis_url: str = 'redis://localhost:6379/0'
    metrics_port: int = 0

    def __post_init__(self):
        for name in ('ready_threshold_sec', 'expired_threshold_sec', 'batch_cap', 'chunk_size',
                     'tick_interval_sec', 'max_workers', 'stats_interval_sec', 'pool_size'):
            value = getattr(self, name)
            if value is None or value <= 0:
                raise ValueError(f'{name} must be positive, got {value!r}')
        if int(self.expired_threshold_sec) != self.expired_threshold_sec:
            raise ValueError(f'expired_threshold_sec must be whole seconds, got {self.expired_threshold_sec!r}')
        if self.overlap_policy not in OVERLAP_POLICIES:
            raise ValueError(f'overlap_policy must be one of {OVERLAP_POLICIES}, got {self.overlap_policy!r}')
        if not self.queue_name:
            raise ValueError('queue_name must not be empty')
        if not self.lease_namespace:
            raise ValueError('lease_namespace must not be empty')

    @property
    def connection_string(self) -> str:
        """SQLAlchemy URL, preferring an explicit ``database_url``.
        """
        if self.database_url:
            return self.database_url
        return build_connection_string(self.host, self.port, self.dbname, self.user, self.password)

    @classmethod
    def from_env(cls, environ=None) -> 'DispatchConfig':
        """Build config from ``DISPATCH_*`` environment variables.
        """
        env = os.environ if environ is None else environ
        return cls(
            ready_threshold_sec=int(env.get('DISPATCH_READY_THRESHOLD', '5')),
            expired_threshold_sec=int(env.get('DISPATCH_EXPIRED_THRESHOLD', '60')),
            batch_cap=int(env.get('DISPATCH_BATCH_CAP', '1000')),
            chunk_size=int(env.get('DISPATCH_CHUNK_SIZE', '100')),
            tick_interval_sec=float(env.get('DISPATCH_TICK_INTERVAL', '1.0')),
            overlap_policy=env.get('DISPATCH_OVERLAP_POLICY', 'skip').lower(),
            max_workers=int(env.get('DISPATCH_MAX_WORKERS', '1')),
            stats_interval_sec=float(env.get('DISPATCH_STATS_INTERVAL', '60')),
            queue_name=env.get('DISPATCH_QUEUE_NAME', 'notifications'),
            lease_namespace=env.get('DISPATCH_LEASE_NAMESPACE', 'locks:accounts'),
            host=env.get('DISPATCH_SQL_HOST', 'localhost'),
            port=int(env.get('DISPATCH_SQL_PORT', '5432')),
            dbname=env.get('DISPATCH_SQL_DATABASE', 'accountdispatch'),
            user=env.get('DISPATCH_SQL_USERNAME', 'postgres'),
            password=env.get('DISPATCH_SQL_PASSWORD', 'postgres'),
            appname=env.get('DISPATCH_SQL_APPNAME', ''),
            pool_size=int(env.get('DISPATCH_SQL_POOL_SIZE', '5')),
            database_url=env.get('DISPATCH_DATABASE_URL') or None,
            redis_url=env.get('DISPATCH_REDIS_URL', 'redis://localhost:6379/0'),
            metrics_port=int(env.get('DISPATCH_METRICS_PORT', '0')),
        )
