"""Account dispatch scheduler: claim, lease and publish accounts due for a check.
"""
import contextlib
import functools
import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum

import redis
from sqlalchemy import bindparam, create_engine, make_url, text
from sqlalchemy.exc import SQLAlchemyError

from accountdispatch.config import DispatchConfig
from accountdispatch.metrics import record_cycle, record_registrations
from accountdispatch.metrics import record_tick_skipped
from accountdispatch.schema import get_table_names

logger = logging.getLogger(__name__)

__all__ = ['Dispatcher', 'DispatchCycle', 'CandidateSelector', 'LeaseCoordinator',
           'BatchPublisher', 'RedisQueue', 'TickScheduler', 'StatsReporter',
           'DispatchError', 'SelectionError', 'LeaseError', 'LeaseDecodeError',
           'PublishError']


# ============================================================
# EXCEPTIONS
# ============================================================

class DispatchError(Exception):
    """Base class for recoverable failures inside a dispatch cycle.
    """


class SelectionError(DispatchError):
    """Claim transaction failed and was rolled back.
    """


class LeaseError(DispatchError):
    """Lease script could not be executed.
    """


class LeaseDecodeError(LeaseError):
    """Lease script reply did not have the expected shape.
    """


class PublishError(DispatchError):
    """Queue rejected a publish.
    """


# ============================================================
# UTILITY FUNCTIONS
# ============================================================

def retry_with_backoff(max_attempts: int = 5, base_delay: float = 1.0, operation_name: str = None):
    """Decorator to retry function with exponential backoff.

    Args:
        max_attempts: Maximum retry attempts
        base_delay: Base delay in seconds (doubles each retry)
        operation_name: Name for logging (defaults to function name)

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            last_exception = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    last_exception = e
                    if attempt == max_attempts:
                        logger.error(f'{name} failed after {max_attempts} attempts: {e}')
                        raise
                    delay = base_delay * (2 ** (attempt - 1))
                    logger.warning(f'{name} attempt {attempt}/{max_attempts} failed: {e}, retrying in {delay:.1f}s')
                    time.sleep(delay)
            raise last_exception
        return wrapper
    return decorator


def log_duration(operation_name: str = None):
    """Decorator to log method execution duration.

    Args:
        operation_name: Custom name for logging (defaults to function name)

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            start = time.time()
            result = func(*args, **kwargs)
            duration_ms = int((time.time() - start) * 1000)
            logger.debug(f'{name} completed in {duration_ms}ms')
            return result
        return wrapper
    return decorator


def chunked(ids: Iterable[int], size: int) -> Iterator[list[int]]:
    """Split ids into consecutive lists of at most ``size`` items.

    >>> [len(c) for c in chunked(range(250), 100)]
    [100, 100, 50]
    """
    if size < 1:
        raise ValueError(f'chunk size must be positive, got {size}')
    chunk = []
    for item in ids:
        chunk.append(item)
        if len(chunk) == size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


# ============================================================
# DATABASE
# ============================================================

class DatabaseContext:
    """Manages database engine, connections, and table names.
    """

    def __init__(self, config: DispatchConfig, engine=None):
        """Initialize database context.

        Args:
            config: Dispatch configuration with connection parameters
            engine: Optional pre-built SQLAlchemy engine (not disposed by this context)
        """
        self._owns_engine = engine is None
        if engine is None:
            url = make_url(config.connection_string)
            if url.get_backend_name() == 'sqlite':
                engine = create_engine(url)
            else:
                engine = create_engine(url, pool_pre_ping=True, pool_size=config.pool_size, max_overflow=0)
        self.engine = engine
        self.tables = get_table_names(config.appname)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def query(self, sql: str, params: dict = None) -> list:
        """Execute query and return all rows.

        Args:
            sql: SQL query to execute
            params: Optional parameters for the query

        Returns
            List of row objects
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            return list(result)

    def dispose(self) -> None:
        """Dispose of engine resources.
        """
        if not self._owns_engine:
            return
        with contextlib.suppress(Exception):
            self.engine.dispose()


# ============================================================
# CANDIDATE SELECTOR
# ============================================================

class CandidateSelector:
    """Finds accounts due for a check and claims them in one transaction.

    An account is due when its last claim is at least ``ready_threshold``
    seconds old, or its last completed check is more than
    ``expired_threshold`` seconds old. Oldest-checked accounts come first.

    The claim is optimistic. Two replicas committing in close succession can
    both claim the same rows, so a claim alone never makes a dispatch
    exclusive; the lease granted by LeaseCoordinator does.
    """

    def __init__(self, db: DatabaseContext):
        self.db = db
        self.table = db.tables['Account']

    def _select_sql(self) -> str:
        sql = f"""
        SELECT id
        FROM {self.table}
        WHERE last_enqueued_at <= :ready OR last_checked_at < :expired
        ORDER BY last_checked_at ASC, id ASC
        LIMIT :cap
        """
        if self.db.dialect == 'postgresql':
            sql += 'FOR UPDATE SKIP LOCKED'
        return sql

    def _update_sql(self):
        # claim timestamps never move backwards, even across skewed replica clocks
        sql = f"""
        UPDATE {self.table}
        SET last_enqueued_at = CASE WHEN last_enqueued_at < :now THEN :now ELSE last_enqueued_at END
        WHERE id IN :ids
        """
        return text(sql).bindparams(bindparam('ids', expanding=True))

    def claim(self, now: float, ready_threshold: float, expired_threshold: float, cap: int) -> list[int]:
        """Select and claim up to ``cap`` due accounts.

        Args:
            now: Current time in seconds since epoch
            ready_threshold: Seconds since last claim before re-claiming
            expired_threshold: Seconds since last check before forcing a claim
            cap: Maximum number of accounts to claim

        Returns
            Claimed account ids ordered by last_checked_at ascending

        Raises
            SelectionError: If the transaction fails (nothing is claimed)
        """
        if cap <= 0:
            return []
        params = {
            'ready': now - ready_threshold,
            'expired': now - expired_threshold,
            'cap': int(cap),
        }
        try:
            with self.db.engine.begin() as conn:
                ids = [row[0] for row in conn.execute(text(self._select_sql()), params)]
                if ids:
                    conn.execute(self._update_sql(), {'now': now, 'ids': ids})
        except SQLAlchemyError as e:
            raise SelectionError(f'Failed to claim accounts from {self.table}: {e}') from e

        logger.debug(f'Claimed {len(ids)} accounts from {self.table}')
        return ids


# ============================================================
# LEASE COORDINATOR
# ============================================================

# KEYS[1] is the lease namespace, ARGV[1] the TTL in seconds, ARGV[2..] the ids.
_LEASE_LUA = """
local granted = {}
local ttl = tonumber(ARGV[1])
for i = 2, #ARGV do
    local key = KEYS[1] .. ':' .. ARGV[i]
    if redis.call('exists', key) == 0 then
        redis.call('set', key, 1, 'EX', ttl)
        granted[#granted + 1] = ARGV[i]
    end
end
return granted
"""


def decode_lease_reply(reply, requested: list[int]) -> list[int]:
    """Decode the lease script reply into account ids.

    Args:
        reply: Raw reply from the lease script
        requested: Ids passed to the script

    Returns
        Granted ids in reply order

    Raises
        LeaseDecodeError: If the reply is not a list of distinct requested ids
    """
    if not isinstance(reply, (list, tuple)):
        raise LeaseDecodeError(f'Expected list reply from lease script, got {type(reply).__name__}')

    allowed = set(requested)
    granted = []
    seen = set()
    for value in reply:
        if isinstance(value, bytes):
            try:
                value = value.decode('ascii')
            except UnicodeDecodeError as e:
                raise LeaseDecodeError(f'Lease reply item is not ascii: {value!r}') from e
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise LeaseDecodeError(f'Lease reply item has unexpected type {type(value).__name__}')
        try:
            account_id = int(value)
        except ValueError as e:
            raise LeaseDecodeError(f'Lease reply item is not a decimal id: {value!r}') from e
        if account_id not in allowed:
            raise LeaseDecodeError(f'Lease reply contains id {account_id} that was not requested')
        if account_id in seen:
            raise LeaseDecodeError(f'Lease reply contains id {account_id} more than once')
        seen.add(account_id)
        granted.append(account_id)
    return granted


class LeaseCoordinator:
    """Grants TTL-bounded leases so an account is dispatched once per lease.

    The check-and-set for a whole batch runs as one server-side script, so no
    other caller interleaves with it. Leases are never released; they expire.
    """

    def __init__(self, redis_client: redis.Redis, namespace: str = 'locks:accounts'):
        self.redis = redis_client
        self.namespace = namespace
        self._script = redis_client.register_script(_LEASE_LUA)

    def key(self, account_id: int) -> str:
        return f'{self.namespace}:{account_id}'

    def grant(self, ids: Iterable[int], ttl: int) -> list[int]:
        """Lease every id not already leased.

        Args:
            ids: Candidate account ids, processed in order
            ttl: Lease lifetime in seconds

        Returns
            Ids granted a lease by this call

        Raises
            LeaseError: If the cache is unavailable or the reply is malformed
        """
        ids = [int(i) for i in ids]
        if not ids:
            return []
        try:
            reply = self._script(keys=[self.namespace], args=[int(ttl), *ids])
        except redis.RedisError as e:
            raise LeaseError(f'Failed to check for locked accounts: {e}') from e

        granted = decode_lease_reply(reply, ids)
        logger.debug(f'Granted {len(granted)}/{len(ids)} leases in {self.namespace}')
        return granted


# ============================================================
# QUEUE AND BATCH PUBLISHER
# ============================================================

class RedisQueue:
    """Producer side of a Redis list queue in the rmq key layout.
    """

    QUEUES_KEY = 'rmq::queues'

    def __init__(self, redis_client: redis.Redis, name: str):
        self.redis = redis_client
        self.name = name
        self.ready_key = f'rmq::queue::[{name}]::ready'

    def open(self) -> None:
        """Register the queue so consumers and cleaners can discover it.
        """
        self.redis.sadd(self.QUEUES_KEY, self.name)
        logger.info(f'Queue {self.name} opened')

    def publish(self, *payloads: str) -> None:
        """Push payloads onto the ready list in a single command.

        Raises
            PublishError: If Redis rejects the push
        """
        if not payloads:
            return
        try:
            self.redis.lpush(self.ready_key, *payloads)
        except redis.RedisError as e:
            raise PublishError(f'Failed to publish {len(payloads)} payloads to {self.name}: {e}') from e


@dataclass
class PublishResult:
    enqueued: int = 0
    failed: int = 0
    chunks: int = 0


class BatchPublisher:
    """Publishes ids to the queue one fixed-size chunk at a time.
    """

    def __init__(self, queue: RedisQueue, chunk_size: int = 100):
        if chunk_size < 1:
            raise ValueError(f'chunk_size must be positive, got {chunk_size}')
        self.queue = queue
        self.chunk_size = chunk_size

    def publish(self, ids: Iterable[int]) -> PublishResult:
        """Publish ids chunk by chunk.

        A failed chunk is logged and counted, then dropped; later chunks are
        still published.

        Args:
            ids: Granted account ids

        Returns
            PublishResult with enqueued/failed id counts
        """
        result = PublishResult()
        for chunk in chunked(ids, self.chunk_size):
            result.chunks += 1
            try:
                self.queue.publish(*[str(account_id) for account_id in chunk])
            except PublishError as e:
                result.failed += len(chunk)
                logger.error(f'Failed to enqueue account batch of {len(chunk)}: {e}')
                continue
            result.enqueued += len(chunk)
        return result


# ============================================================
# DISPATCH CYCLE
# ============================================================

@dataclass
class CycleResult:
    selected: int = 0
    enqueued: int = 0
    skipped: int = 0
    failed: int = 0
    lease_failures: int = 0
    elapsed: float = 0.0


class DispatchCycle:
    """One claim -> lease -> publish pass.

    Failures in any stage are logged and reduce the number of accounts
    dispatched; they never propagate out of ``run``. Nothing is retried
    within a cycle.
    """

    def __init__(self, selector: CandidateSelector, coordinator: LeaseCoordinator,
                 publisher: BatchPublisher, config: DispatchConfig, clock: Callable[[], float] = time.time):
        self.selector = selector
        self.coordinator = coordinator
        self.publisher = publisher
        self.config = config
        self.clock = clock

    def run(self) -> CycleResult:
        """Run a full cycle and record its metrics.
        """
        started = time.monotonic()
        result = CycleResult()
        try:
            self._dispatch(result)
        finally:
            result.elapsed = time.monotonic() - started
            record_cycle(self.config.queue_name, result.enqueued, result.skipped, result.failed, result.elapsed)
        logger.debug(f'Cycle done: selected={result.selected} enqueued={result.enqueued} '
                     f'skipped={result.skipped} failed={result.failed} elapsed={result.elapsed:.3f}s')
        return result

    def _dispatch(self, result: CycleResult) -> None:
        now = self.clock()
        try:
            ids = self.selector.claim(
                now,
                self.config.ready_threshold_sec,
                self.config.expired_threshold_sec,
                self.config.batch_cap,
            )
        except SelectionError as e:
            logger.error(f'Failed to fetch batch of accounts: {e}')
            return

        result.selected = len(ids)
        if not ids:
            return

        granted = []
        for chunk in chunked(ids, self.config.chunk_size):
            try:
                chunk_granted = self.coordinator.grant(chunk, self.config.expired_threshold_sec)
            except LeaseError as e:
                logger.error(f'Lease check failed for {len(chunk)} accounts: {e}')
                result.lease_failures += 1
                chunk_granted = []
            result.skipped += len(chunk) - len(chunk_granted)
            granted.extend(chunk_granted)

        if not granted:
            return

        published = self.publisher.publish(granted)
        result.enqueued = published.enqueued
        result.failed = published.failed


# ============================================================
# MONITORS
# ============================================================

class Monitor:
    """Base class for background monitoring threads.
    """

    def __init__(self, name: str, interval: float, shutdown_event: threading.Event):
        """Initialize monitor.

        Args:
            name: Monitor name
            interval: Check interval in seconds
            shutdown_event: Event to signal shutdown
        """
        self.name = name
        self.interval = interval
        self.shutdown_event = shutdown_event
        self.thread = None
        self._stop_requested = False

    def start(self) -> None:
        """Start the monitor thread.
        """
        self.thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=self.name
        )
        self.thread.start()
        logger.info(f'{self.name} monitor started')

    def stop(self) -> None:
        """Request the monitor to stop its thread.
        """
        self._stop_requested = True

    def _run(self) -> None:
        """Main monitoring loop.
        """
        while not self.shutdown_event.is_set() and not self._stop_requested:
            try:
                self.check()
            except Exception as e:
                logger.error(f'{self.name} monitor error: {e}', exc_info=True)
                time.sleep(1.0)
                continue

            if self.shutdown_event.wait(timeout=self.interval):
                break

    def check(self) -> None:
        """Perform monitoring check - to be implemented by subclasses.
        """
        raise NotImplementedError


class OverlapPolicy(Enum):
    """Whether a tick may start a cycle while another is still running.
    """
    SKIP = 'skip'
    ALLOW = 'allow'


class TickScheduler(Monitor):
    """Fires a job at a fixed rate, starting immediately, until shutdown.

    Cycles run on a dedicated pool. With ``OverlapPolicy.SKIP`` at most one
    cycle is in flight and a tick arriving while it runs is dropped. With
    ``OverlapPolicy.ALLOW`` up to ``max_workers`` cycles overlap; ticks beyond
    that are dropped as well.
    """

    def __init__(self, name: str, interval: float, job: Callable[[], object],
                 shutdown_event: threading.Event, overlap: OverlapPolicy | str = OverlapPolicy.SKIP,
                 max_workers: int = 1, on_skip: Callable[[], None] = None):
        """Initialize tick scheduler.

        Args:
            name: Scheduler name (thread name prefix)
            interval: Tick period in seconds
            job: Callable run once per tick
            shutdown_event: Event to signal shutdown
            overlap: Overlap policy
            max_workers: Concurrent cycles allowed under OverlapPolicy.ALLOW
            on_skip: Callback invoked for every dropped tick
        """
        super().__init__(name, interval, shutdown_event)
        self.job = job
        self.overlap = OverlapPolicy(overlap)
        workers = 1 if self.overlap is OverlapPolicy.SKIP else max(1, int(max_workers))
        self._slots = threading.BoundedSemaphore(workers)
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f'{name}-cycle')
        self._on_skip = on_skip
        self.ticks = 0
        self.skipped = 0

    def _run(self) -> None:
        """Fixed-rate loop; a late tick realigns instead of firing a burst.
        """
        next_tick = time.monotonic()
        while not self.shutdown_event.is_set() and not self._stop_requested:
            try:
                self.check()
            except Exception as e:
                logger.error(f'{self.name} scheduler error: {e}', exc_info=True)

            next_tick += self.interval
            delay = next_tick - time.monotonic()
            if delay < 0:
                next_tick = time.monotonic()
                delay = 0
            if self.shutdown_event.wait(timeout=delay):
                break
        logger.info(f'{self.name} stopped scheduling ticks')

    def check(self) -> None:
        self.tick()

    def tick(self) -> Future | None:
        """Submit one cycle unless the overlap policy says otherwise.

        Returns
            Future of the submitted cycle, or None if the tick was dropped
        """
        if not self._slots.acquire(blocking=False):
            self.skipped += 1
            logger.warning(f'{self.name} tick skipped, previous cycle still running')
            if self._on_skip is not None:
                self._on_skip()
            return None
        try:
            future = self._executor.submit(self._invoke)
        except RuntimeError:
            self._slots.release()
            logger.debug(f'{self.name} executor shut down, tick dropped')
            return None
        self.ticks += 1
        return future

    def _invoke(self):
        try:
            return self.job()
        except Exception as e:
            logger.error(f'{self.name} cycle failed: {e}', exc_info=True)
        finally:
            self._slots.release()

    def stop(self, wait: bool = False) -> None:
        """Stop scheduling ticks; in-flight cycles are only awaited if ``wait``.
        """
        super().stop()
        self._executor.shutdown(wait=wait, cancel_futures=True)


class StatsReporter(Monitor):
    """Publishes row counts of the account tables as gauges.
    """

    def __init__(self, db: DatabaseContext, interval: float, shutdown_event: threading.Event):
        super().__init__('stats-reporter', interval, shutdown_event)
        self.db = db

    def check(self) -> None:
        self.report()

    @log_duration('stats report')
    def report(self) -> dict[str, int]:
        """Count rows per table and set the registration gauges.

        Returns
            Mapping of table name to row count for tables that could be counted
        """
        counts = {}
        for table in self.db.tables.values():
            try:
                count = self.db.query(f'SELECT COUNT(*) FROM {table}')[0][0]
            except SQLAlchemyError as e:
                logger.error(f'Failed to count rows in {table}: {e}')
                continue
            record_registrations(table, count)
            counts[table] = count
            logger.debug(f'Fetched metrics for {table}: {count}')
        return counts


# ============================================================
# DISPATCHER
# ============================================================

class Dispatcher:
    """Account dispatch service.

    Lifecycle:
    1. __init__: build storage, cache and queue collaborators
    2. __enter__: verify connectivity (fatal on failure), open queue, start
       the tick scheduler and the stats reporter
    3. __exit__: stop scheduling, leave in-flight cycles behind, release resources
    """

    def __init__(self, config: DispatchConfig, engine=None, redis_client: redis.Redis = None,
                 clock: Callable[[], float] = time.time):
        """Initialize dispatcher.

        Args:
            config: Dispatch configuration
            engine: Optional SQLAlchemy engine (defaults to one built from config)
            redis_client: Optional Redis client (defaults to one built from config.redis_url)
            clock: Source of the current time in seconds since epoch
        """
        self.config = config
        self._shutdown_event = threading.Event()
        self._owns_redis = redis_client is None

        self.db = DatabaseContext(config, engine=engine)
        self.redis = redis_client if redis_client is not None else redis.Redis.from_url(config.redis_url)
        self.queue = RedisQueue(self.redis, config.queue_name)

        self.selector = CandidateSelector(self.db)
        self.coordinator = LeaseCoordinator(self.redis, config.lease_namespace)
        self.publisher = BatchPublisher(self.queue, config.chunk_size)
        self.cycle = DispatchCycle(self.selector, self.coordinator, self.publisher, config, clock=clock)

        self.scheduler = TickScheduler(
            f'dispatch-{config.queue_name}',
            config.tick_interval_sec,
            self.cycle.run,
            self._shutdown_event,
            overlap=config.overlap_policy,
            max_workers=config.max_workers,
            on_skip=functools.partial(record_tick_skipped, config.queue_name),
        )
        self.reporter = StatsReporter(self.db, config.stats_interval_sec, self._shutdown_event)

    @retry_with_backoff(max_attempts=3, base_delay=1.0, operation_name='connectivity check')
    def check_connectivity(self) -> None:
        """Verify storage and cache are reachable.
        """
        with self.db.engine.connect() as conn:
            conn.execute(text('SELECT 1'))
        self.redis.ping()

    def __enter__(self):
        logger.info(f'Starting dispatcher for queue {self.config.queue_name}')
        self.check_connectivity()
        self.queue.open()
        self.scheduler.start()
        self.reporter.start()
        return self

    def __exit__(self, exc_ty, exc_val, tb):
        if exc_ty:
            logger.error(exc_val)
        self.shutdown()

    def request_shutdown(self) -> None:
        """Signal all background threads to stop after their current step.
        """
        self._shutdown_event.set()

    def wait(self, timeout: float = None) -> bool:
        """Block until shutdown is requested or ``timeout`` elapses.
        """
        return self._shutdown_event.wait(timeout)

    def shutdown(self, wait: bool = False) -> None:
        """Stop scheduling and release resources.

        Args:
            wait: Wait for in-flight cycles to finish before releasing resources
        """
        logger.info(f'Stopping dispatcher for queue {self.config.queue_name}')
        self._shutdown_event.set()
        self.scheduler.stop(wait=wait)
        self.reporter.stop()

        for monitor in (self.scheduler, self.reporter):
            if monitor.thread and monitor.thread.is_alive():
                monitor.thread.join(timeout=10)
                if monitor.thread.is_alive():
                    logger.warning(f'{monitor.name} thread did not stop within timeout')

        self.db.dispose()
        if self._owns_redis:
            with contextlib.suppress(Exception):
                self.redis.close()
