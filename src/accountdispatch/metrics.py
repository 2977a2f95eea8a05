"""Prometheus metrics for dispatch observability."""

from prometheus_client import Counter, Gauge, Histogram

COUNT_BUCKETS = [0, 1, 10, 50, 100, 250, 500, 1000, 2500, 5000]

# Dispatch cycle metrics
enqueued_histogram = Histogram(
    'accountdispatch_queue_enqueued',
    'Accounts granted a lease and handed to the queue per cycle',
    ['queue'],
    buckets=COUNT_BUCKETS,
)

skipped_histogram = Histogram(
    'accountdispatch_queue_skipped',
    'Selected accounts not granted a lease per cycle',
    ['queue'],
    buckets=COUNT_BUCKETS,
)

failed_histogram = Histogram(
    'accountdispatch_queue_failed',
    'Granted accounts whose publish failed per cycle',
    ['queue'],
    buckets=COUNT_BUCKETS,
)

runtime_histogram = Histogram(
    'accountdispatch_queue_runtime_seconds',
    'Wall-clock duration of one dispatch cycle in seconds',
    ['queue'],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

ticks_skipped_counter = Counter(
    'accountdispatch_ticks_skipped_total',
    'Ticks skipped because the previous cycle was still running',
    ['queue'],
)

# Stats reporter metrics
registrations_gauge = Gauge(
    'accountdispatch_registrations',
    'Row count per table',
    ['table'],
)


def record_cycle(queue: str, enqueued: int, skipped: int, failed: int, elapsed: float) -> None:
    """Record the outcome of one dispatch cycle.
    """
    enqueued_histogram.labels(queue=queue).observe(enqueued)
    skipped_histogram.labels(queue=queue).observe(skipped)
    failed_histogram.labels(queue=queue).observe(failed)
    runtime_histogram.labels(queue=queue).observe(elapsed)


def record_tick_skipped(queue: str) -> None:
    ticks_skipped_counter.labels(queue=queue).inc()


def record_registrations(table: str, count: int) -> None:
    registrations_gauge.labels(table=table).set(count)
