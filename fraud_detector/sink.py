"""Alert sinks and the dispatcher that feeds them.

The evaluation path never waits on the sink.  AlertManager hands records to
SinkDispatcher.submit(), which only appends to a bounded in-memory buffer.
A background thread (or an explicit drain()) writes the buffer out,
retrying with exponential backoff while the sink reports SinkUnavailable.
When the buffer is full the oldest pending record is dropped and counted:
under a sustained outage we lose the stalest updates, never the process.

Sinks must be idempotent per (alert_id, version): the dispatcher may write
the same record twice if a write succeeded but was reported as failed.
"""

import functools
import json
import threading
import time
from collections import deque

import structlog
from confluent_kafka import KafkaException, Producer

from fraud_detector import metrics
from fraud_detector.errors import SinkUnavailable

logger = structlog.get_logger()


class AlertSink:
    """Write interface for alert create/update records."""

    def write(self, record: dict) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        pass

    def bind(self, requeue) -> None:
        """Called by SinkDispatcher with a callable that re-submits a record.

        Sinks that learn about failures after write() has returned use it.
        """


class InMemoryAlertSink(AlertSink):
    """Keeps the highest version seen per alert.  Used by tests and replays."""

    def __init__(self):
        self.records: dict = {}
        self.writes = 0
        self._lock = threading.Lock()

    def write(self, record):
        with self._lock:
            self.writes += 1
            current = self.records.get(record["alert_id"])
            if current is None or record["version"] >= current["version"]:
                self.records[record["alert_id"]] = record

    def get(self, alert_id: str) -> dict | None:
        return self.records.get(alert_id)

    def __len__(self):
        return len(self.records)


class KafkaAlertSink(AlertSink):
    """Publishes alert records to a Kafka topic.

    Messages are keyed by alert identity so every version of one alert
    lands on the same partition in order.  Downstream consumers upsert on
    (alert_id, version).

    produce() only queues the message.  A delivery the broker later reports
    as failed is handed back to the dispatcher through bind(); with no
    dispatcher bound it is counted as dropped.
    """

    def __init__(self, bootstrap_servers: str, topic: str = "fraud-alerts",
                 producer: Producer | None = None):
        self.topic = topic
        self._requeue = None
        self._producer = producer or Producer({
            "bootstrap.servers": bootstrap_servers,
            "acks": "all",
            "enable.idempotence": True,
            "client.id": "fraud-detector-alerts",
        })

    def bind(self, requeue):
        self._requeue = requeue

    def write(self, record):
        key = "|".join((record["rule_id"], record["dimension"], record["key"], record["window"]))
        try:
            self._producer.produce(
                self.topic,
                key=key.encode("utf-8"),
                value=json.dumps(record, default=str).encode("utf-8"),
                on_delivery=functools.partial(self._delivered, record),
            )
            self._producer.poll(0)
        except BufferError as e:
            raise SinkUnavailable(f"producer queue full: {e}") from e
        except KafkaException as e:
            raise SinkUnavailable(str(e)) from e

    def _delivered(self, record, err, msg):
        # Runs inside poll()/flush() on the producer's calling thread.
        if err is None:
            return
        metrics.sink_delivery_failures_total.inc()
        logger.error("alert_delivery_failed", alert_id=record["alert_id"],
                     version=record["version"], error=str(err),
                     requeued=self._requeue is not None)
        if self._requeue is not None:
            self._requeue(record)
        else:
            metrics.sink_dropped_total.inc()

    def flush(self):
        remaining = self._producer.flush(10)
        if remaining:
            raise SinkUnavailable(f"{remaining} alert records not delivered")


class SinkDispatcher:

    def __init__(
        self,
        sink: AlertSink,
        buffer_size: int = 10_000,
        max_retries: int = 5,
        backoff_seconds: float = 0.5,
        backoff_max_seconds: float = 30.0,
        sleep=time.sleep,
    ):
        self._sink = sink
        sink.bind(self.submit)
        self._buffer: deque = deque()
        self._buffer_size = buffer_size
        self._max_retries = max_retries
        self._backoff = backoff_seconds
        self._backoff_max = backoff_max_seconds
        self._sleep = sleep
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.dropped = 0

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def submit(self, record: dict) -> None:
        """Queue a record for the sink.  Never blocks."""
        with self._cond:
            if len(self._buffer) >= self._buffer_size:
                lost = self._buffer.popleft()
                self.dropped += 1
                metrics.sink_dropped_total.inc()
                logger.warning("alert_record_dropped", alert_id=lost["alert_id"],
                               version=lost["version"], buffer_size=self._buffer_size)
            self._buffer.append(record)
            metrics.sink_pending.set(len(self._buffer))
            self._cond.notify()

    def drain(self) -> int:
        """Write out everything pending.  Returns the number of records written.

        Stops early (leaving the rest queued) if a record still fails after
        max_retries attempts.
        """
        written = 0
        while True:
            with self._cond:
                if not self._buffer:
                    break
                record = self._buffer.popleft()
                metrics.sink_pending.set(len(self._buffer))
            if not self._write_with_retry(record):
                with self._cond:
                    # Back to the front so per-alert order is kept.
                    self._buffer.appendleft(record)
                    metrics.sink_pending.set(len(self._buffer))
                break
            written += 1
        return written

    def _write_with_retry(self, record) -> bool:
        delay = self._backoff
        for attempt in range(1, self._max_retries + 1):
            try:
                self._sink.write(record)
                metrics.sink_written_total.inc()
                return True
            except SinkUnavailable as e:
                metrics.sink_retries_total.inc()
                logger.warning("alert_sink_unavailable", alert_id=record["alert_id"],
                               attempt=attempt, error=str(e))
                if attempt < self._max_retries and not self._stop.is_set():
                    self._sleep(delay)
                    delay = min(delay * 2, self._backoff_max)
        return False

    # ------------------------------------------------------------------
    # Background writer
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="alert-sink", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.is_set():
            with self._cond:
                if not self._buffer:
                    self._cond.wait(timeout=1.0)
            if self.drain() == 0 and self._buffer:
                # Sink is down; don't spin.
                self._stop.wait(self._backoff_max)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the writer, then make one last attempt to flush the buffer."""
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.drain()
        try:
            self._sink.flush()
        except SinkUnavailable as e:
            logger.error("alert_sink_flush_failed", error=str(e), pending=self.pending)
        if self.pending:
            # Includes deliveries the broker failed during flush().
            logger.error("alert_records_unsent", pending=self.pending)
