"""Window specs, window keys and per-key aggregate state.

Replaces the event-buffering sliding window with incremental aggregates:
nothing here keeps the events themselves, only counters, sums, first/last
timestamps and capped distinct sets.  Memory per key is bounded by the
number of measures times the distinct cap.

Window kinds:
    tumbling   fixed buckets, addressed by floor(ts / size)
    session    one running window per key, evicted after ``size`` seconds idle
    unbounded  one running window per key, never idle-evicted
    event      no state at all (per-event rules)
"""

import math
from dataclasses import dataclass, field

from fraud_detector.errors import InvariantViolation

TUMBLING = "tumbling"
SESSION = "session"
UNBOUNDED = "unbounded"
EVENT = "event"
WINDOW_KINDS = (TUMBLING, SESSION, UNBOUNDED, EVENT)


@dataclass(frozen=True)
class WindowSpec:
    kind: str
    size_seconds: float | None = None

    def __post_init__(self):
        if self.kind not in WINDOW_KINDS:
            raise ValueError(f"unknown window kind: {self.kind!r}")
        if self.kind in (TUMBLING, SESSION):
            if self.size_seconds is None or self.size_seconds <= 0:
                raise ValueError(f"{self.kind} window needs a positive size")
        elif self.size_seconds is not None:
            raise ValueError(f"{self.kind} window takes no size")

    @property
    def name(self) -> str:
        if self.size_seconds is None:
            return self.kind
        return f"{self.kind}-{self.size_seconds:g}s"

    @property
    def stateful(self) -> bool:
        return self.kind != EVENT

    def bucket(self, timestamp: float) -> int | None:
        if self.kind != TUMBLING:
            return None
        return math.floor(timestamp / self.size_seconds)

    def bucket_end(self, bucket: int) -> float:
        return (bucket + 1) * self.size_seconds


@dataclass(frozen=True)
class WindowKey:
    dimension: str
    value: str
    window: WindowSpec
    bucket: int | None = None

    @property
    def identity(self) -> tuple[str, str, str]:
        """Alert identity: the key without its tumbling bucket."""
        return (self.dimension, self.value, self.window.name)

    def __str__(self):
        suffix = f"@{self.bucket}" if self.bucket is not None else ""
        return f"{self.dimension}={self.value}/{self.window.name}{suffix}"


class CappedSet:
    """Distinct-value tracker with bounded memory.

    Exact up to ``cap`` values.  Past the cap, values are hashed into a
    fixed bitmap and the overflow counter only grows when a value lands on
    an unset bit, so len() never over-counts: it is the exact count below
    the cap and a lower bound above it.
    """

    __slots__ = ("cap", "_values", "_bitmap", "overflow")

    def __init__(self, cap: int):
        if cap < 1:
            raise ValueError("distinct cap must be >= 1")
        self.cap = cap
        self._values: set = set()
        self._bitmap: bytearray | None = None
        self.overflow = 0

    def add(self, value) -> None:
        if value in self._values:
            return
        if len(self._values) < self.cap:
            self._values.add(value)
            return
        if self._bitmap is None:
            self._bitmap = bytearray(self.cap)  # cap * 8 bits
        bit = hash(value) % (len(self._bitmap) * 8)
        byte, mask = divmod(bit, 8)
        if not self._bitmap[byte] & (1 << mask):
            self._bitmap[byte] |= 1 << mask
            self.overflow += 1

    @property
    def saturated(self) -> bool:
        return len(self._values) >= self.cap

    def sample(self) -> tuple:
        return tuple(sorted(self._values, key=str))

    def __contains__(self, value):
        return value in self._values

    def __len__(self):
        return len(self._values) + self.overflow


@dataclass(frozen=True)
class MeasureSnapshot:
    count: int
    min_ts: float | None
    max_ts: float | None
    sums: dict = field(default_factory=dict)
    distinct: dict = field(default_factory=dict)
    samples: dict = field(default_factory=dict)

    @property
    def elapsed(self) -> float | None:
        if self.min_ts is None or self.max_ts is None:
            return None
        return self.max_ts - self.min_ts

    def sum(self, name: str) -> float:
        return self.sums.get(name, 0.0)

    def avg(self, name: str) -> float | None:
        if not self.count:
            return None
        return self.sums.get(name, 0.0) / self.count

    def distinct_count(self, name: str) -> int:
        return self.distinct.get(name, 0)


class Measure:
    """Aggregate over the events of one key that pass one selection."""

    __slots__ = ("count", "sums", "min_ts", "max_ts", "distinct")

    def __init__(self, sum_fields=(), distinct_fields=(), cap: int = 64):
        self.count = 0
        self.sums = {f: 0.0 for f in sum_fields}
        self.min_ts: float | None = None
        self.max_ts: float | None = None
        self.distinct = {f: CappedSet(cap) for f in distinct_fields}

    def add(self, event) -> None:
        self.count += 1
        ts = event.timestamp
        if self.min_ts is None or ts < self.min_ts:
            self.min_ts = ts
        if self.max_ts is None or ts > self.max_ts:
            self.max_ts = ts
        for name in self.sums:
            value = event.get(name)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                self.sums[name] += value
        for name, values in self.distinct.items():
            value = event.get(name)
            if value is not None:
                values.add(value)

    def snapshot(self) -> MeasureSnapshot:
        return MeasureSnapshot(
            count=self.count,
            min_ts=self.min_ts,
            max_ts=self.max_ts,
            sums=dict(self.sums),
            distinct={f: len(s) for f, s in self.distinct.items()},
            samples={f: s.sample()[:10] for f, s in self.distinct.items()},
        )


@dataclass(frozen=True)
class AggregateSnapshot:
    count: int
    total: float
    min_ts: float | None
    max_ts: float | None
    late_count: int
    measures: dict = field(default_factory=dict)

    def measure(self, signature: str) -> MeasureSnapshot | None:
        return self.measures.get(signature)


class AggregateState:
    """Everything the store keeps for one window key."""

    __slots__ = ("count", "total", "min_ts", "max_ts", "late_count", "measures")

    def __init__(self):
        self.count = 0
        self.total = 0.0
        self.min_ts: float | None = None
        self.max_ts: float | None = None
        self.late_count = 0
        self.measures: dict[str, Measure] = {}

    def add(self, event, measure_specs, cap: int, late: bool = False) -> None:
        self.count += 1
        amount = event.amount
        if amount is not None:
            self.total += amount
        ts = event.timestamp
        if self.min_ts is None or ts < self.min_ts:
            self.min_ts = ts
        if self.max_ts is None or ts > self.max_ts:
            self.max_ts = ts
        if late:
            self.late_count += 1
        for spec in measure_specs:
            measure = self.measures.get(spec.signature)
            if measure is None:
                measure = Measure(spec.sum_fields, spec.distinct_fields, cap)
                self.measures[spec.signature] = measure
            measure.add(event)

    def check(self) -> None:
        """Raise InvariantViolation if the counters contradict each other."""
        if self.count < 0 or self.late_count < 0 or self.late_count > self.count:
            raise InvariantViolation(
                f"bad counts: count={self.count} late={self.late_count}"
            )
        if self.min_ts is not None and self.max_ts is not None and self.min_ts > self.max_ts:
            raise InvariantViolation(f"min_ts {self.min_ts} > max_ts {self.max_ts}")
        for signature, measure in self.measures.items():
            if measure.count < 0 or measure.count > self.count:
                raise InvariantViolation(
                    f"measure {signature}: count {measure.count} outside [0, {self.count}]"
                )

    def snapshot(self) -> AggregateSnapshot:
        return AggregateSnapshot(
            count=self.count,
            total=self.total,
            min_ts=self.min_ts,
            max_ts=self.max_ts,
            late_count=self.late_count,
            measures={sig: m.snapshot() for sig, m in self.measures.items()},
        )


@dataclass(frozen=True)
class MeasureSpec:
    """What a rule needs tracked on its key: which events, which fields."""

    signature: str
    sum_fields: tuple = ()
    distinct_fields: tuple = ()

    def merge(self, other: "MeasureSpec") -> "MeasureSpec":
        return MeasureSpec(
            self.signature,
            tuple(sorted(set(self.sum_fields) | set(other.sum_fields))),
            tuple(sorted(set(self.distinct_fields) | set(other.distinct_fields))),
        )
